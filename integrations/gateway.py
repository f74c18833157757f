"""
Payment gateway contract.

The checkout orchestrator talks to the gateway through ``GatewayClient``;
the Mercado Pago client implements it and tests use an in-memory fake.
"""
import re
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


# Mercado Pago payment ids are numeric
_PAYMENT_ID = re.compile(r"[0-9]{1,20}")


def is_payment_id(value: Any) -> bool:
    return isinstance(value, str) and _PAYMENT_ID.fullmatch(value) is not None


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Timeout, connection error, 5xx: outcome unknown
    PERMANENT = "permanent"  # 4xx: the gateway refused the request
    RATE_LIMIT = "rate_limit"  # 429: refused, retry with backoff


class GatewayError(Exception):
    """Error raised by a gateway client."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        causes: Optional[List[Dict[str, Any]]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.causes = causes or []
        self.original_error = original_error

    @property
    def cause_codes(self) -> List[str]:
        return [str(cause.get("code")) for cause in self.causes if cause.get("code") is not None]

    @property
    def cause_description(self) -> Optional[str]:
        """Description of the first cause, as sent by the gateway."""
        for cause in self.causes:
            if cause.get("description"):
                return str(cause["description"])
        return None

    @property
    def is_refusal(self) -> bool:
        """True when the gateway answered and no charge was created."""
        return self.error_type in (GatewayErrorType.PERMANENT, GatewayErrorType.RATE_LIMIT)


class Payer(BaseModel):
    """Buyer identification sent with a charge."""

    email: str
    first_name: str
    last_name: str
    cpf: str


class ChargeRequest(BaseModel):
    """Charge to open at the gateway."""

    method: Literal["pix", "card"]
    amount: Decimal
    description: str
    external_reference: str
    idempotency_key: str
    payer: Payer
    device_id: Optional[str] = None
    card_token: Optional[str] = None
    payment_method_id: Optional[str] = None
    issuer_id: Optional[str] = None
    installments: int = 1
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PixData(BaseModel):
    """PIX payment instructions returned with a PIX charge."""

    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    ticket_url: Optional[str] = None


class GatewayPayment(BaseModel):
    """Payment as reported by the gateway."""

    model_config = ConfigDict(frozen=True)

    id: str
    status: str
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    transaction_amount: Optional[Decimal] = None
    payment_method_id: Optional[str] = None
    date_of_expiration: Optional[str] = None
    pix: Optional[PixData] = None


@runtime_checkable
class GatewayClient(Protocol):
    """Operations the checkout engine needs from a payment gateway."""

    async def create_charge(self, request: ChargeRequest) -> GatewayPayment:
        """
        Open a charge.

        Raises:
            GatewayError: ``PERMANENT``/``RATE_LIMIT`` when the gateway refused,
                ``TRANSIENT`` when the outcome is unknown
        """
        ...

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        ...

    async def search_payments(self, external_reference: str) -> List[GatewayPayment]:
        """Payments created with ``external_reference``, newest first."""
        ...
