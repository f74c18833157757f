"""
Pydantic schemas for API request/response models.

The storefront speaks camelCase; fields are declared in snake_case with
camelCase aliases and either spelling is accepted on input.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.checkout import Buyer, CardDetails, CartItem, DiscountRequest, PixInstructions

# Storefront actions, plus the names older storefront builds still send
CHECKOUT_ACTIONS = {
    "begin-pix": "begin-pix",
    "create_pix": "begin-pix",
    "begin-card": "begin-card",
    "create_card": "begin-card",
    "check-status": "check-status",
    "check_status": "check-status",
}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckoutRequest(CamelModel):
    """Request schema for ``POST /checkout``."""

    action: str = Field(..., description="begin-pix, begin-card or check-status")
    items: List[CartItem] = Field(default_factory=list, description="Cart photos")
    buyer: Buyer = Field(default_factory=Buyer, description="Buyer identification")
    discount: Optional[DiscountRequest] = Field(default=None, description="Discount shown in the cart")
    device_id: Optional[str] = Field(default=None, description="Mercado Pago device session id")
    card_token: Optional[str] = Field(default=None, description="Tokenized card (begin-card)")
    card_brand_id: Optional[str] = Field(default=None, description="Card brand, e.g. visa (begin-card)")
    issuer_id: Optional[str] = Field(default=None, description="Card issuer id (begin-card)")
    installments: int = Field(default=1, description="Installments (begin-card)")
    payment_id: Optional[str] = Field(default=None, description="Gateway payment id (check-status)")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        json_schema_extra={
            "examples": [
                {
                    "action": "begin-pix",
                    "items": [{"id": "6f1c7c1e-2d9a-4f0e-9a51-6a9f0d1b2c3d", "price": 15.0}],
                    "buyer": {
                        "name": "Maria",
                        "surname": "Silva",
                        "email": "maria@example.com",
                        "taxId": "529.982.247-25",
                    },
                    "discount": {"enabled": True},
                    "deviceId": "armor.1234567890",
                }
            ]
        },
    )

    @property
    def normalized_action(self) -> Optional[str]:
        return CHECKOUT_ACTIONS.get(self.action.strip().lower())

    def card_details(self) -> CardDetails:
        return CardDetails(
            card_token=self.card_token,
            card_brand_id=self.card_brand_id,
            issuer_id=self.issuer_id,
            installments=self.installments,
        )


class PixCheckoutResponse(CamelModel):
    """Response schema for begin-pix."""

    success: bool = True
    status: str = Field(default="pending", description="pending, or approved/rejected when settled on create")
    status_detail: Optional[str] = Field(default=None, description="Gateway status detail code")
    message: Optional[str] = Field(default=None, description="Buyer-facing message")
    payment_id: str = Field(..., description="Gateway payment id")
    purchase_ids: List[UUID] = Field(..., description="Pending purchase ids")
    pix: Optional[PixInstructions] = Field(default=None, description="QR code instructions")


class CardCheckoutResponse(CamelModel):
    """Response schema for begin-card."""

    success: bool
    status: str = Field(..., description="approved, pending or rejected")
    status_detail: Optional[str] = Field(default=None, description="Gateway status detail code")
    payment_id: str = Field(..., description="Gateway payment id")
    purchase_ids: List[UUID] = Field(..., description="Purchase ids")
    message: Optional[str] = Field(default=None, description="Buyer-facing message")


class PaymentStatusResponse(CamelModel):
    """Response schema for check-status."""

    success: bool = True
    status: str = Field(..., description="Gateway payment status")
    purchase_status: str = Field(..., description="pending, completed or failed")
    purchase_ids: List[UUID] = Field(default_factory=list, description="Purchases of the payment")


class ErrorResponse(CamelModel):
    """Error body for every failed checkout action."""

    success: bool = False
    error: str
    retryable: Optional[bool] = None


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    received: bool = True
    status: str = Field(..., description="processed, ignored, failed or error")


class SweepResponse(CamelModel):
    """Response schema for the pending purchase sweep."""

    success: bool = True
    message: str
    results: Dict[str, Any]


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
