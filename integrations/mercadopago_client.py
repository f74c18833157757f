"""
Mercado Pago REST client with retry logic and error classification.

Implements:
- PIX and card charge creation with idempotency keys
- Payment lookup by id and search by external reference
- Exponential backoff for transient errors and rate limits
"""
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from config import Settings, get_settings
from integrations.gateway import (
    ChargeRequest,
    GatewayError,
    GatewayErrorType,
    GatewayPayment,
    PixData,
    is_payment_id,
)
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.error_type in (
        GatewayErrorType.TRANSIENT,
        GatewayErrorType.RATE_LIMIT,
    )


def parse_payment(data: Dict[str, Any]) -> GatewayPayment:
    """Build a ``GatewayPayment`` from a ``/v1/payments`` response body."""
    transaction_data = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
    pix = None
    if transaction_data:
        pix = PixData(
            qr_code=transaction_data.get("qr_code"),
            qr_code_base64=transaction_data.get("qr_code_base64"),
            ticket_url=transaction_data.get("ticket_url"),
        )

    if data.get("id") is None:
        raise GatewayError("payment response without id", GatewayErrorType.PERMANENT)

    amount = data.get("transaction_amount")
    return GatewayPayment(
        id=str(data["id"]),
        status=str(data.get("status") or "unknown"),
        status_detail=data.get("status_detail"),
        external_reference=data.get("external_reference"),
        transaction_amount=Decimal(str(amount)) if amount is not None else None,
        payment_method_id=data.get("payment_method_id"),
        date_of_expiration=data.get("date_of_expiration"),
        pix=pix,
    )


class MercadoPagoClient:
    """
    Async client for the Mercado Pago payments API.

    Features:
    - Automatic retry with exponential backoff (transient errors, 429)
    - Stable ``X-Idempotency-Key`` across retries
    - Error classification: a 4xx means the charge was not created, a
      timeout or 5xx means its outcome is unknown
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.settings.mercadopago_api_base_url,
            timeout=self.settings.gateway_timeout_seconds,
        )
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=8)

        logger.info(
            "mercadopago_client_initialized",
            base_url=self.settings.mercadopago_api_base_url,
            test_mode=self.settings.is_test_mode,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(
        self, idempotency_key: Optional[str] = None, device_id: Optional[str] = None
    ) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.settings.mercadopago_access_token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        if device_id:
            headers["X-meli-session-id"] = device_id
        return headers

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        """
        Classify an HTTP error status for retry logic.

        Args:
            status_code: Response status code

        Returns:
            GatewayErrorType: Error classification
        """
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        if status_code >= 500:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    def _error_from_response(self, response: httpx.Response) -> GatewayError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        causes = body.get("cause") or []
        if isinstance(causes, dict):
            causes = [causes]
        message = body.get("message") or body.get("error") or response.reason_phrase
        error_type = self._classify_status(response.status_code)

        logger.error(
            "mercadopago_api_error",
            status_code=response.status_code,
            error_type=error_type.value,
            error=body.get("error"),
            error_message=message,
            causes=causes,
        )
        return GatewayError(
            message=str(message),
            error_type=error_type,
            status_code=response.status_code,
            causes=causes,
        )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Send one request, retrying transient failures with the same headers."""
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.gateway_retry_max_attempts),
            wait=self._retry_wait,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                started = time.perf_counter()
                try:
                    response = await self._client.request(
                        method, path, json=json, headers=headers, params=params
                    )
                except httpx.TimeoutException as e:
                    metrics.record_gateway_call(operation, "timeout", time.perf_counter() - started)
                    metrics.record_gateway_error(GatewayErrorType.TRANSIENT.value)
                    logger.warning(
                        "mercadopago_timeout",
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise GatewayError(
                        "Mercado Pago request timed out",
                        GatewayErrorType.TRANSIENT,
                        original_error=e,
                    ) from e
                except httpx.TransportError as e:
                    metrics.record_gateway_call(operation, "connection_error", time.perf_counter() - started)
                    metrics.record_gateway_error(GatewayErrorType.TRANSIENT.value)
                    logger.warning(
                        "mercadopago_connection_error",
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                        error=str(e),
                    )
                    raise GatewayError(
                        f"Mercado Pago connection error: {e}",
                        GatewayErrorType.TRANSIENT,
                        original_error=e,
                    ) from e

                duration = time.perf_counter() - started
                metrics.record_gateway_call(operation, str(response.status_code), duration)

                if response.is_error:
                    error = self._error_from_response(response)
                    metrics.record_gateway_error(error.error_type.value)
                    raise error

                body = response.json()
                if isinstance(body, dict) and body.get("error"):
                    # 2xx carrying an error body counts as a refusal
                    raise GatewayError(
                        str(body.get("message") or body["error"]),
                        GatewayErrorType.PERMANENT,
                        status_code=response.status_code,
                        causes=body.get("cause") or [],
                    )
                return body
        raise AssertionError("unreachable")  # pragma: no cover

    def _charge_body(self, request: ChargeRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "transaction_amount": float(request.amount),
            "description": request.description,
            "payer": {
                "email": request.payer.email.strip().lower(),
                "first_name": request.payer.first_name.strip(),
                "last_name": request.payer.last_name.strip(),
                "identification": {"type": "CPF", "number": request.payer.cpf},
            },
            "external_reference": request.external_reference,
            "statement_descriptor": self.settings.statement_descriptor,
            "metadata": request.metadata,
        }
        if self.settings.notification_url:
            body["notification_url"] = self.settings.notification_url

        if request.method == "pix":
            body["payment_method_id"] = "pix"
        else:
            body["payment_method_id"] = request.payment_method_id
            body["token"] = request.card_token
            body["installments"] = request.installments or 1
            if request.issuer_id:
                body["issuer_id"] = int(request.issuer_id) if request.issuer_id.isdigit() else request.issuer_id
        return body

    async def create_charge(self, request: ChargeRequest) -> GatewayPayment:
        """
        Create a PIX or card payment.

        Args:
            request: Charge to open

        Returns:
            GatewayPayment: Created payment (status, PIX instructions)

        Raises:
            GatewayError: Classified error after retries are exhausted
        """
        operation = f"create_{request.method}_charge"
        logger.info(
            "creating_charge",
            method=request.method,
            amount=str(request.amount),
            external_reference=request.external_reference,
            idempotency_key=request.idempotency_key,
            has_device_id=bool(request.device_id),
        )
        if not request.device_id:
            logger.warning("charge_without_device_id", external_reference=request.external_reference)

        data = await self._request(
            operation,
            "POST",
            "/v1/payments",
            json=self._charge_body(request),
            headers=self._headers(request.idempotency_key, request.device_id),
        )
        payment = parse_payment(data)

        logger.info(
            "charge_created",
            payment_id=payment.id,
            status=payment.status,
            status_detail=payment.status_detail,
        )
        return payment

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        """
        Retrieve a payment by id.

        Raises:
            GatewayError: If retrieval fails
        """
        if not is_payment_id(payment_id):
            raise GatewayError(
                f"invalid payment id: {payment_id!r}", GatewayErrorType.PERMANENT, status_code=400
            )
        logger.info("retrieving_payment", payment_id=payment_id)
        data = await self._request(
            "get_payment", "GET", f"/v1/payments/{payment_id}", headers=self._headers()
        )
        return parse_payment(data)

    async def search_payments(self, external_reference: str) -> List[GatewayPayment]:
        """
        Find payments created with ``external_reference``, newest first.

        Recovers the payment id of a charge whose create call never
        answered.

        Raises:
            GatewayError: If the search fails
        """
        logger.info("searching_payments", external_reference=external_reference)
        data = await self._request(
            "search_payments",
            "GET",
            "/v1/payments/search",
            headers=self._headers(),
            params={
                "external_reference": external_reference,
                "sort": "date_created",
                "criteria": "desc",
            },
        )
        return [parse_payment(item) for item in data.get("results") or []]

    async def ping(self) -> bool:
        """Check that the API answers and the access token is accepted."""
        response = await self._client.get(
            "/users/me", headers=self._headers(), timeout=5.0
        )
        return response.status_code == 200
