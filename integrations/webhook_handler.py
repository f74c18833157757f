"""
Mercado Pago webhook handler with signature verification and audit log.

Implements:
- ``x-signature`` HMAC verification when a webhook secret is configured
- Payment id extraction from JSON bodies and legacy query notifications
- One ``webhook_logs`` row per delivery
- Delegation to the same status check the storefront polls
"""
import hashlib
import hmac
import time
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from core.checkout import CheckoutService
from core.exceptions import CheckoutError
from database.models import WebhookLog, utcnow
from integrations.gateway import GatewayClient
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookError(Exception):
    """Raised when a notification fails signature verification."""

    pass


class WebhookOutcome(BaseModel):
    """Result of handling one notification."""

    status: str  # processed, ignored, failed
    event_type: str
    payment_id: Optional[str] = None
    log_id: Optional[int] = None
    result: Dict[str, Any] = Field(default_factory=dict)


def extract_event(
    body: Optional[Mapping[str, Any]], query: Optional[Mapping[str, str]] = None
) -> Tuple[str, Optional[str]]:
    """
    Pull the event type and payment id out of a notification.

    Handles ``{"type": "payment", "action": "payment.updated", "data":
    {"id": ...}}`` bodies and the legacy ``?topic=payment&id=...`` form.

    Returns:
        Tuple[str, Optional[str]]: Event type (``unknown`` if absent) and
        payment id, None for non-payment topics
    """
    body = body or {}
    query = query or {}

    event_type = str(
        body.get("action") or body.get("type") or query.get("topic") or query.get("type") or "unknown"
    )
    topic = str(body.get("type") or query.get("topic") or query.get("type") or event_type)
    if not topic.startswith("payment"):
        return event_type, None

    data = body.get("data") if isinstance(body.get("data"), Mapping) else {}
    payment_id = data.get("id") or query.get("data.id") or query.get("id")
    if payment_id is None or not str(payment_id).strip():
        return event_type, None
    return event_type, str(payment_id).strip()


def _parse_signature_header(header: str) -> Dict[str, str]:
    parts = {}
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key and value:
            parts[key.strip()] = value.strip()
    return parts


class WebhookHandler:
    """
    Handles Mercado Pago notifications.

    The handler never raises on reconciliation failures: the delivery is
    acknowledged and the sweeper converges the purchases later.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[GatewayClient],
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()

    def verify_signature(
        self,
        signature: Optional[str],
        request_id: Optional[str],
        data_id: Optional[str],
        secret: Optional[str] = None,
    ) -> None:
        """
        Verify the ``x-signature`` header of a notification.

        The signed manifest is ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;``.
        Verification is skipped when no secret is configured.

        Raises:
            WebhookError: If the header is missing or does not match
        """
        webhook_secret = secret or self.settings.mercadopago_webhook_secret
        if not webhook_secret:
            return

        if not signature:
            logger.error("webhook_signature_missing")
            raise WebhookError("Missing x-signature header")

        parts = _parse_signature_header(signature)
        ts = parts.get("ts")
        received = parts.get("v1")
        if not ts or not received:
            logger.error("webhook_signature_malformed")
            raise WebhookError("Malformed x-signature header")

        manifest = ""
        if data_id:
            manifest += f"id:{data_id.lower() if data_id.isalnum() else data_id};"
        if request_id:
            manifest += f"request-id:{request_id};"
        manifest += f"ts:{ts};"

        expected = hmac.new(
            webhook_secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(expected, received):
            logger.error("webhook_signature_verification_failed", data_id=data_id)
            raise WebhookError("Invalid webhook signature")

        logger.info("webhook_signature_verified", data_id=data_id)

    async def handle(
        self,
        body: Optional[Mapping[str, Any]],
        query: Optional[Mapping[str, str]] = None,
        signature: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> WebhookOutcome:
        """
        Verify, log and process one notification.

        Raises:
            WebhookError: Signature verification failed
        """
        started = time.perf_counter()
        event_type, payment_id = extract_event(body, query)

        try:
            self.verify_signature(signature, request_id, payment_id)
        except WebhookError:
            metrics.record_webhook_event(event_type, "rejected", time.perf_counter() - started)
            raise

        log = WebhookLog(
            event_type=event_type,
            payment_id=payment_id,
            request_body=dict(body or {}) or dict(query or {}),
            created_at=utcnow(),
        )
        self.db.add(log)
        await self.db.commit()

        logger.info("webhook_received", event_type=event_type, payment_id=payment_id, log_id=log.id)

        if payment_id is None:
            outcome = WebhookOutcome(
                status="ignored",
                event_type=event_type,
                log_id=log.id,
                result={"reason": "not a payment notification"},
            )
        else:
            outcome = await self._process_payment(event_type, payment_id, log.id)

        log.response_status = 200
        log.result = {"outcome": outcome.status, **outcome.result}
        log.processed_at = utcnow()
        await self.db.commit()

        metrics.record_webhook_event(event_type, outcome.status, time.perf_counter() - started)
        logger.info(
            "webhook_processed",
            event_type=event_type,
            payment_id=payment_id,
            status=outcome.status,
        )
        return outcome

    async def _process_payment(
        self, event_type: str, payment_id: str, log_id: Optional[int]
    ) -> WebhookOutcome:
        service = CheckoutService(self.db, self.gateway, self.settings)
        try:
            result = await service.check_status(payment_id)
        except CheckoutError as e:
            logger.error(
                "webhook_processing_failed",
                event_type=event_type,
                payment_id=payment_id,
                error=e.message,
            )
            return WebhookOutcome(
                status="failed",
                event_type=event_type,
                payment_id=payment_id,
                log_id=log_id,
                result={"error": e.message},
            )

        return WebhookOutcome(
            status="processed",
            event_type=event_type,
            payment_id=payment_id,
            log_id=log_id,
            result={
                "gateway_status": result.gateway_status,
                "status": result.status.value,
                "found": result.found,
                "purchase_ids": [str(pid) for pid in result.purchase_ids],
                "transitioned": len(result.transitioned_ids),
            },
        )
