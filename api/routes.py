"""
API routes for checkout, gateway notifications and operations.
"""
import hmac
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from core.checkout import CheckoutService
from core.exceptions import CheckoutError, CheckoutValidationError, PaymentConfigurationError
from core.reconciliation import PendingPurchaseSweeper
from database.connection import get_db, get_session_factory
from integrations.gateway import GatewayClient
from integrations.webhook_handler import WebhookError, WebhookHandler
from monitoring.health import HealthCheck
from monitoring.logging import bind_request_context

from .schemas import (
    CardCheckoutResponse,
    CheckoutRequest,
    ErrorResponse,
    HealthCheckResponse,
    PaymentStatusResponse,
    PixCheckoutResponse,
    SweepResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_gateway(request: Request) -> Optional[GatewayClient]:
    """Gateway client created at startup; None when payments are not configured."""
    return getattr(request.app.state, "gateway", None)


async def get_checkout_service(
    db: AsyncSession = Depends(get_db),
    gateway: Optional[GatewayClient] = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> CheckoutService:
    return CheckoutService(db, gateway, settings)


def require_admin_key(request: Request, settings: Settings = Depends(get_settings)) -> None:
    """
    Check the admin API key header.

    Without a configured key the admin endpoints are open outside
    production and refused in production.
    """
    if not settings.admin_api_key:
        if settings.is_production:
            logger.error("admin_api_key_not_configured", path=request.url.path)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Admin API key not configured"
            )
        return
    provided = request.headers.get(settings.api_key_header) or ""
    if not hmac.compare_digest(provided.encode(), settings.admin_api_key.encode()):
        logger.warning("admin_api_key_rejected", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def _error_response(error: CheckoutError) -> JSONResponse:
    body = ErrorResponse.model_validate(error.to_dict())
    return JSONResponse(
        status_code=error.http_status,
        content=body.model_dump(by_alias=True, exclude_none=True),
    )


@checkout_router.post(
    "",
    summary="Checkout",
    description="Begin a PIX or card checkout, or check a payment's status",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid cart, buyer or refused charge"},
        401: {"model": ErrorResponse, "description": "Buyer not identified"},
        500: {"model": ErrorResponse, "description": "Payments not configured"},
        503: {"model": ErrorResponse, "description": "Gateway unavailable; retryable"},
    },
)
async def checkout(
    request: Request,
    service: CheckoutService = Depends(get_checkout_service),
    settings: Settings = Depends(get_settings),
) -> Any:
    """
    Single checkout endpoint dispatching on ``action``.

    Validation problems answer 400 with ``{success: false, error}`` so the
    storefront shows one message format for every failure.
    """
    try:
        payload = await request.json()
        body = CheckoutRequest.model_validate(payload)
    except (ValueError, ValidationError) as e:
        logger.warning("api_checkout_invalid_body", error=str(e))
        return _error_response(CheckoutValidationError("Dados da requisição inválidos"))

    action = body.normalized_action
    buyer_id = request.headers.get(settings.buyer_id_header)
    if buyer_id:
        bind_request_context(buyer_id=buyer_id)

    logger.info("api_checkout_request", action=body.action, items=len(body.items))

    try:
        if action == "begin-pix":
            result = await service.begin_pix(
                buyer_id,
                body.items,
                body.buyer,
                discount=body.discount,
                device_id=body.device_id,
            )
            return PixCheckoutResponse(
                success=result.status != "rejected",
                status=result.status,
                status_detail=result.status_detail,
                message=result.message,
                payment_id=result.payment_id,
                purchase_ids=result.purchase_ids,
                pix=result.pix,
            )

        if action == "begin-card":
            result = await service.begin_card(
                buyer_id,
                body.items,
                body.buyer,
                body.card_details(),
                discount=body.discount,
                device_id=body.device_id,
            )
            return CardCheckoutResponse(
                success=result.status == "approved",
                status=result.status,
                status_detail=result.status_detail,
                payment_id=result.payment_id,
                purchase_ids=result.purchase_ids,
                message=result.message,
            )

        if action == "check-status":
            if not body.payment_id:
                raise CheckoutValidationError("ID do pagamento não fornecido", field="paymentId")
            outcome = await service.check_status(body.payment_id)
            return PaymentStatusResponse(
                status=outcome.gateway_status,
                purchase_status=outcome.status.value,
                purchase_ids=outcome.purchase_ids,
            )

        raise CheckoutValidationError(
            "Ação não reconhecida. Use: begin-pix, begin-card ou check-status", action=body.action
        )

    except CheckoutError as e:
        log = logger.error if e.http_status >= 500 else logger.warning
        log(
            "api_checkout_error",
            action=body.action,
            error_type=type(e).__name__,
            error=e.message,
            http_status=e.http_status,
        )
        return _error_response(e)


@webhook_router.post(
    "/mercadopago",
    response_model=WebhookResponse,
    summary="Mercado Pago webhook endpoint",
    description="Handle Mercado Pago payment notifications",
)
async def mercadopago_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: Optional[GatewayClient] = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """
    Handle Mercado Pago notifications.

    Answers 200 for anything but a bad signature; purchases a failed
    delivery leaves pending are settled by the sweeper.
    """
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    handler = WebhookHandler(db, gateway, settings)
    try:
        outcome = await handler.handle(
            body,
            dict(request.query_params),
            signature=request.headers.get("x-signature"),
            request_id=request.headers.get("x-request-id"),
        )
    except WebhookError as e:
        logger.error("api_webhook_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        await db.rollback()
        logger.error("api_webhook_unexpected_error", error=str(e), error_type=type(e).__name__)
        return {"received": True, "status": "error"}

    return {"received": True, "status": outcome.status}


@admin_router.post(
    "/reconcile-pending",
    response_model=SweepResponse,
    summary="Reconcile pending purchases",
    description="Check stale pending purchases against the gateway and backfill revenue shares",
    dependencies=[Depends(require_admin_key)],
)
async def reconcile_pending(
    min_age_minutes: Optional[int] = None,
    limit: Optional[int] = None,
    gateway: Optional[GatewayClient] = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> Any:
    """Run the pending purchase sweeper once."""
    if gateway is None or not settings.is_payment_configured:
        raise PaymentConfigurationError("Mercado Pago access token is not configured")

    logger.info("api_reconcile_pending_started", min_age_minutes=min_age_minutes)
    sweeper = PendingPurchaseSweeper(gateway, settings, session_factory)
    result = await sweeper.run(min_age_minutes=min_age_minutes, limit=limit)

    if result.total == 0:
        message = "Nenhuma compra pendente para reconciliar"
    else:
        message = f"Reconciliação concluída: {result.reconciled} compras liberadas"
    return SweepResponse(message=message, results=result.model_dump(mode="json"))


def _health_check(
    gateway: Optional[GatewayClient] = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> HealthCheck:
    return HealthCheck(settings, session_factory, gateway)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
