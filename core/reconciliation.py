"""
Pending purchase sweeper.

Settles purchases whose confirmation never arrived (lost webhook, buyer
closed the page before polling):
- Pending rows older than a minimum age are grouped by gateway payment id
- Rows whose charge creation timed out have no payment id yet; their
  payment is searched by checkout reference and adopted
- Each payment is looked up once and reconciled like a webhook would
- Completed purchases without a revenue share get one (backfill)
"""
import asyncio
import time
import uuid
from collections import OrderedDict
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from core.checkout import CheckoutService
from core.exceptions import CheckoutError
from core.ledger import PurchaseLedger
from core.reference import CheckoutReference
from core.state_machine import PurchaseStatus, status_from_gateway
from database.connection import get_session_factory, session_scope
from database.models import utcnow
from integrations.gateway import GatewayClient, GatewayError
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class SweepResult(BaseModel):
    """Tally of one sweep."""

    total: int = 0
    reconciled: int = 0
    skipped: int = 0
    failed: int = 0
    no_payment_id: int = 0
    shares_backfilled: Dict[str, int] = Field(default_factory=dict)
    details: List[Dict[str, Any]] = Field(default_factory=list)


class PendingPurchaseSweeper:
    """
    Periodic convergence of stale pending purchases.

    Safe to run while webhooks and polling are active: every write goes
    through the same state-gated reconcile path.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        logger.info("pending_purchase_sweeper_initialized")

    async def run(
        self, min_age_minutes: Optional[int] = None, limit: Optional[int] = None
    ) -> SweepResult:
        """
        Sweep pending purchases older than ``min_age_minutes``.

        Args:
            min_age_minutes: Minimum row age (defaults to the configured age)
            limit: Maximum number of rows examined

        Returns:
            SweepResult: Counts per outcome and per-payment details
        """
        started = time.perf_counter()
        if min_age_minutes is None:
            min_age_minutes = self.settings.pending_sweep_min_age_minutes
        cutoff = utcnow() - timedelta(minutes=min_age_minutes)

        logger.info("pending_sweep_started", min_age_minutes=min_age_minutes)

        result = SweepResult()
        async with session_scope(self.session_factory) as db:
            service = CheckoutService(db, self.gateway, self.settings)
            stale = await PurchaseLedger(db).list_stale_pending(cutoff, limit=limit)
            result.total = len(stale)

            groups: "OrderedDict[str, List[str]]" = OrderedDict()
            unmatched: "OrderedDict[str, List[uuid.UUID]]" = OrderedDict()
            for purchase in stale:
                if purchase.gateway_payment_id:
                    groups.setdefault(purchase.gateway_payment_id, []).append(str(purchase.id))
                elif purchase.reference_token:
                    # Create call never answered; the reference is all we have
                    unmatched.setdefault(purchase.reference_token, []).append(purchase.id)
                else:
                    result.no_payment_id += 1
                    result.details.append(
                        {
                            "purchase_id": str(purchase.id),
                            "status": "skipped",
                            "reason": "no gateway payment id",
                        }
                    )

            requests_made = 0
            for token, unmatched_ids in unmatched.items():
                if requests_made:
                    await asyncio.sleep(self.settings.pending_sweep_request_delay_seconds)
                requests_made += 1
                payment_id = await self._adopt_payment(service, token, unmatched_ids, result)
                if payment_id is not None:
                    groups.setdefault(payment_id, []).extend(str(pid) for pid in unmatched_ids)

            for payment_id, purchase_ids in groups.items():
                if requests_made:
                    await asyncio.sleep(self.settings.pending_sweep_request_delay_seconds)
                requests_made += 1
                await self._sweep_payment(service, payment_id, purchase_ids, result)

            result.shares_backfilled = await service.backfill_revenue_shares(limit=limit)

        duration = time.perf_counter() - started
        metrics.record_sweep(
            result.reconciled, result.skipped, result.failed, result.no_payment_id, duration
        )
        logger.info(
            "pending_sweep_completed",
            total=result.total,
            reconciled=result.reconciled,
            skipped=result.skipped,
            failed=result.failed,
            no_payment_id=result.no_payment_id,
            shares_backfilled=result.shares_backfilled,
            duration_seconds=round(duration, 3),
        )
        return result

    async def _adopt_payment(
        self,
        service: CheckoutService,
        token: str,
        purchase_ids: List[uuid.UUID],
        result: SweepResult,
    ) -> Optional[str]:
        """
        Find the payment for rows whose create call never answered.

        The rows are tagged with the payment id found, so later lookups and
        webhooks resolve them directly.

        Returns:
            Optional[str]: Gateway payment id, or None when the gateway has
            no payment for ``token``
        """
        count = len(purchase_ids)
        detail: Dict[str, Any] = {
            "reference": token,
            "purchase_ids": [str(pid) for pid in purchase_ids],
        }
        try:
            payments = await self.gateway.search_payments(token)
        except GatewayError as e:
            logger.error("pending_sweep_search_error", reference=token, error=e.message)
            result.failed += count
            result.details.append({**detail, "status": "error", "reason": e.message})
            return None

        if not payments:
            result.no_payment_id += count
            result.details.append(
                {**detail, "status": "skipped", "reason": "no payment at gateway for reference"}
            )
            return None

        # An approved charge wins over later retries of the same reference
        payment = next(
            (p for p in payments if status_from_gateway(p.status) is PurchaseStatus.COMPLETED),
            payments[0],
        )
        reference = CheckoutReference.from_wire(token).with_gateway_payment(payment.id)
        await service.ledger.tag_with_reference(purchase_ids, reference)
        await service.db.commit()

        logger.info(
            "pending_sweep_payment_adopted",
            reference=token,
            payment_id=payment.id,
            purchase_count=count,
        )
        return payment.id

    async def _sweep_payment(
        self,
        service: CheckoutService,
        payment_id: str,
        purchase_ids: List[str],
        result: SweepResult,
    ) -> None:
        count = len(purchase_ids)
        try:
            outcome = await service.check_status(payment_id)
        except CheckoutError as e:
            logger.error("pending_sweep_payment_error", payment_id=payment_id, error=e.message)
            result.failed += count
            result.details.append(
                {
                    "payment_id": payment_id,
                    "purchase_ids": purchase_ids,
                    "status": "error",
                    "reason": e.message,
                }
            )
            return

        target = status_from_gateway(outcome.gateway_status)
        detail = {
            "payment_id": payment_id,
            "purchase_ids": purchase_ids,
            "gateway_status": outcome.gateway_status,
        }
        if target is PurchaseStatus.COMPLETED:
            result.reconciled += count
            detail["status"] = "reconciled"
        elif target is PurchaseStatus.FAILED:
            result.failed += count
            detail["status"] = "cancelled"
            detail["reason"] = f"payment {outcome.gateway_status} at gateway"
        else:
            result.skipped += count
            detail["status"] = "skipped"
            detail["reason"] = f"payment still {outcome.gateway_status} at gateway"
        result.details.append(detail)
