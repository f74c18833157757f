"""
Purchase ledger: persistence over purchase rows.

Status changes go through ``update_status`` only. Each row's move is
checked against ``core.state_machine.transition`` and then written with a
conditional ``UPDATE ... WHERE status = 'pending'``, so when two callers
confirm the same payment at once exactly one of them sees the row
transition.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.reference import CheckoutReference, ReferenceKind
from core.state_machine import InvalidTransitionError, PurchaseStatus, transition
from database.models import Purchase, RevenueShare, utcnow

logger = structlog.get_logger(__name__)


class PurchaseLine(BaseModel):
    """One photo of a cart, priced and attributed to its seller."""

    model_config = ConfigDict(frozen=True)

    photo_id: uuid.UUID
    photographer_id: str
    campaign_id: Optional[uuid.UUID] = None
    amount: Decimal


class PurchaseLedger:
    """Reads and state-gated writes over the ``purchases`` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_pending(
        self,
        buyer_id: str,
        lines: Sequence[PurchaseLine],
        payment_method: str,
    ) -> List[uuid.UUID]:
        """
        Insert one pending row per cart line.

        Args:
            buyer_id: Authenticated buyer
            lines: Priced cart lines
            payment_method: ``pix`` or ``card``

        Returns:
            List[uuid.UUID]: Row ids in cart order
        """
        now = utcnow()
        purchases = [
            Purchase(
                id=uuid.uuid4(),
                photo_id=line.photo_id,
                buyer_id=buyer_id,
                photographer_id=line.photographer_id,
                campaign_id=line.campaign_id,
                amount=line.amount,
                status=PurchaseStatus.PENDING.value,
                payment_method=payment_method,
                created_at=now,
                updated_at=now,
            )
            for line in lines
        ]
        self.db.add_all(purchases)
        await self.db.flush()

        purchase_ids = [purchase.id for purchase in purchases]
        logger.info(
            "purchase_batch_created",
            buyer_id=buyer_id,
            payment_method=payment_method,
            purchase_ids=[str(pid) for pid in purchase_ids],
        )
        return purchase_ids

    async def tag_with_reference(
        self, purchase_ids: Sequence[uuid.UUID], reference: CheckoutReference
    ) -> None:
        """Store the checkout reference (and gateway payment id, once known) on rows."""
        values = {
            "reference_kind": reference.kind.value,
            "reference_token": reference.token,
            "gateway_reference": reference.to_wire(),
            "updated_at": utcnow(),
        }
        if reference.gateway_payment_id:
            values["gateway_payment_id"] = reference.gateway_payment_id

        stmt = update(Purchase).where(Purchase.id.in_(list(purchase_ids))).values(**values)
        await self.db.execute(stmt)

        logger.info(
            "purchase_batch_tagged",
            reference=reference.to_wire(),
            purchase_count=len(purchase_ids),
        )

    async def update_status(
        self, purchase_ids: Sequence[uuid.UUID], status: PurchaseStatus | str
    ) -> List[uuid.UUID]:
        """
        Move pending rows to a terminal status.

        Rows that are already terminal are left untouched.

        Returns:
            List[uuid.UUID]: Ids of the rows this call transitioned

        Raises:
            InvalidTransitionError: If ``status`` is ``pending``
        """
        target = PurchaseStatus(status)
        if not target.is_terminal:
            raise InvalidTransitionError("purchases can only move to a terminal status")
        if not purchase_ids:
            return []

        current = await self.db.execute(
            select(Purchase.id, Purchase.status).where(Purchase.id.in_(list(purchase_ids)))
        )
        eligible = [
            purchase_id
            for purchase_id, status in current.all()
            if transition(status, target) is not None
        ]
        if not eligible:
            logger.debug(
                "purchase_status_unchanged",
                status=target.value,
                purchase_ids=[str(pid) for pid in purchase_ids],
            )
            return []

        # The status filter still guards against a concurrent writer
        stmt = (
            update(Purchase)
            .where(
                Purchase.id.in_(eligible),
                Purchase.status == PurchaseStatus.PENDING.value,
            )
            .values(status=target.value, updated_at=utcnow())
            .returning(Purchase.id)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.db.execute(stmt)
        transitioned = list(result.scalars().all())

        if transitioned:
            logger.info(
                "purchase_status_updated",
                status=target.value,
                purchase_ids=[str(pid) for pid in transitioned],
            )
        else:
            logger.debug(
                "purchase_status_unchanged",
                status=target.value,
                purchase_ids=[str(pid) for pid in purchase_ids],
            )
        return transitioned

    async def resolve_by_reference(
        self,
        reference: CheckoutReference | str | None,
        gateway_payment_id: Optional[str | int] = None,
    ) -> List[Purchase]:
        """
        Find the purchase rows a gateway payment covers.

        Tried in order until one yields rows:
        1. batch tag match on ``reference_token``
        2. gateway payment id (argument, or parsed from a ``|mp:`` suffix)
        3. reference as a literal purchase id or comma-separated id list

        Returns:
            List[Purchase]: Matching rows, oldest first; empty when nothing matches
        """
        parsed: Optional[CheckoutReference] = None
        if isinstance(reference, CheckoutReference):
            parsed = reference
        elif reference and reference.strip():
            parsed = CheckoutReference.from_wire(reference)

        gateway_id = str(gateway_payment_id) if gateway_payment_id else None
        if gateway_id is None and parsed is not None:
            gateway_id = parsed.gateway_payment_id

        if parsed is not None and parsed.kind is ReferenceKind.BATCH:
            rows = await self._select_where(Purchase.reference_token == parsed.token)
            if rows:
                logger.debug("purchases_resolved", strategy="batch_tag", count=len(rows))
                return rows

        if gateway_id:
            rows = await self._select_where(Purchase.gateway_payment_id == gateway_id)
            if rows:
                logger.debug("purchases_resolved", strategy="gateway_payment_id", count=len(rows))
                return rows

        if parsed is not None:
            literal_ids = parsed.literal_purchase_ids()
            if literal_ids:
                rows = await self._select_where(Purchase.id.in_(literal_ids))
                if rows:
                    logger.debug("purchases_resolved", strategy="purchase_id", count=len(rows))
                    return rows

        return []

    async def delete_batch(self, purchase_ids: Sequence[uuid.UUID]) -> int:
        """
        Delete a batch whose charge creation was refused.

        Only rows still pending are removed.

        Returns:
            int: Number of rows deleted
        """
        if not purchase_ids:
            return 0

        stmt = delete(Purchase).where(
            Purchase.id.in_(list(purchase_ids)),
            Purchase.status == PurchaseStatus.PENDING.value,
        )
        result = await self.db.execute(stmt)

        logger.info(
            "purchase_batch_deleted",
            purchase_ids=[str(pid) for pid in purchase_ids],
            deleted=result.rowcount,
        )
        return result.rowcount

    async def get_statuses(self, purchase_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, str]:
        """Current status of each row, read from the database."""
        if not purchase_ids:
            return {}
        stmt = select(Purchase.id, Purchase.status).where(Purchase.id.in_(list(purchase_ids)))
        result = await self.db.execute(stmt)
        return {row.id: row.status for row in result}

    async def list_stale_pending(
        self, older_than: datetime, limit: Optional[int] = None
    ) -> List[Purchase]:
        """Pending rows created before ``older_than``, oldest first."""
        stmt = (
            select(Purchase)
            .where(
                Purchase.status == PurchaseStatus.PENDING.value,
                Purchase.created_at < older_than,
            )
            .order_by(Purchase.created_at)
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_completed_without_share(self, limit: Optional[int] = None) -> List[Purchase]:
        """Completed rows that have no revenue share yet."""
        has_share = select(RevenueShare.id).where(RevenueShare.purchase_id == Purchase.id).exists()
        stmt = (
            select(Purchase)
            .where(Purchase.status == PurchaseStatus.COMPLETED.value, ~has_share)
            .order_by(Purchase.created_at)
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _select_where(self, criterion) -> List[Purchase]:
        stmt = select(Purchase).where(criterion).order_by(Purchase.created_at, Purchase.id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
