"""
Revenue share recorder.

Writes at most one ``RevenueShare`` per completed purchase. A presence
check makes repeated calls a no-op; the unique constraint on
``purchase_id`` is the final guard against concurrent writers.
"""
import uuid
from decimal import Decimal
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.catalog import CatalogReader
from core.revenue_split import RevenueSplit, split_revenue
from core.state_machine import PurchaseStatus
from database.models import Purchase, RevenueShare, utcnow
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ShareOutcome(str, Enum):
    CREATED = "created"
    ALREADY_RECORDED = "already_recorded"
    SKIPPED = "skipped"


class RevenueShareResult(BaseModel):
    """Outcome of one ``record_if_absent`` call."""

    purchase_id: uuid.UUID
    outcome: ShareOutcome
    reason: Optional[str] = None
    split: Optional[RevenueSplit] = None


class RevenueShareRecorder:
    """Idempotent writer of revenue shares."""

    def __init__(self, db: AsyncSession, platform_percentage: Decimal = Decimal("9")):
        self.db = db
        self.platform_percentage = platform_percentage
        self.catalog = CatalogReader(db)

    async def record_if_absent(self, purchase_id: uuid.UUID) -> RevenueShareResult:
        """
        Record the split of a completed purchase unless one exists.

        Missing purchase, campaign or organization data is logged and the
        purchase skipped; nothing is raised so sibling rows still get their
        shares.

        Args:
            purchase_id: Completed purchase

        Returns:
            RevenueShareResult: ``created``, ``already_recorded`` or ``skipped``

        Raises:
            sqlalchemy.exc.IntegrityError: On flush, when a concurrent writer
                recorded the same purchase first. The caller rolls back.
        """
        existing = await self.db.scalar(
            select(RevenueShare.id).where(RevenueShare.purchase_id == purchase_id)
        )
        if existing is not None:
            logger.info("revenue_share_already_recorded", purchase_id=str(purchase_id))
            return self._result(purchase_id, ShareOutcome.ALREADY_RECORDED)

        purchase = await self.db.get(Purchase, purchase_id)
        if purchase is None:
            logger.warning("revenue_share_purchase_not_found", purchase_id=str(purchase_id))
            return self._result(purchase_id, ShareOutcome.SKIPPED, "purchase_not_found")

        if purchase.status != PurchaseStatus.COMPLETED.value:
            logger.warning(
                "revenue_share_purchase_not_completed",
                purchase_id=str(purchase_id),
                status=purchase.status,
            )
            return self._result(purchase_id, ShareOutcome.SKIPPED, "purchase_not_completed")

        campaign_id = purchase.campaign_id
        if campaign_id is None:
            photos = await self.catalog.get_photos([purchase.photo_id])
            photo = photos.get(purchase.photo_id)
            campaign_id = photo.campaign_id if photo is not None else None

        campaign = await self.catalog.get_campaign(campaign_id)
        if campaign is None:
            logger.warning(
                "revenue_share_campaign_not_found",
                purchase_id=str(purchase_id),
                campaign_id=str(campaign_id) if campaign_id else None,
            )
            return self._result(purchase_id, ShareOutcome.SKIPPED, "campaign_not_found")

        organization = None
        if campaign.organization_id is not None:
            organization = await self.catalog.get_organization(campaign.organization_id)
            if organization is None:
                logger.warning(
                    "revenue_share_organization_not_found",
                    purchase_id=str(purchase_id),
                    organization_id=str(campaign.organization_id),
                )
                return self._result(purchase_id, ShareOutcome.SKIPPED, "organization_not_found")

        split = split_revenue(
            purchase.amount,
            organization_percentage=organization.admin_percentage if organization else None,
            platform_percentage=self.platform_percentage,
            organization_id=str(organization.id) if organization else None,
        )
        if split.inconsistent:
            metrics.record_split_inconsistency()

        self.db.add(
            RevenueShare(
                purchase_id=purchase.id,
                campaign_id=campaign.id,
                organization_id=organization.id if organization else None,
                photographer_id=purchase.photographer_id or campaign.photographer_id,
                total_amount=split.amount,
                platform_amount=split.platform_amount,
                organization_amount=split.organization_amount,
                photographer_amount=split.photographer_amount,
                platform_percentage=split.platform_percentage,
                organization_percentage=split.organization_percentage,
                photographer_percentage=split.photographer_percentage,
                created_at=utcnow(),
            )
        )
        await self.db.flush()

        logger.info(
            "revenue_share_created",
            purchase_id=str(purchase_id),
            total=str(split.amount),
            platform=str(split.platform_amount),
            organization=str(split.organization_amount),
            photographer=str(split.photographer_amount),
        )
        return self._result(purchase_id, ShareOutcome.CREATED, split=split)

    @staticmethod
    def _result(
        purchase_id: uuid.UUID,
        outcome: ShareOutcome,
        reason: Optional[str] = None,
        split: Optional[RevenueSplit] = None,
    ) -> RevenueShareResult:
        metrics.record_revenue_share(outcome.value)
        return RevenueShareResult(purchase_id=purchase_id, outcome=outcome, reason=reason, split=split)
