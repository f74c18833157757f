"""
Tests for the idempotent revenue share recorder.
"""
import uuid
from decimal import Decimal
from typing import List

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_fakes import revenue_shares
from core.ledger import PurchaseLedger, PurchaseLine
from core.revenue_share import RevenueShareRecorder, ShareOutcome
from core.state_machine import PurchaseStatus
from database.models import Campaign, Organization, Photo, RevenueShare


def line_for(photo: Photo, with_campaign: bool = True) -> PurchaseLine:
    return PurchaseLine(
        photo_id=photo.id,
        photographer_id=photo.photographer_id,
        campaign_id=photo.campaign_id if with_campaign else None,
        amount=photo.price,
    )


async def completed_purchases(db: AsyncSession, lines: List[PurchaseLine]) -> List[uuid.UUID]:
    ledger = PurchaseLedger(db)
    ids = await ledger.create_pending("buyer-1", lines, "pix")
    await ledger.update_status(ids, PurchaseStatus.COMPLETED)
    await db.commit()
    return ids


@pytest.mark.integration
class TestRevenueShareRecorder:
    """Test suite for RevenueShareRecorder."""

    @pytest.mark.asyncio
    async def test_share_with_organization(self, test_db: AsyncSession, catalog) -> None:
        """A 100.00 sale under a 20% organization splits 9 / 20 / 71."""
        photo = catalog.premium_photos[0]
        ids = await completed_purchases(test_db, [line_for(photo)])

        result = await RevenueShareRecorder(test_db).record_if_absent(ids[0])
        await test_db.commit()

        assert result.outcome is ShareOutcome.CREATED
        shares = await revenue_shares(test_db, ids)
        assert len(shares) == 1
        share = shares[0]
        assert share.total_amount == Decimal("100.00")
        assert share.platform_amount == Decimal("9.00")
        assert share.organization_amount == Decimal("20.00")
        assert share.photographer_amount == Decimal("71.00")
        assert share.organization_id == catalog.organization.id
        assert share.campaign_id == catalog.premium_campaign.id
        assert share.photographer_id == "photographer-3"

    @pytest.mark.asyncio
    async def test_share_without_organization(self, test_db: AsyncSession, catalog) -> None:
        photo = catalog.solo_photos[0]
        ids = await completed_purchases(test_db, [line_for(photo)])

        result = await RevenueShareRecorder(test_db).record_if_absent(ids[0])

        assert result.outcome is ShareOutcome.CREATED
        assert result.split.platform_amount == Decimal("0.45")
        assert result.split.organization_amount == Decimal("0.00")
        assert result.split.photographer_amount == Decimal("4.55")

    @pytest.mark.asyncio
    async def test_second_call_is_noop(self, test_db: AsyncSession, catalog) -> None:
        photo = catalog.event_photos[0]
        ids = await completed_purchases(test_db, [line_for(photo)])
        recorder = RevenueShareRecorder(test_db)

        first = await recorder.record_if_absent(ids[0])
        await test_db.commit()
        second = await recorder.record_if_absent(ids[0])
        await test_db.commit()

        assert first.outcome is ShareOutcome.CREATED
        assert second.outcome is ShareOutcome.ALREADY_RECORDED
        assert len(await revenue_shares(test_db, ids)) == 1

    @pytest.mark.asyncio
    async def test_pending_purchase_skipped(self, test_db: AsyncSession, catalog) -> None:
        ledger = PurchaseLedger(test_db)
        ids = await ledger.create_pending("buyer-1", [line_for(catalog.event_photos[0])], "pix")
        await test_db.commit()

        result = await RevenueShareRecorder(test_db).record_if_absent(ids[0])

        assert result.outcome is ShareOutcome.SKIPPED
        assert result.reason == "purchase_not_completed"

    @pytest.mark.asyncio
    async def test_unknown_purchase_skipped(self, test_db: AsyncSession) -> None:
        result = await RevenueShareRecorder(test_db).record_if_absent(uuid.uuid4())

        assert result.outcome is ShareOutcome.SKIPPED
        assert result.reason == "purchase_not_found"

    @pytest.mark.asyncio
    async def test_missing_campaign_id_falls_back_to_photo(self, test_db: AsyncSession, catalog) -> None:
        """Rows written without a campaign id take it from the photo."""
        photo = catalog.event_photos[0]
        ids = await completed_purchases(test_db, [line_for(photo, with_campaign=False)])

        result = await RevenueShareRecorder(test_db).record_if_absent(ids[0])

        assert result.outcome is ShareOutcome.CREATED
        assert result.split.organization_amount == Decimal("2.00")

    @pytest.mark.asyncio
    async def test_missing_organization_skips_only_that_row(
        self, test_db: AsyncSession, catalog
    ) -> None:
        """A broken catalog row does not stop its siblings."""
        orphan = Campaign(
            id=uuid.uuid4(),
            title="Campanha sem organização",
            photographer_id="photographer-9",
            organization_id=uuid.uuid4(),
        )
        test_db.add(orphan)
        await test_db.commit()
        ok_line = line_for(catalog.solo_photos[0])
        broken_line = PurchaseLine(
            photo_id=uuid.uuid4(),
            photographer_id="photographer-9",
            campaign_id=orphan.id,
            amount=Decimal("10.00"),
        )
        ids = await completed_purchases(test_db, [broken_line, ok_line])
        recorder = RevenueShareRecorder(test_db)

        outcomes = [await recorder.record_if_absent(pid) for pid in ids]
        await test_db.commit()

        assert outcomes[0].outcome is ShareOutcome.SKIPPED
        assert outcomes[0].reason == "organization_not_found"
        assert outcomes[1].outcome is ShareOutcome.CREATED
        assert [share.purchase_id for share in await revenue_shares(test_db, ids)] == [ids[1]]

    @pytest.mark.asyncio
    async def test_inconsistent_organization_percentage_is_clamped(
        self, test_db: AsyncSession, catalog
    ) -> None:
        greedy = Organization(id=uuid.uuid4(), name="Organização", admin_percentage=Decimal("95"))
        campaign = Campaign(
            id=uuid.uuid4(),
            title="Evento",
            photographer_id="photographer-4",
            organization_id=greedy.id,
        )
        test_db.add_all([greedy, campaign])
        await test_db.commit()
        line = PurchaseLine(
            photo_id=uuid.uuid4(),
            photographer_id="photographer-4",
            campaign_id=campaign.id,
            amount=Decimal("50.00"),
        )
        ids = await completed_purchases(test_db, [line])

        result = await RevenueShareRecorder(test_db).record_if_absent(ids[0])

        assert result.outcome is ShareOutcome.CREATED
        assert result.split.inconsistent
        assert result.split.photographer_amount == Decimal("0.00")
        assert result.split.platform_amount + result.split.organization_amount == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_unique_constraint_guards_concurrent_writers(
        self, test_db: AsyncSession, catalog
    ) -> None:
        """A second row for the same purchase never reaches the table."""
        photo = catalog.event_photos[0]
        ids = await completed_purchases(test_db, [line_for(photo)])
        await RevenueShareRecorder(test_db).record_if_absent(ids[0])
        await test_db.commit()

        test_db.add(
            RevenueShare(
                purchase_id=ids[0],
                total_amount=Decimal("10.00"),
                platform_amount=Decimal("0.90"),
                organization_amount=Decimal("2.00"),
                photographer_amount=Decimal("7.10"),
                platform_percentage=Decimal("9"),
                organization_percentage=Decimal("20"),
                photographer_percentage=Decimal("71"),
            )
        )
        with pytest.raises(IntegrityError):
            await test_db.flush()
        await test_db.rollback()

        existing = await test_db.scalar(
            select(RevenueShare.id).where(RevenueShare.purchase_id == ids[0])
        )
        assert existing is not None
