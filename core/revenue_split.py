"""
Three-way revenue split between platform, organization and photographer.

Two shares are rounded by percentage and the photographer share is derived
by subtraction, so the parts always add up to the sale amount to the cent.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict

from core.pricing import to_money

logger = structlog.get_logger(__name__)

DEFAULT_PLATFORM_PERCENTAGE = Decimal("9")
HUNDRED = Decimal(100)


class RevenueSplit(BaseModel):
    """Split of one completed sale."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    platform_amount: Decimal
    organization_amount: Decimal
    photographer_amount: Decimal
    platform_percentage: Decimal
    organization_percentage: Decimal
    photographer_percentage: Decimal
    inconsistent: bool = False


def split_revenue(
    amount: Decimal,
    organization_percentage: Optional[Decimal] = None,
    platform_percentage: Decimal = DEFAULT_PLATFORM_PERCENTAGE,
    organization_id: Optional[str] = None,
) -> RevenueSplit:
    """
    Split a sale amount.

    Args:
        amount: Completed sale amount
        organization_percentage: Organization ``admin_percentage``; None
            when the sale has no organization
        platform_percentage: Platform share percent
        organization_id: Only used to give context to the inconsistency log

    Returns:
        RevenueSplit: Amounts and the percentages actually applied. When the
        organization and platform percentages exceed 100 the photographer
        share is clamped to zero and ``inconsistent`` is set.
    """
    amount = to_money(amount)
    platform_percentage = Decimal(platform_percentage)
    org_pct = Decimal(organization_percentage) if organization_percentage is not None else Decimal(0)
    inconsistent = False

    available = HUNDRED - platform_percentage
    if org_pct < 0 or org_pct > available:
        logger.error(
            "revenue_split_inconsistent",
            organization_id=organization_id,
            organization_percentage=str(org_pct),
            platform_percentage=str(platform_percentage),
            amount=str(amount),
        )
        inconsistent = True
        org_pct = min(max(org_pct, Decimal(0)), available)

    photographer_pct = available - org_pct

    platform_amount = to_money(amount * platform_percentage / HUNDRED)
    organization_amount = to_money(amount * org_pct / HUNDRED)
    photographer_amount = amount - platform_amount - organization_amount

    # Half-up rounding of both shares can overshoot by a cent
    if photographer_amount < 0:
        organization_amount += photographer_amount
        photographer_amount = Decimal("0.00")

    return RevenueSplit(
        amount=amount,
        platform_amount=platform_amount,
        organization_amount=organization_amount,
        photographer_amount=photographer_amount,
        platform_percentage=platform_percentage,
        organization_percentage=org_pct,
        photographer_percentage=photographer_pct,
        inconsistent=inconsistent,
    )
