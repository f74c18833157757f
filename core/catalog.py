"""
Read-only catalog lookups.

Photos, campaigns and organizations are owned by the catalog service; the
checkout engine only reads prices, sellers and split percentages.
"""
import uuid
from typing import Dict, Iterable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Campaign, Organization, Photo

logger = structlog.get_logger(__name__)


def parse_uuid(value) -> Optional[uuid.UUID]:
    """Parse a UUID, returning None for anything that is not one."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except (TypeError, ValueError, AttributeError):
        return None


class CatalogReader:
    """Lookups over the catalog tables."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_photos(self, photo_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Photo]:
        """
        Fetch photos by id.

        Args:
            photo_ids: Photo ids; duplicates are fetched once

        Returns:
            Dict[uuid.UUID, Photo]: Found photos keyed by id. Missing ids are
            absent from the mapping.
        """
        ids = list(set(photo_ids))
        if not ids:
            return {}

        stmt = select(Photo).where(Photo.id.in_(ids))
        result = await self.db.execute(stmt)
        return {photo.id: photo for photo in result.scalars().all()}

    async def get_campaigns(
        self, campaign_ids: Iterable[uuid.UUID]
    ) -> Dict[uuid.UUID, Campaign]:
        ids = list(set(campaign_ids))
        if not ids:
            return {}

        stmt = select(Campaign).where(Campaign.id.in_(ids))
        result = await self.db.execute(stmt)
        return {campaign.id: campaign for campaign in result.scalars().all()}

    async def get_campaign(self, campaign_id: Optional[uuid.UUID]) -> Optional[Campaign]:
        if campaign_id is None:
            return None
        return await self.db.get(Campaign, campaign_id)

    async def get_organization(
        self, organization_id: Optional[uuid.UUID]
    ) -> Optional[Organization]:
        if organization_id is None:
            return None
        return await self.db.get(Organization, organization_id)
