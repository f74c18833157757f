"""
Pytest configuration and fixtures.
"""
import os

# Settings are read at import time by api.main
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("MERCADOPAGO_ACCESS_TOKEN", "TEST-0000000000000000-000000-fake")
os.environ.setdefault("APP_ENV", "test")

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from checkout_fakes import VALID_CPF, FakeGateway
from config import Settings, get_settings
from core.checkout import Buyer, CardDetails
from database.connection import (
    create_session_factory,
    engine_options,
    get_db,
    get_session_factory,
    session_scope,
)
from database.models import Base, Campaign, Organization, Photo


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        mercadopago_access_token="TEST-0000000000000000-000000-fake",
        mercadopago_webhook_secret=None,
        database_url="sqlite+aiosqlite://",
        app_name="photo-checkout-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
        pending_sweep_request_delay_seconds=0,
    )


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(test_settings.database_url, **engine_options(test_settings))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@dataclass
class SeededCatalog:
    """Catalog rows created for a test."""

    organization: Organization
    event_campaign: Campaign
    solo_campaign: Campaign
    premium_campaign: Campaign
    event_photos: List[Photo] = field(default_factory=list)
    solo_photos: List[Photo] = field(default_factory=list)
    premium_photos: List[Photo] = field(default_factory=list)
    unavailable_photo: Optional[Photo] = None


def _photos(campaign: Campaign, count: int, price: str) -> List[Photo]:
    return [
        Photo(
            id=uuid.uuid4(),
            campaign_id=campaign.id,
            photographer_id=campaign.photographer_id,
            price=Decimal(price),
            is_available=True,
        )
        for _ in range(count)
    ]


@pytest_asyncio.fixture
async def catalog(test_db: AsyncSession) -> SeededCatalog:
    """
    Seed organizations, campaigns and photos.

    - event campaign: organization at 20%, discount enabled, 12 photos at 10.00
    - solo campaign: no organization, discount enabled, 10 photos at 5.00
    - premium campaign: organization at 20%, discount disabled, 2 photos at 100.00
    """
    organization = Organization(
        id=uuid.uuid4(), name="Liga de Corrida", admin_percentage=Decimal("20")
    )
    event = Campaign(
        id=uuid.uuid4(),
        title="Maratona de Curitiba",
        photographer_id="photographer-1",
        organization_id=organization.id,
        progressive_discount_enabled=True,
    )
    solo = Campaign(
        id=uuid.uuid4(),
        title="Ensaio na praia",
        photographer_id="photographer-2",
        organization_id=None,
        progressive_discount_enabled=True,
    )
    premium = Campaign(
        id=uuid.uuid4(),
        title="Final do campeonato",
        photographer_id="photographer-3",
        organization_id=organization.id,
        progressive_discount_enabled=False,
    )
    seeded = SeededCatalog(
        organization=organization,
        event_campaign=event,
        solo_campaign=solo,
        premium_campaign=premium,
        event_photos=_photos(event, 12, "10.00"),
        solo_photos=_photos(solo, 10, "5.00"),
        premium_photos=_photos(premium, 2, "100.00"),
    )
    unavailable = _photos(event, 1, "10.00")[0]
    unavailable.is_available = False
    seeded.unavailable_photo = unavailable

    test_db.add_all([organization, event, solo, premium])
    await test_db.flush()
    test_db.add_all(
        seeded.event_photos + seeded.solo_photos + seeded.premium_photos + [unavailable]
    )
    await test_db.commit()
    return seeded


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def buyer() -> Buyer:
    return Buyer(name="Maria", surname="Silva", email="Maria@Example.com", tax_id=VALID_CPF)


@pytest.fixture
def card() -> CardDetails:
    return CardDetails(card_token="ff8080814c11e237014c1ff593b57b4d", card_brand_id="visa")


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    fake_gateway: FakeGateway,
    test_settings: Settings,
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client wired to the test database and fake gateway."""
    from api.main import app
    from api.routes import get_gateway

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_scope(session_factory) as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
