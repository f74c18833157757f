"""SQLAlchemy database models for the photo checkout engine."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite has no BIGINT autoincrement; INTEGER PRIMARY KEY is its rowid alias
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

Money = Numeric(10, 2, asdecimal=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Organization(Base):
    """
    Event-organizing entity that takes a cut of campaign sales.

    Owned by the catalog service; the checkout engine only reads
    ``admin_percentage`` when splitting revenue.
    """

    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    admin_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2, asdecimal=True), nullable=False, default=Decimal("0")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, admin_percentage={self.admin_percentage})>"


class Campaign(Base):
    """Event/album grouping photos of one photographer (read-only here)."""

    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    photographer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("organizations.id"), nullable=True, index=True
    )
    progressive_discount_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<Campaign(id={self.id}, organization_id={self.organization_id})>"


class Photo(Base):
    """Sellable photo (read-only here)."""

    __tablename__ = "photos"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("campaigns.id"), nullable=False, index=True
    )
    photographer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<Photo(id={self.id}, price={self.price})>"


class Purchase(Base):
    """
    Purchase records table.

    One row per (photo, buyer) pairing in a cart. Rows of one cart share a
    checkout reference, which is the only link to the gateway charge.
    ``gateway_reference`` keeps the wire form (``<token>|mp:<payment id>``)
    read by external reconciliation tooling; lookups use the structured
    ``reference_token`` and ``gateway_payment_id`` columns.
    """

    __tablename__ = "purchases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    photo_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    photographer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    payment_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    reference_kind: Mapped[str | None] = mapped_column(String(10), nullable=True)
    reference_token: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    gateway_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_purchase_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="valid_purchase_status",
        ),
        CheckConstraint(
            "reference_kind IS NULL OR reference_kind IN ('single', 'batch')",
            name="valid_reference_kind",
        ),
        Index("idx_purchases_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Purchase(id={self.id}, photo_id={self.photo_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class RevenueShare(Base):
    """
    Revenue split of a completed purchase.

    At most one row per purchase (unique ``purchase_id``). Written once,
    never updated.
    """

    __tablename__ = "revenue_shares"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    purchase_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("purchases.id"), nullable=False, unique=True
    )
    campaign_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    photographer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    platform_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    organization_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    photographer_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    platform_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2, asdecimal=True), nullable=False)
    organization_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2, asdecimal=True), nullable=False
    )
    photographer_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2, asdecimal=True), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("photographer_amount >= 0", name="non_negative_photographer_amount"),
    )

    def __repr__(self) -> str:
        return (
            f"<RevenueShare(purchase_id={self.purchase_id}, platform={self.platform_amount}, "
            f"organization={self.organization_amount}, photographer={self.photographer_amount})>"
        )


class WebhookLog(Base):
    """
    Gateway notification audit trail.

    One row per delivery, written before reconciliation runs and updated
    with the outcome afterwards.
    """

    __tablename__ = "webhook_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    request_body: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        return f"<WebhookLog(id={self.id}, type={self.event_type}, payment_id={self.payment_id})>"
