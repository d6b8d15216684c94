"""SQLAlchemy ORM models for allotrack.

Usage:
    from allotrack.database.orm import Offering, AllotmentResult
    from allotrack.database.connection import Database

    async with Database.from_settings(settings).session() as session:
        offering = await session.get(Offering, offering_id)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# Naming convention for constraints and indexes (deterministic names for migrations)
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models with naming convention."""
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# =============================================================================
# OFFERINGS
# =============================================================================


class Offering(Base):
    """An IPO offering with its dates, registrar and price band."""
    __tablename__ = "offerings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="upcoming")  # upcoming, open, closed, listed
    open_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    close_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    allotment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    listing_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    registrar: Mapped[str | None] = mapped_column(String(100))
    lot_size: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    min_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    max_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    cut_off_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    issue_size: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    subscriptions: Mapped[list[SubscriptionRecord]] = relationship(back_populates="offering")

    __table_args__ = (
        Index("idx_offerings_status_close", "status", "close_date"),
        Index("idx_offerings_symbol", "symbol"),
    )


class SubscriptionRecord(Base):
    """Subscription snapshot for one category at one point in time."""
    __tablename__ = "offering_subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True)
    offering_id: Mapped[str] = mapped_column(ForeignKey("offerings.id", ondelete="CASCADE"), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    subscription_ratio: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False, default=0)
    quantity: Mapped[int | None] = mapped_column(Integer)
    bid_count: Mapped[int | None] = mapped_column(Integer)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    offering: Mapped[Offering] = relationship(back_populates="subscriptions")

    __table_args__ = (
        Index("idx_offering_subscriptions_latest", "offering_id", "recorded_at"),
    )


# =============================================================================
# APPLICATIONS & RESULTS
# =============================================================================


class UserApplication(Base):
    """A user's application, resolved once the allotment result is known."""
    __tablename__ = "user_applications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    offering_id: Mapped[str] = mapped_column(ForeignKey("offerings.id", ondelete="CASCADE"), nullable=False)
    pan_number: Mapped[str] = mapped_column(String(10), nullable=False)
    application_number: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False, default="RETAIL")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="submitted")  # draft, submitted, cancelled
    allotment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    allotted_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    allotted_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    result_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_user_applications_user", "user_id"),
        Index("idx_user_applications_offering", "offering_id", "status"),
    )


class AllotmentResult(Base):
    """Allotment outcome per (offering, PAN, application number)."""
    __tablename__ = "allotment_results"

    id: Mapped[int] = mapped_column(primary_key=True)
    offering_id: Mapped[str] = mapped_column(ForeignKey("offerings.id", ondelete="CASCADE"), nullable=False)
    pan_number: Mapped[str] = mapped_column(String(10), nullable=False)
    application_number: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False, default="UNKNOWN")
    applied_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    allotted_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    allotment_status: Mapped[str] = mapped_column(String(20), nullable=False)
    lot_size: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    final_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    applied_amount: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False, default=0)
    allotted_amount: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False, default=0)
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False, default=0)
    source: Mapped[str | None] = mapped_column(String(50))
    fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "offering_id", "pan_number", "application_number",
            name="uq_allotment_results_offering_pan_app",
        ),
        Index("idx_allotment_results_offering", "offering_id"),
    )


class NotificationLog(Base):
    """Record of every allotment notification sent to a user."""
    __tablename__ = "notification_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    offering_id: Mapped[str | None] = mapped_column(ForeignKey("offerings.id", ondelete="SET NULL"))
    application_id: Mapped[str | None] = mapped_column(String(36))
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_notification_log_user", "user_id", "created_at"),
    )
