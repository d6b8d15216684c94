"""Allotment store backed by SQLAlchemy ORM (PostgreSQL).

Implements the ``AllotmentStore`` protocol the engine depends on.

Usage:
    from allotrack.repositories.allotment_orm import SqlAlchemyAllotmentStore

    store = SqlAlchemyAllotmentStore(database.session)
    offerings = await store.list_trackable_offerings(since)
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Callable, Sequence

from sqlalchemy import select, text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from allotrack.core.logging import get_logger
from allotrack.database.orm import (
    AllotmentResult,
    NotificationLog,
    Offering,
    SubscriptionRecord,
    UserApplication,
)
from allotrack.domain.models import (
    AllotmentResultRecord,
    OfferingDetails,
    OfferingSnapshot,
    SubscriptionSnapshot,
    UserApplicationLink,
)


logger = get_logger("repositories.allotment_orm")

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

TRACKABLE_STATUSES = ("closed", "listed")

# Columns the engine may change on a user application
APPLICATION_UPDATABLE = frozenset(
    {
        "allotment_status",
        "allotted_quantity",
        "allotted_amount",
        "refund_amount",
        "result_received_at",
        "notified_at",
    }
)


def _subscription_to_snapshot(row: SubscriptionRecord) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        category=row.category,
        subscription_ratio=float(row.subscription_ratio or 0),
        quantity=row.quantity,
        bid_count=row.bid_count,
        timestamp=row.recorded_at,
    )


def _offering_to_snapshot(row: Offering) -> OfferingSnapshot:
    return OfferingSnapshot(
        id=row.id,
        symbol=row.symbol,
        name=row.name or "",
        status=row.status,
        details=OfferingDetails(
            open_date=row.open_date,
            close_date=row.close_date,
            listing_date=row.listing_date,
            allotment_date=row.allotment_date,
            registrar=row.registrar,
            lot_size=row.lot_size or 1,
            min_price=row.min_price,
            max_price=row.max_price,
            cut_off_price=row.cut_off_price,
            issue_size=row.issue_size,
        ),
    )


class SqlAlchemyAllotmentStore:
    """PostgreSQL implementation of the allotment store."""

    def __init__(self, session_factory: SessionFactory):
        self._session = session_factory

    async def list_trackable_offerings(self, since: datetime) -> list[OfferingSnapshot]:
        """Closed or listed offerings whose close date is on or after ``since``."""
        async with self._session() as session:
            result = await session.execute(
                select(Offering)
                .where(
                    Offering.status.in_(TRACKABLE_STATUSES),
                    Offering.close_date >= since,
                )
                .order_by(Offering.close_date.desc())
            )
            return [_offering_to_snapshot(row) for row in result.scalars().all()]

    async def list_pending_applications(
        self, offering_ids: Sequence[str]
    ) -> list[UserApplicationLink]:
        """Submitted applications not yet notified."""
        if not offering_ids:
            return []
        async with self._session() as session:
            result = await session.execute(
                select(UserApplication).where(
                    UserApplication.offering_id.in_(list(offering_ids)),
                    UserApplication.status == "submitted",
                    UserApplication.notified_at.is_(None),
                )
            )
            return [UserApplicationLink.model_validate(row) for row in result.scalars().all()]

    async def list_allotment_results(self, offering_id: str) -> list[AllotmentResultRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(AllotmentResult)
                .where(AllotmentResult.offering_id == offering_id)
                .order_by(AllotmentResult.pan_number, AllotmentResult.application_number)
            )
            return [AllotmentResultRecord.model_validate(row) for row in result.scalars().all()]

    async def latest_subscriptions(self, offering_id: str) -> list[SubscriptionSnapshot]:
        """Most recent snapshot per category (PostgreSQL DISTINCT ON)."""
        async with self._session() as session:
            result = await session.execute(
                select(SubscriptionRecord)
                .where(SubscriptionRecord.offering_id == offering_id)
                .order_by(SubscriptionRecord.category, SubscriptionRecord.recorded_at.desc())
                .distinct(SubscriptionRecord.category)
            )
            return [_subscription_to_snapshot(row) for row in result.scalars().all()]

    async def upsert_allotment_result(self, record: AllotmentResultRecord) -> None:
        values = {
            "offering_id": record.offering_id,
            "pan_number": record.pan_number,
            "application_number": record.application_number,
            "category": record.category,
            "applied_quantity": record.applied_quantity,
            "allotted_quantity": record.allotted_quantity,
            "allotment_status": record.allotment_status,
            "lot_size": record.lot_size,
            "final_price": record.final_price,
            "applied_amount": record.applied_amount,
            "allotted_amount": record.allotted_amount,
            "refund_amount": record.refund_amount,
            "source": record.source,
            "fetched_at": record.fetched_at,
            "processed_at": record.processed_at,
        }
        key = ("offering_id", "pan_number", "application_number")
        stmt = insert(AllotmentResult).values(**values).on_conflict_do_update(
            index_elements=list(key),
            set_={name: value for name, value in values.items() if name not in key},
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def update_application(self, application_id: str, changes: dict[str, Any]) -> None:
        unknown = set(changes) - APPLICATION_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update application fields: {sorted(unknown)}")
        if not changes:
            return
        async with self._session() as session:
            await session.execute(
                update(UserApplication)
                .where(UserApplication.id == application_id)
                .values(**changes)
            )
            await session.commit()

    async def create_notification_log(self, entry: dict[str, Any]) -> None:
        log = NotificationLog(
            user_id=entry["user_id"],
            offering_id=entry.get("offering_id"),
            application_id=entry.get("application_id"),
            notification_type=entry["type"],
            title=entry["title"],
            message=entry["message"],
            data=entry.get("data"),
        )
        if entry.get("created_at") is not None:
            log.created_at = entry["created_at"]
        async with self._session() as session:
            session.add(log)
            await session.commit()

    async def list_user_applications(
        self, user_id: str, offering_id: str | None = None
    ) -> list[UserApplicationLink]:
        async with self._session() as session:
            stmt = select(UserApplication).where(UserApplication.user_id == user_id)
            if offering_id is not None:
                stmt = stmt.where(UserApplication.offering_id == offering_id)
            stmt = stmt.order_by(UserApplication.submitted_at.desc())
            result = await session.execute(stmt)
            return [UserApplicationLink.model_validate(row) for row in result.scalars().all()]

    async def ping(self) -> bool:
        async with self._session() as session:
            await session.execute(text("SELECT 1"))
        return True
