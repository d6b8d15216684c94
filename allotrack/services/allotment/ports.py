"""Collaborator interfaces used by the allotment engine.

The engine only talks to the outside world through these protocols, so the
SQLAlchemy store, HTTP sources and Valkey notifier can all be swapped for
in-memory fakes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, Sequence, runtime_checkable

from allotrack.domain.models import (
    AllotmentResultRecord,
    OfferingSnapshot,
    SubscriptionSnapshot,
    UserApplicationLink,
)


@runtime_checkable
class AllotmentStore(Protocol):
    """Persistent store holding offerings, applications and results."""

    async def list_trackable_offerings(self, since: datetime) -> list[OfferingSnapshot]:
        """Offerings closed or listed with a close date on or after ``since``."""
        ...

    async def list_pending_applications(
        self, offering_ids: Sequence[str]
    ) -> list[UserApplicationLink]:
        """Submitted user applications for the given offerings."""
        ...

    async def list_allotment_results(self, offering_id: str) -> list[AllotmentResultRecord]:
        ...

    async def latest_subscriptions(self, offering_id: str) -> list[SubscriptionSnapshot]:
        """Recent subscription snapshots, any order; callers pick the latest."""
        ...

    async def upsert_allotment_result(self, record: AllotmentResultRecord) -> None:
        """Insert or replace by (offering id, PAN, application number)."""
        ...

    async def update_application(self, application_id: str, changes: dict[str, Any]) -> None:
        ...

    async def create_notification_log(self, entry: dict[str, Any]) -> None:
        ...

    async def list_user_applications(
        self, user_id: str, offering_id: str | None = None
    ) -> list[UserApplicationLink]:
        ...

    async def ping(self) -> bool:
        ...


@runtime_checkable
class ResultSource(Protocol):
    """External publisher of allotment results."""

    @property
    def name(self) -> str:
        ...

    async def has_results(self, symbol: str, registrar: str | None) -> bool:
        """Cheap availability check; may raise on transport errors."""
        ...

    async def fetch_results(
        self, symbol: str, registrar: str | None, since: datetime
    ) -> list[dict[str, Any]]:
        """Raw records normalised to snake_case keys."""
        ...

    def health(self) -> dict[str, Any]:
        ...


@runtime_checkable
class Notifier(Protocol):
    """Broadcast channel for user-facing events."""

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        ...


@runtime_checkable
class AnalyticsProvider(Protocol):
    """Read-only enrichment computed by the analytics aggregator."""

    async def compute_offering_analytics(self, offering_id: str) -> dict[str, Any]:
        ...
