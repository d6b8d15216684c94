"""Pytest configuration and in-memory fakes for the allotment engine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Sequence

import pytest

from allotrack.cache.cache import Cache
from allotrack.core.exceptions import ExternalServiceError
from allotrack.domain.models import (
    AllotmentResultRecord,
    OfferingDetails,
    OfferingSnapshot,
    SubscriptionSnapshot,
    UserApplicationLink,
)
from allotrack.services.allotment.engine import AllotmentEngine, TrackingConfig


NOW = datetime(2024, 6, 20, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Clock & scheduler
# =============================================================================


class FakeClock:
    """Deterministic clock; advance it explicitly."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeScheduler:
    """Records pumps instead of running them; tests call pumps directly."""

    def __init__(self) -> None:
        self.running = False
        self.pumps: dict[str, tuple[Callable[[], Any], float]] = {}
        self.start_calls = 0
        self.shutdown_calls = 0

    def add_pump(self, name, func, seconds, description=None) -> None:
        self.pumps[name] = (func, seconds)

    def start(self) -> None:
        self.start_calls += 1
        self.running = True

    def shutdown(self) -> None:
        self.shutdown_calls += 1
        self.running = False

    def get_jobs_status(self) -> list[dict[str, Any]]:
        return [{"id": name, "seconds": seconds} for name, (_, seconds) in self.pumps.items()]


# =============================================================================
# Store, sources, notifier
# =============================================================================


class FakeStore:
    """In-memory AllotmentStore."""

    def __init__(self) -> None:
        self.offerings: list[OfferingSnapshot] = []
        self.subscriptions: dict[str, list[SubscriptionSnapshot]] = {}
        self.applications: dict[str, UserApplicationLink] = {}
        self.results: dict[tuple[str, str, str], AllotmentResultRecord] = {}
        self.notification_logs: list[dict[str, Any]] = []
        self.application_updates: list[tuple[str, dict[str, Any]]] = []
        self.upsert_calls = 0
        self.fail_writes = False
        self.failing_log_writes = 0
        self.healthy = True

    def add_offering(self, offering: OfferingSnapshot) -> OfferingSnapshot:
        self.offerings.append(offering)
        return offering

    def add_application(self, link: UserApplicationLink) -> UserApplicationLink:
        self.applications[link.id] = link
        return link

    async def list_trackable_offerings(self, since: datetime) -> list[OfferingSnapshot]:
        return [
            o for o in self.offerings
            if o.status in ("closed", "listed") and o.details.close_date >= since
        ]

    async def list_pending_applications(self, offering_ids: Sequence[str]) -> list[UserApplicationLink]:
        return [
            link.model_copy()
            for link in self.applications.values()
            if link.offering_id in offering_ids and link.notified_at is None
        ]

    async def list_allotment_results(self, offering_id: str) -> list[AllotmentResultRecord]:
        return [r for key, r in sorted(self.results.items()) if key[0] == offering_id]

    async def latest_subscriptions(self, offering_id: str) -> list[SubscriptionSnapshot]:
        return list(self.subscriptions.get(offering_id, []))

    async def upsert_allotment_result(self, record: AllotmentResultRecord) -> None:
        self.upsert_calls += 1
        if self.fail_writes:
            raise ConnectionError("database unavailable")
        self.results[(record.offering_id, *record.key)] = record

    async def update_application(self, application_id: str, changes: dict[str, Any]) -> None:
        if self.fail_writes:
            raise ConnectionError("database unavailable")
        self.application_updates.append((application_id, dict(changes)))
        link = self.applications.get(application_id)
        if link is not None:
            self.applications[application_id] = link.model_copy(update=changes)

    async def create_notification_log(self, entry: dict[str, Any]) -> None:
        if self.failing_log_writes:
            self.failing_log_writes -= 1
            raise ConnectionError("database unavailable")
        self.notification_logs.append(entry)

    async def list_user_applications(
        self, user_id: str, offering_id: Optional[str] = None
    ) -> list[UserApplicationLink]:
        return [
            link.model_copy()
            for link in self.applications.values()
            if link.user_id == user_id and (offering_id is None or link.offering_id == offering_id)
        ]

    async def ping(self) -> bool:
        if not self.healthy:
            raise ConnectionError("database unavailable")
        return True


class FakeSource:
    """Scripted ResultSource."""

    def __init__(
        self,
        name: str = "exchange",
        records: Optional[list[dict[str, Any]]] = None,
        available: Optional[bool] = None,
        error: Optional[Exception] = None,
        state: str = "closed",
    ):
        self._name = name
        self.records = records or []
        self.available = available
        self.error = error
        self.state = state
        self.check_calls = 0
        self.fetch_calls = 0

    @property
    def name(self) -> str:
        return self._name

    async def has_results(self, symbol: str, registrar: Optional[str]) -> bool:
        self.check_calls += 1
        if self.error:
            raise self.error
        if self.available is not None:
            return self.available
        return bool(self.records)

    async def fetch_results(self, symbol: str, registrar: Optional[str], since: datetime) -> list[dict[str, Any]]:
        self.fetch_calls += 1
        if self.error:
            raise self.error
        return [dict(record) for record in self.records]

    def health(self) -> dict[str, Any]:
        return {"enabled": True, "name": self._name, "circuit": {"state": self.state}}


class RecordingNotifier:
    """Notifier that records events; can fail for chosen applications."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.fail_for: set[str] = set()
        self.fail_types: set[str] = set()

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        if payload.get("application_id") in self.fail_for or event_type in self.fail_types:
            raise ExternalServiceError(message="broadcast unavailable")
        self.events.append((event_type, payload))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [payload for kind, payload in self.events if kind == event_type]


class FakeValkey:
    """Just enough of redis.asyncio.Redis for the cache and broadcaster."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.published: list[tuple[str, str]] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("valkey unavailable")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._check()
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def ping(self) -> bool:
        self._check()
        return True

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, message))
        return 1


# =============================================================================
# Builders
# =============================================================================


def build_offering(
    offering_id: str = "ipo-1",
    symbol: str = "ACME",
    closed_days_ago: float = 10,
    now: datetime = NOW,
    subscriptions: Sequence[SubscriptionSnapshot] = (),
    **details: Any,
) -> OfferingSnapshot:
    details.setdefault("registrar", "Link Intime")
    details.setdefault("lot_size", 10)
    details.setdefault("max_price", Decimal("100"))
    return OfferingSnapshot(
        id=offering_id,
        symbol=symbol,
        name=f"{symbol} Ltd",
        status="closed",
        details=OfferingDetails(close_date=now - timedelta(days=closed_days_ago), **details),
        subscriptions=list(subscriptions),
    )


def build_record(
    pan: str = "ABCDE1234F",
    app: str = "APP0001",
    applied: Any = 1,
    allotted: Any = 0,
    category: str = "RETAIL",
    **extra: Any,
) -> dict[str, Any]:
    record = {
        "pan_number": pan,
        "application_number": app,
        "category": category,
        "applied_quantity": applied,
        "allotted_quantity": allotted,
    }
    record.update(extra)
    return record


def build_link(
    link_id: str = "app-1",
    offering_id: str = "ipo-1",
    pan: str = "ABCDE1234F",
    app: str = "APP0001",
    user_id: str = "user-1",
    **fields: Any,
) -> UserApplicationLink:
    return UserApplicationLink(
        id=link_id,
        user_id=user_id,
        offering_id=offering_id,
        pan_number=pan,
        application_number=app,
        quantity=fields.pop("quantity", 1),
        amount=fields.pop("amount", Decimal("1000")),
        **fields,
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def valkey() -> FakeValkey:
    return FakeValkey()


@pytest.fixture
def cache(valkey: FakeValkey) -> Cache:
    async def factory() -> FakeValkey:
        return valkey

    return Cache(factory, prefix="allotment", default_ttl=60)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def make_engine(store, notifier, cache, clock, scheduler):
    """Factory building an engine wired to the in-memory fakes."""

    def factory(sources: Sequence[Any] = (), **overrides: Any) -> AllotmentEngine:
        config = overrides.pop("config", None) or TrackingConfig()
        return AllotmentEngine(
            store=overrides.pop("store", store),
            sources=list(sources),
            notifier=overrides.pop("notifier", notifier),
            cache=overrides.pop("cache", cache),
            config=config,
            clock=clock,
            scheduler=scheduler,
            **overrides,
        )

    return factory
