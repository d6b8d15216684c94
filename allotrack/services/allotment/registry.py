"""In-memory tracking state: registry entries, work queues and batch outcomes.

The registry is a cache of what the store knows. It is rebuilt from the store
on every start and cleared on stop.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Iterator

from allotrack.core.exceptions import InvariantViolation
from allotrack.core.logging import get_logger, offering_id_var
from allotrack.domain.models import (
    AllotmentPrediction,
    AllotmentResultRecord,
    AnalysisResult,
    LifecycleStatus,
    OfferingDetails,
    Priority,
    SubscriptionSnapshot,
    UserApplicationLink,
)


logger = get_logger("services.allotment.registry")

EXPECTED_ALLOTMENT_DAYS = 7
EXPECTED_RESULTS_DAYS = 8
OVERDUE_DAYS = 12


def days_since(moment: datetime, now: datetime) -> int:
    """Whole days elapsed, rounded up as calendar-style day counts are."""
    return math.ceil((now - moment).total_seconds() / 86400)


def priority_for(close_date: datetime, now: datetime, high_days: int = 7, medium_days: int = 14) -> Priority:
    elapsed = days_since(close_date, now)
    if elapsed <= high_days:
        return Priority.HIGH
    if elapsed <= medium_days:
        return Priority.MEDIUM
    return Priority.LOW


@dataclass
class Timeline:
    """Expected allotment and result dates for an offering."""

    close_date: datetime
    expected_allotment_date: datetime
    expected_results_date: datetime

    @classmethod
    def from_details(cls, details: OfferingDetails) -> "Timeline":
        return cls(
            close_date=details.close_date,
            expected_allotment_date=details.allotment_date
            or details.close_date + timedelta(days=EXPECTED_ALLOTMENT_DAYS),
            expected_results_date=details.close_date + timedelta(days=EXPECTED_RESULTS_DAYS),
        )

    def status(self, now: datetime) -> str:
        elapsed = days_since(self.close_date, now)
        if elapsed >= OVERDUE_DAYS:
            return "overdue"
        if elapsed >= EXPECTED_RESULTS_DAYS:
            return "expected"
        return "pending"

    def to_dict(self, now: datetime) -> dict[str, Any]:
        return {
            "days_from_close": days_since(self.close_date, now),
            "expected_allotment_date": self.expected_allotment_date.isoformat(),
            "expected_results_date": self.expected_results_date.isoformat(),
            "status": self.status(now),
        }


@dataclass
class TrackingStats:
    attempts: int = 0
    successful_checks: int = 0
    failures: int = 0
    total_applications: int = 0
    allotted_applications: int = 0
    processing_seconds: float | None = None
    # queue name -> consecutive failed passes through that queue
    pump_failures: dict[str, int] = field(default_factory=dict)


@dataclass
class NotificationState:
    notified: bool = False
    users_notified: int = 0
    notified_at: datetime | None = None
    # application id -> payload of events published but not yet logged
    unrecorded: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass
class TrackedOffering:
    """Registry entry for one offering under allotment tracking."""

    id: str
    symbol: str
    name: str
    details: OfferingDetails
    priority: Priority
    timeline: Timeline
    status: LifecycleStatus = LifecycleStatus.PENDING
    subscriptions: dict[str, SubscriptionSnapshot] = field(default_factory=dict)
    prediction: AllotmentPrediction | None = None
    analysis: AnalysisResult | None = None
    results: dict[tuple[str, str], AllotmentResultRecord] = field(default_factory=dict)
    applications: dict[str, UserApplicationLink] = field(default_factory=dict)
    stats: TrackingStats = field(default_factory=TrackingStats)
    notifications: NotificationState = field(default_factory=NotificationState)
    analytics: dict[str, Any] = field(default_factory=dict)
    last_checked: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == LifecycleStatus.COMPLETED

    def store_results(self, records: Iterable[AllotmentResultRecord]) -> None:
        for record in records:
            self.results[record.key] = record

    def link_for(self, record: AllotmentResultRecord) -> UserApplicationLink | None:
        for link in self.applications.values():
            if link.matches(record):
                return link
        return None

    def summary(self, now: datetime) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "name": self.name,
            "status": self.status.value,
            "priority": self.priority.value,
            "timeline": self.timeline.to_dict(now),
            "attempts": self.stats.attempts,
            "failures": self.stats.failures,
            "results": len(self.results),
            "applications": len(self.applications),
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "notified": self.notifications.notified,
        }


class TrackingRegistry:
    """Offering id to :class:`TrackedOffering`, plus the set of ids in flight."""

    def __init__(self) -> None:
        self._entries: dict[str, TrackedOffering] = {}
        self._in_flight: set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, offering_id: object) -> bool:
        return offering_id in self._entries

    def __iter__(self) -> Iterator[TrackedOffering]:
        return iter(list(self._entries.values()))

    def get(self, offering_id: str) -> TrackedOffering | None:
        return self._entries.get(offering_id)

    def add(self, entry: TrackedOffering) -> None:
        self._entries[entry.id] = entry

    def remove(self, offering_id: str) -> TrackedOffering | None:
        self._in_flight.discard(offering_id)
        return self._entries.pop(offering_id, None)

    def claim(self, offering_id: str) -> bool:
        """Mark an id as in flight; False if some other pump holds it."""
        if offering_id in self._in_flight:
            return False
        self._in_flight.add(offering_id)
        return True

    def release(self, offering_id: str) -> None:
        self._in_flight.discard(offering_id)

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in LifecycleStatus}
        for entry in self._entries.values():
            counts[entry.status.value] += 1
        return counts

    def clear(self) -> None:
        self._entries.clear()
        self._in_flight.clear()


class QueueName(str, Enum):
    ACTIVE_CHECK = "active_check"
    PASSIVE_CHECK = "passive_check"
    RESULT_PROCESSING = "result_processing"
    NOTIFICATION = "notification"
    PREDICTION_UPDATE = "prediction_update"


class WorkQueue:
    """Insertion-ordered set of offering ids with a draining flag.

    Enqueue is idempotent. A pump takes ids out before processing them and
    sets ``draining`` for the duration so an overlapping tick becomes a no-op.
    Shutdown waits on :meth:`wait_idle` before touching the queue.
    """

    def __init__(self, name: QueueName):
        self.name = name
        self._ids: dict[str, None] = {}
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def draining(self) -> bool:
        return not self._idle.is_set()

    @draining.setter
    def draining(self, value: bool) -> None:
        if value:
            self._idle.clear()
        else:
            self._idle.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, offering_id: object) -> bool:
        return offering_id in self._ids

    def enqueue(self, offering_id: str) -> bool:
        if offering_id in self._ids:
            return False
        self._ids[offering_id] = None
        return True

    def take(self, limit: int | None = None) -> list[str]:
        ids = list(self._ids)
        if limit is not None:
            ids = ids[:limit]
        for offering_id in ids:
            del self._ids[offering_id]
        return ids

    def discard(self, offering_id: str) -> None:
        self._ids.pop(offering_id, None)

    def snapshot(self) -> list[str]:
        return list(self._ids)

    def clear(self) -> None:
        self._ids.clear()


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    NOT_AVAILABLE = "not_available"
    FAILED = "failed"
    MISSING = "missing"
    SKIPPED = "skipped"
    DROPPED = "dropped"


@dataclass
class ItemOutcome:
    """Typed result of processing one queued offering."""

    offering_id: str
    status: OutcomeStatus
    error: str | None = None
    records: int = 0
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (OutcomeStatus.SUCCESS, OutcomeStatus.NOT_AVAILABLE)


@dataclass
class BatchReport:
    queue: str
    outcomes: list[ItemOutcome] = field(default_factory=list)

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue,
            "processed": len(self.outcomes),
            **{status.value: self.count(status) for status in OutcomeStatus},
        }


ItemHandler = Callable[[str], Awaitable[ItemOutcome]]


async def run_item(offering_id: str, handler: ItemHandler) -> ItemOutcome:
    """Run one handler with the offering id bound to the log context.

    Any exception becomes a ``FAILED`` outcome so siblings in the batch are
    unaffected.
    """
    token = offering_id_var.set(offering_id)
    start = time.monotonic()
    try:
        outcome = await handler(offering_id)
    except asyncio.CancelledError:
        raise
    except InvariantViolation as exc:
        logger.error(f"Dropping offering {offering_id}: {exc.message}", extra=exc.details)
        outcome = ItemOutcome(offering_id, OutcomeStatus.DROPPED, error=exc.message)
    except Exception as exc:
        logger.exception(f"Processing failed for offering {offering_id}")
        outcome = ItemOutcome(offering_id, OutcomeStatus.FAILED, error=str(exc) or type(exc).__name__)
    finally:
        offering_id_var.reset(token)
    outcome.duration = time.monotonic() - start
    return outcome


async def run_batch(queue: QueueName | str, ids: Iterable[str], handler: ItemHandler) -> BatchReport:
    """Process ids concurrently and collect their outcomes in input order."""
    ids = list(ids)
    outcomes = await asyncio.gather(*(run_item(offering_id, handler) for offering_id in ids))
    name = queue.value if isinstance(queue, QueueName) else queue
    return BatchReport(queue=name, outcomes=list(outcomes))
