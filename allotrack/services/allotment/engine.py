"""Allotment tracking and prediction engine.

Owns the tracking registry and the five work queues, and drives them with
interval pumps:

    active_check       recently closed offerings, polled often
    passive_check      older or repeatedly failing offerings, polled rarely
    result_processing  analysis of freshly acquired results
    notification       per-application user notifications
    prediction_update  prediction refresh and accuracy scoring

Every public operation returns a :class:`ServiceResult` and never raises.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from allotrack.cache.cache import Cache
from allotrack.core.config import Settings
from allotrack.core.exceptions import InvariantViolation, JobError, NotFoundError, ServiceResult
from allotrack.core.logging import get_logger, offering_id_var
from allotrack.domain.categories import CATEGORIES
from allotrack.domain.models import LifecycleStatus, OfferingSnapshot, SubscriptionSnapshot
from allotrack.jobs.scheduler import PumpScheduler

from .acquisition import ResultAcquisitionPipeline
from .analysis import analyze
from .dispatcher import NotificationDispatcher
from .ports import AllotmentStore, AnalyticsProvider, Notifier, ResultSource
from .prediction import AccuracyReport, latest_by_category, predict_offering, score_accuracy
from .registry import (
    BatchReport,
    ItemHandler,
    ItemOutcome,
    OutcomeStatus,
    QueueName,
    Timeline,
    TrackedOffering,
    TrackingRegistry,
    WorkQueue,
    days_since,
    priority_for,
    run_batch,
)


logger = get_logger("services.allotment.engine")

SERVICE_STARTED = "allotment_service_started"
SERVICE_SHUTDOWN = "allotment_service_shutdown"
ANALYTICS_UPDATE = "analytics_update"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TrackingConfig:
    """Intervals (seconds), batch limits and retry budgets for the engine."""

    active_check_interval: float = 2 * 60
    passive_check_interval: float = 15 * 60
    result_processing_interval: float = 5 * 60
    notification_interval: float = 60
    prediction_update_interval: float = 30 * 60
    maintenance_interval: float = 60 * 60
    status_report_interval: float = 5 * 60
    batch_size: int = 5
    max_retries: int = 3
    shutdown_timeout: float = 30.0
    active_attempt_cap: int = 50
    high_priority_days: int = 7
    active_window_days: int = 14
    tracking_lookback_days: int = 30
    archive_retention_days: int = 7
    source_lookback_days: int = 7
    results_cache_ttl: int = 24 * 60 * 60
    summary_cache_ttl: int = 12 * 60 * 60
    metrics_cache_ttl: int = 5 * 60
    archive_cache_ttl: int = 30 * 24 * 60 * 60
    scheduler_timezone: str = "UTC"

    @classmethod
    def from_settings(cls, settings: Settings) -> "TrackingConfig":
        return cls(
            active_check_interval=settings.active_check_interval,
            passive_check_interval=settings.passive_check_interval,
            result_processing_interval=settings.result_processing_interval,
            notification_interval=settings.notification_interval,
            prediction_update_interval=settings.prediction_update_interval,
            maintenance_interval=settings.maintenance_interval,
            status_report_interval=settings.status_report_interval,
            batch_size=settings.batch_size,
            max_retries=settings.max_retries,
            shutdown_timeout=settings.shutdown_timeout,
            active_attempt_cap=settings.active_attempt_cap,
            high_priority_days=settings.high_priority_days,
            active_window_days=settings.active_window_days,
            tracking_lookback_days=settings.tracking_lookback_days,
            archive_retention_days=settings.archive_retention_days,
            source_lookback_days=settings.source_lookback_days,
            scheduler_timezone=settings.scheduler_timezone,
        )


class Scheduler(Protocol):
    running: bool

    def add_pump(
        self, name: str, func: Callable[[], Awaitable[Any]], seconds: float, description: Optional[str] = None
    ) -> None: ...

    def start(self) -> None: ...

    def shutdown(self) -> None: ...

    def get_jobs_status(self) -> list[dict[str, Any]]: ...


@dataclass
class PerformanceMetrics:
    total_checks: int = 0
    successful_checks: int = 0
    failed_checks: int = 0
    results_fetched: int = 0
    notifications_sent: int = 0
    prediction_accuracy: float = 0.0
    processed_offerings: int = 0
    total_processing_ms: float = 0.0
    last_processed: Optional[datetime] = None
    pumps: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def average_processing_ms(self) -> float:
        if not self.processed_offerings:
            return 0.0
        return self.total_processing_ms / self.processed_offerings

    def record_pump(self, report: BatchReport, at: datetime) -> None:
        pump = self.pumps.setdefault(report.queue, {"runs": 0, "processed": 0, "last_run": None})
        pump["runs"] += 1
        pump["processed"] += len(report.outcomes)
        pump["last_run"] = at.isoformat()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["average_processing_ms"] = round(self.average_processing_ms, 2)
        data["last_processed"] = self.last_processed.isoformat() if self.last_processed else None
        return data


OutcomeHook = Callable[[QueueName, ItemOutcome], None]


class AllotmentEngine:
    """Tracks offerings from close to notified allotment results."""

    def __init__(
        self,
        store: AllotmentStore,
        sources: Sequence[ResultSource],
        notifier: Notifier,
        cache: Optional[Cache] = None,
        analytics: Optional[AnalyticsProvider] = None,
        config: Optional[TrackingConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        scheduler: Optional[Scheduler] = None,
    ):
        self.store = store
        self.sources = list(sources)
        self.notifier = notifier
        self.cache = cache
        self.analytics = analytics
        self.config = config or TrackingConfig()
        self.clock = clock
        self.scheduler: Scheduler = scheduler or PumpScheduler(self.config.scheduler_timezone)

        self.registry = TrackingRegistry()
        self.queues: dict[QueueName, WorkQueue] = {name: WorkQueue(name) for name in QueueName}
        self.pipeline = ResultAcquisitionPipeline(
            self.sources, store, clock, lookback_days=self.config.source_lookback_days
        )
        self.dispatcher = NotificationDispatcher(store, notifier, clock)
        self.metrics = PerformanceMetrics()
        self.accuracy = AccuracyReport()
        self._running = False
        self._started_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> ServiceResult[dict[str, Any]]:
        """Load trackable offerings from the store and start the pumps."""
        if self._running:
            logger.warning("Allotment engine already running")
            return ServiceResult.ok({"tracked": len(self.registry), "already_running": True})

        try:
            tracked = await self._load()
        except Exception as e:
            logger.exception("Failed to initialize allotment tracking")
            self.registry.clear()
            for queue in self.queues.values():
                queue.clear()
            return ServiceResult.fail(e)

        self._schedule_pumps()
        self.scheduler.start()
        self._running = True
        self._started_at = self.clock()
        logger.info(f"Allotment engine started, tracking {tracked} offerings")
        await self._broadcast(
            SERVICE_STARTED,
            {
                "tracked_offerings": tracked,
                "categories": len(CATEGORIES),
                "timestamp": self._started_at.isoformat(),
            },
        )
        return ServiceResult.ok({"tracked": tracked})

    async def stop(self) -> ServiceResult[dict[str, Any]]:
        """Stop the pumps, flush pending notifications once and clear state.

        Pumps already running when the scheduler shuts down are awaited first,
        so the flush sees everything they enqueued and nothing is cleared
        underneath them.
        """
        if not self._running:
            return ServiceResult.ok({"already_stopped": True})

        self.scheduler.shutdown()
        self._running = False
        await self._wait_for_pumps()

        flushed: Optional[BatchReport] = None
        try:
            flushed = await self._drain(
                QueueName.NOTIFICATION, self._notify_item, self._after_notification, limit=None
            )
        except Exception:
            logger.exception("Final notification flush failed")

        await self._broadcast(
            SERVICE_SHUTDOWN,
            {
                "message": "Allotment service has been stopped",
                "final_metrics": self.metrics.to_dict(),
                "timestamp": self.clock().isoformat(),
            },
        )

        for queue in self.queues.values():
            queue.clear()
        self.registry.clear()
        logger.info("Allotment engine stopped")
        return ServiceResult.ok({"notifications_flushed": flushed.to_dict() if flushed else None})

    async def _wait_for_pumps(self) -> None:
        busy = [queue for queue in self.queues.values() if queue.draining]
        if not busy:
            return
        logger.info(f"Waiting for {len(busy)} running pumps before shutdown")
        try:
            await asyncio.wait_for(
                asyncio.gather(*(queue.wait_idle() for queue in busy)),
                timeout=self.config.shutdown_timeout,
            )
        except asyncio.TimeoutError:
            still_busy = [queue.name.value for queue in busy if queue.draining]
            logger.warning(f"Pumps still running after {self.config.shutdown_timeout}s: {still_busy}")

    async def _broadcast(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self.notifier.publish(event_type, payload)
        except Exception as e:
            logger.warning(f"Failed to publish {event_type}: {e}")

    def _schedule_pumps(self) -> None:
        cfg = self.config
        pumps: list[tuple[str, Callable[[], Awaitable[Any]], float]] = [
            (QueueName.ACTIVE_CHECK.value, self.run_active_checks, cfg.active_check_interval),
            (QueueName.PASSIVE_CHECK.value, self.run_passive_checks, cfg.passive_check_interval),
            (QueueName.RESULT_PROCESSING.value, self.run_result_processing, cfg.result_processing_interval),
            (QueueName.NOTIFICATION.value, self.run_notifications, cfg.notification_interval),
            (QueueName.PREDICTION_UPDATE.value, self.run_prediction_updates, cfg.prediction_update_interval),
            ("maintenance", self.run_maintenance, cfg.maintenance_interval),
            ("status_report", self.report_status, cfg.status_report_interval),
        ]
        for name, func, seconds in pumps:
            self.scheduler.add_pump(name, func, seconds)

    async def _load(self) -> int:
        now = self.clock()
        since = now - timedelta(days=self.config.tracking_lookback_days)
        offerings = await self.store.list_trackable_offerings(since)

        for snapshot in offerings:
            subscriptions = snapshot.subscriptions or await self.store.latest_subscriptions(snapshot.id)
            self.track(snapshot, subscriptions)

        ids = [snapshot.id for snapshot in offerings]
        if ids:
            for link in await self.store.list_pending_applications(ids):
                entry = self.registry.get(link.offering_id)
                if entry is not None:
                    entry.applications[link.id] = link

        for entry in self.registry:
            stored = await self.store.list_allotment_results(entry.id)
            if stored:
                entry.store_results(stored)
                await self.pipeline.update_links(entry, stored, now, only_pending=True)
                entry.status = LifecycleStatus.PROCESSING
                self.queues[QueueName.RESULT_PROCESSING].enqueue(entry.id)
            else:
                self._enqueue_check(entry, now)

        logger.info(
            f"Loaded {len(offerings)} offerings for allotment tracking",
            extra={"by_status": self.registry.count_by_status()},
        )
        return len(self.registry)

    def track(
        self, snapshot: OfferingSnapshot, subscriptions: Sequence[SubscriptionSnapshot] = ()
    ) -> TrackedOffering:
        """Register an offering with a fresh prediction; does not enqueue it."""
        now = self.clock()
        details = snapshot.details
        entry = TrackedOffering(
            id=snapshot.id,
            symbol=snapshot.symbol,
            name=snapshot.name,
            details=details,
            priority=priority_for(
                details.close_date, now, self.config.high_priority_days, self.config.active_window_days
            ),
            timeline=Timeline.from_details(details),
            subscriptions=latest_by_category(subscriptions),
            prediction=predict_offering(details, subscriptions, now),
        )
        self.registry.add(entry)
        logger.debug(f"Tracking {entry.symbol} (priority: {entry.priority.value})")
        return entry

    def _enqueue_check(self, entry: TrackedOffering, now: datetime) -> None:
        if days_since(entry.details.close_date, now) <= self.config.active_window_days:
            self.queues[QueueName.ACTIVE_CHECK].enqueue(entry.id)
        else:
            self.queues[QueueName.PASSIVE_CHECK].enqueue(entry.id)

    # =========================================================================
    # Pump plumbing
    # =========================================================================

    async def _drain(
        self,
        name: QueueName,
        handler: ItemHandler,
        after: OutcomeHook,
        limit: Optional[int] = -1,
    ) -> BatchReport:
        """Take up to ``limit`` ids (batch size by default, all when None) and process them."""
        queue = self.queues[name]
        if queue.draining:
            logger.debug(f"Queue {name.value} is already draining, skipping tick")
            return BatchReport(queue=name.value)

        queue.draining = True
        claimed: list[str] = []
        try:
            batch_limit = self.config.batch_size if limit == -1 else limit
            for offering_id in queue.take(batch_limit):
                if self.registry.claim(offering_id):
                    claimed.append(offering_id)
                elif offering_id in self.registry:
                    # another pump holds it; keep it queued
                    queue.enqueue(offering_id)
                else:
                    logger.warning(f"No tracking entry for offering {offering_id}, dropping")

            report = await run_batch(name, claimed, handler)
            for offering_id in claimed:
                self.registry.release(offering_id)
            claimed = []
            for outcome in report.outcomes:
                after(name, outcome)
        finally:
            for offering_id in claimed:
                self.registry.release(offering_id)
            queue.draining = False

        self.metrics.record_pump(report, self.clock())
        if report.outcomes:
            logger.info(f"Processed {name.value} batch", extra=report.to_dict())
        return report

    def _missing(self, offering_id: str) -> ItemOutcome:
        logger.warning(f"No tracking entry for offering {offering_id}")
        return ItemOutcome(offering_id, OutcomeStatus.MISSING)

    # =========================================================================
    # Result checks
    # =========================================================================

    async def _check(self, entry: TrackedOffering) -> ItemOutcome:
        now = self.clock()
        entry.stats.attempts += 1
        entry.last_checked = now
        self.metrics.total_checks += 1
        start = time.monotonic()

        try:
            result = await self.pipeline.acquire(entry)
        except Exception:
            entry.stats.failures += 1
            self.metrics.failed_checks += 1
            raise

        entry.stats.failures = 0
        entry.stats.successful_checks += 1
        self.metrics.successful_checks += 1

        if not result.available:
            logger.info(f"Allotment results not yet available for {entry.symbol}")
            return ItemOutcome(entry.id, OutcomeStatus.NOT_AVAILABLE)

        entry.status = LifecycleStatus.PROCESSING
        elapsed_ms = (time.monotonic() - start) * 1000
        entry.stats.processing_seconds = elapsed_ms / 1000
        self.metrics.results_fetched += len(result.records)
        self.metrics.processed_offerings += 1
        self.metrics.total_processing_ms += elapsed_ms
        self.metrics.last_processed = now
        logger.info(
            f"Acquired {len(result.records)} allotment results for {entry.symbol}",
            extra=result.to_dict(),
        )
        return ItemOutcome(entry.id, OutcomeStatus.SUCCESS, records=len(result.records))

    async def _check_item(self, offering_id: str) -> ItemOutcome:
        entry = self.registry.get(offering_id)
        if entry is None:
            return self._missing(offering_id)
        if entry.status != LifecycleStatus.PENDING:
            return ItemOutcome(offering_id, OutcomeStatus.SKIPPED)
        return await self._check(entry)

    def _after_check(self, queue: QueueName, outcome: ItemOutcome) -> None:
        entry = self.registry.get(outcome.offering_id)
        if entry is None:
            return

        if outcome.status == OutcomeStatus.SUCCESS:
            self.queues[QueueName.ACTIVE_CHECK].discard(entry.id)
            self.queues[QueueName.PASSIVE_CHECK].discard(entry.id)
            self.queues[QueueName.RESULT_PROCESSING].enqueue(entry.id)
            return
        if outcome.status not in (OutcomeStatus.NOT_AVAILABLE, OutcomeStatus.FAILED):
            return

        if queue == QueueName.PASSIVE_CHECK:
            self.queues[QueueName.PASSIVE_CHECK].enqueue(entry.id)
            return

        if outcome.status == OutcomeStatus.FAILED:
            keep_active = entry.stats.failures < self.config.max_retries
            reason = f"{entry.stats.failures} consecutive failures"
        else:
            keep_active = entry.stats.attempts < self.config.active_attempt_cap
            reason = f"{entry.stats.attempts} attempts"

        if keep_active:
            self.queues[QueueName.ACTIVE_CHECK].enqueue(entry.id)
        else:
            self.queues[QueueName.ACTIVE_CHECK].discard(entry.id)
            self.queues[QueueName.PASSIVE_CHECK].enqueue(entry.id)
            logger.info(f"Demoted {entry.symbol} to passive checks after {reason}")

    async def run_active_checks(self) -> BatchReport:
        return await self._drain(QueueName.ACTIVE_CHECK, self._check_item, self._after_check)

    async def run_passive_checks(self) -> BatchReport:
        return await self._drain(QueueName.PASSIVE_CHECK, self._check_item, self._after_check)

    # =========================================================================
    # Result processing
    # =========================================================================

    async def _finalise(self, entry: TrackedOffering) -> None:
        if not entry.results:
            entry.status = LifecycleStatus.PENDING
            self._enqueue_check(entry, self.clock())
            raise InvariantViolation(
                message=f"{entry.symbol} queued for processing without results",
                details={"offering_id": entry.id},
            )

        now = self.clock()
        records = [entry.results[key] for key in sorted(entry.results)]
        entry.analysis = analyze(records, entry.prediction, now)
        entry.stats.total_applications = entry.analysis.total_applications
        entry.stats.allotted_applications = entry.analysis.allotted_applications
        entry.status = LifecycleStatus.COMPLETED
        entry.completed_at = now

        if self.analytics is not None:
            try:
                entry.analytics = await self.analytics.compute_offering_analytics(entry.id)
            except Exception as e:
                logger.warning(f"Analytics enrichment failed for {entry.symbol}: {e}")

        await self._cache_results(entry)
        await self._broadcast(
            ANALYTICS_UPDATE,
            {
                "offering_id": entry.id,
                "symbol": entry.symbol,
                "analytics": entry.analytics,
                "allotment_results": entry.analysis.model_dump(mode="json"),
                "completed_at": now.isoformat(),
            },
        )
        logger.info(
            f"Completed allotment analysis for {entry.symbol}",
            extra={
                "overall_allotment_ratio": round(entry.analysis.overall_allotment_ratio, 2),
                "results": len(records),
            },
        )

    async def _process_item(self, offering_id: str) -> ItemOutcome:
        entry = self.registry.get(offering_id)
        if entry is None:
            return self._missing(offering_id)
        await self._finalise(entry)
        return ItemOutcome(offering_id, OutcomeStatus.SUCCESS, records=len(entry.results))

    def _retry_failed(self, queue: QueueName, outcome: ItemOutcome) -> None:
        """Requeue a failed id until it has failed ``max_retries`` times in a row."""
        entry = self.registry.get(outcome.offering_id)
        if entry is None:
            return
        failures = entry.stats.pump_failures
        if outcome.status != OutcomeStatus.FAILED:
            failures.pop(queue.value, None)
            return

        failures[queue.value] = failures.get(queue.value, 0) + 1
        if failures[queue.value] < self.config.max_retries:
            self.queues[queue].enqueue(entry.id)
            return
        logger.error(
            f"Giving up on {queue.value} for {entry.symbol} after {failures[queue.value]} failures",
            extra={"offering_id": entry.id, "error": outcome.error},
        )

    def _after_processing(self, queue: QueueName, outcome: ItemOutcome) -> None:
        self._retry_failed(queue, outcome)
        if outcome.status == OutcomeStatus.SUCCESS:
            self.queues[QueueName.NOTIFICATION].enqueue(outcome.offering_id)

    async def run_result_processing(self) -> BatchReport:
        return await self._drain(QueueName.RESULT_PROCESSING, self._process_item, self._after_processing)

    def results_summary(self, entry: TrackedOffering) -> dict[str, Any]:
        analysis = entry.analysis.model_dump(mode="json") if entry.analysis else None
        return {
            "offering_id": entry.id,
            "symbol": entry.symbol,
            "name": entry.name,
            "status": entry.status.value,
            "total_results": len(entry.results),
            "allotted_count": sum(1 for r in entry.results.values() if r.is_allotted),
            "prediction": entry.prediction.model_dump(mode="json") if entry.prediction else None,
            "analysis": analysis,
            "analytics": entry.analytics,
            "timeline": entry.timeline.to_dict(self.clock()),
            "last_updated": self.clock().isoformat(),
        }

    async def _cache_results(self, entry: TrackedOffering) -> None:
        if self.cache is None:
            return
        summary = self.results_summary(entry)
        analysis = summary["analysis"] or {}
        await self.cache.set(f"results:{entry.id}", summary, ttl=self.config.results_cache_ttl)
        await self.cache.set(
            f"summary:{entry.symbol}",
            {
                "overall_allotment_ratio": analysis.get("overall_allotment_ratio"),
                "category_wise_ratio": analysis.get("category_wise_ratio"),
                "refund_percentage": analysis.get("refund_percentage"),
                "insights": analysis.get("insights"),
                "patterns": analysis.get("patterns"),
            },
            ttl=self.config.summary_cache_ttl,
        )

    # =========================================================================
    # Notifications
    # =========================================================================

    async def _notify_item(self, offering_id: str) -> ItemOutcome:
        entry = self.registry.get(offering_id)
        if entry is None:
            return self._missing(offering_id)
        if not entry.is_completed:
            return ItemOutcome(offering_id, OutcomeStatus.SKIPPED)

        report = await self.dispatcher.dispatch(entry)
        self.metrics.notifications_sent += report.sent
        if not report.completed:
            return ItemOutcome(
                offering_id,
                OutcomeStatus.FAILED,
                error=f"{report.failed} notifications failed",
                records=report.sent,
            )
        return ItemOutcome(offering_id, OutcomeStatus.SUCCESS, records=report.sent)

    def _after_notification(self, queue: QueueName, outcome: ItemOutcome) -> None:
        self._retry_failed(queue, outcome)

    async def run_notifications(self) -> BatchReport:
        return await self._drain(QueueName.NOTIFICATION, self._notify_item, self._after_notification)

    # =========================================================================
    # Predictions
    # =========================================================================

    async def _predict_item(self, offering_id: str) -> ItemOutcome:
        entry = self.registry.get(offering_id)
        if entry is None:
            return self._missing(offering_id)
        if entry.is_completed:
            return ItemOutcome(offering_id, OutcomeStatus.SKIPPED)

        subscriptions = await self.store.latest_subscriptions(offering_id)
        entry.subscriptions = latest_by_category(subscriptions)
        entry.prediction = predict_offering(entry.details, subscriptions, self.clock())
        return ItemOutcome(offering_id, OutcomeStatus.SUCCESS)

    def _after_prediction(self, queue: QueueName, outcome: ItemOutcome) -> None:
        return None

    def score_predictions(self) -> AccuracyReport:
        """Score every completed offering's prediction against its analysis."""
        report = AccuracyReport()
        for entry in self.registry:
            if entry.is_completed and entry.prediction and entry.analysis:
                report = report.merge(score_accuracy(entry.prediction, entry.analysis))
        self.accuracy = report
        self.metrics.prediction_accuracy = report.accuracy
        logger.info(
            f"Prediction accuracy: {report.accuracy:.1f}% ({report.accurate}/{report.total})"
        )
        return report

    async def run_prediction_updates(self) -> BatchReport:
        """Refresh predictions for unfinished offerings, then rescore accuracy."""
        queue = self.queues[QueueName.PREDICTION_UPDATE]
        for entry in self.registry:
            if not entry.is_completed:
                queue.enqueue(entry.id)

        report = await self._drain(
            QueueName.PREDICTION_UPDATE, self._predict_item, self._after_prediction, limit=None
        )
        self.score_predictions()
        return report

    # =========================================================================
    # Maintenance and reporting
    # =========================================================================

    async def run_maintenance(self) -> ServiceResult[dict[str, Any]]:
        """Archive finished offerings and refresh priorities of the rest."""
        try:
            now = self.clock()
            retention = timedelta(days=self.config.archive_retention_days)
            archived: list[str] = []

            for entry in self.registry:
                if entry.id in self.registry.in_flight:
                    continue
                notified = entry.notifications.notified or not entry.applications
                if (
                    entry.is_completed
                    and entry.completed_at is not None
                    and now - entry.completed_at >= retention
                    and notified
                ):
                    if self.cache is not None:
                        await self.cache.set(
                            f"archived:{entry.id}",
                            {**entry.summary(now), **self.results_summary(entry)},
                            ttl=self.config.archive_cache_ttl,
                        )
                    self.registry.remove(entry.id)
                    for queue in self.queues.values():
                        queue.discard(entry.id)
                    archived.append(entry.id)
                    continue

                entry.priority = priority_for(
                    entry.details.close_date,
                    now,
                    self.config.high_priority_days,
                    self.config.active_window_days,
                )

            if archived:
                logger.info(f"Archived {len(archived)} completed offerings")
            return ServiceResult.ok({"archived": archived, "tracked": len(self.registry)})
        except Exception as e:
            logger.exception("Maintenance failed")
            return ServiceResult.fail(e)

    def _status_payload(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "tracked_offerings": len(self.registry),
            "by_status": self.registry.count_by_status(),
            "queues": {
                name.value: {"size": len(queue), "draining": queue.draining}
                for name, queue in self.queues.items()
            },
            "in_flight": sorted(self.registry.in_flight),
            "performance": self.metrics.to_dict(),
            "prediction_accuracy": {
                "accuracy": round(self.accuracy.accuracy, 2),
                "accurate": self.accuracy.accurate,
                "total": self.accuracy.total,
            },
            "jobs": self.scheduler.get_jobs_status(),
        }

    async def report_status(self) -> str:
        status = self._status_payload()
        if self.cache is not None:
            await self.cache.set("metrics", status["performance"], ttl=self.config.metrics_cache_ttl)
        summary = (
            f"Tracking {status['tracked_offerings']} offerings, "
            f"{self.metrics.successful_checks}/{self.metrics.total_checks} checks ok, "
            f"{self.metrics.notifications_sent} notifications sent"
        )
        logger.info(summary, extra={"queues": status["queues"]})
        return summary

    # =========================================================================
    # Public queries
    # =========================================================================

    def get_status(self) -> ServiceResult[dict[str, Any]]:
        try:
            return ServiceResult.ok(self._status_payload())
        except Exception as e:
            logger.exception("Failed to build engine status")
            return ServiceResult.fail(e)

    async def health_check(self) -> ServiceResult[dict[str, Any]]:
        """Store and cache reachability plus per-source circuit state."""
        checks: dict[str, Any] = {}
        try:
            checks["store"] = bool(await self.store.ping())
        except Exception as e:
            logger.warning(f"Store health check failed: {e}")
            checks["store"] = False

        if self.cache is not None:
            checks["cache"] = await self.cache.ping()

        sources: dict[str, Any] = {}
        for source in self.sources:
            try:
                sources[source.name] = source.health()
            except Exception as e:
                sources[source.name] = {"state": "unknown", "error": str(e)}
        checks["sources"] = sources
        checks["scheduler"] = self._running

        open_circuits = [
            name for name, info in sources.items() if info.get("circuit", info).get("state") == "open"
        ]
        if not checks["store"]:
            status = "unhealthy"
        elif checks.get("cache") is False or open_circuits or not self._running:
            status = "degraded"
        else:
            status = "healthy"

        return ServiceResult.ok(
            {
                "status": status,
                "checks": checks,
                "open_circuits": open_circuits,
                "tracked_offerings": len(self.registry),
                "timestamp": self.clock().isoformat(),
            }
        )

    async def check_offering(self, offering_id: str) -> ServiceResult[dict[str, Any]]:
        """Run a check for one offering now, analysing results inline if found."""
        entry = self.registry.get(offering_id)
        if entry is None:
            return ServiceResult.fail(
                NotFoundError(message=f"Offering {offering_id} is not tracked", details={"offering_id": offering_id})
            )
        if not self.registry.claim(offering_id):
            return ServiceResult.fail(
                JobError(
                    message=f"Offering {offering_id} is already being processed",
                    error_code="IN_FLIGHT",
                    details={"offering_id": offering_id},
                )
            )

        token = offering_id_var.set(offering_id)
        source_queue = (
            QueueName.PASSIVE_CHECK
            if offering_id in self.queues[QueueName.PASSIVE_CHECK]
            else QueueName.ACTIVE_CHECK
        )
        try:
            if entry.status == LifecycleStatus.PENDING:
                try:
                    outcome = await self._check(entry)
                except Exception as e:
                    logger.warning(f"Manual check failed for {entry.symbol}: {e}")
                    self._after_check(
                        source_queue,
                        ItemOutcome(offering_id, OutcomeStatus.FAILED, error=str(e)),
                    )
                    return ServiceResult.fail(e)

                if outcome.status != OutcomeStatus.SUCCESS:
                    self._after_check(source_queue, outcome)

            if entry.status == LifecycleStatus.PROCESSING:
                self.queues[QueueName.ACTIVE_CHECK].discard(offering_id)
                self.queues[QueueName.PASSIVE_CHECK].discard(offering_id)
                self.queues[QueueName.RESULT_PROCESSING].discard(offering_id)
                try:
                    await self._finalise(entry)
                except Exception as e:
                    logger.warning(f"Manual analysis failed for {entry.symbol}: {e}")
                    return ServiceResult.fail(e)
                self.queues[QueueName.NOTIFICATION].enqueue(offering_id)

            return ServiceResult.ok(self.results_summary(entry) | {"attempts": entry.stats.attempts})
        finally:
            offering_id_var.reset(token)
            self.registry.release(offering_id)

    async def get_user_status(
        self, user_id: str, offering_id: Optional[str] = None
    ) -> ServiceResult[list[dict[str, Any]]]:
        """A user's applications, preferring the registry's in-memory state."""
        try:
            links = await self.store.list_user_applications(user_id, offering_id)
        except Exception as e:
            logger.warning(f"Failed to load applications for user {user_id}: {e}")
            return ServiceResult.fail(e)

        now = self.clock()
        items: list[dict[str, Any]] = []
        for link in links:
            entry = self.registry.get(link.offering_id)
            current = entry.applications.get(link.id, link) if entry else link
            item = current.model_dump(mode="json")
            if entry is not None:
                item["offering"] = {
                    "symbol": entry.symbol,
                    "name": entry.name,
                    "status": entry.status.value,
                    "timeline": entry.timeline.to_dict(now),
                }
                category = entry.prediction.categories.get(current.category) if entry.prediction else None
                item["prediction"] = category.model_dump(mode="json") if category else None
            items.append(item)
        return ServiceResult.ok(items)

    async def get_offering_summary(self, offering_id: str) -> ServiceResult[dict[str, Any]]:
        """Results summary, read through the cache."""
        try:
            if self.cache is not None:
                cached = await self.cache.get(f"results:{offering_id}")
                if cached is not None:
                    return ServiceResult.ok(cached)

            entry = self.registry.get(offering_id)
            if entry is None:
                raise NotFoundError(
                    message=f"No allotment summary for offering {offering_id}",
                    details={"offering_id": offering_id},
                )
            if entry.is_completed:
                await self._cache_results(entry)
            return ServiceResult.ok(self.results_summary(entry))
        except Exception as e:
            return ServiceResult.fail(e)
