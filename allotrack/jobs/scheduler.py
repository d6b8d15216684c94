"""Interval pump scheduler using APScheduler with async support."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from allotrack.core.logging import get_logger


logger = get_logger("jobs.scheduler")

PumpFunc = Callable[[], Awaitable[Any]]


class PumpScheduler:
    """Runs the engine's pumps on fixed intervals."""

    def __init__(self, timezone_name: str = "UTC"):
        self._scheduler = AsyncIOScheduler(
            timezone=timezone_name,
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,  # Only one instance per pump at a time
                "misfire_grace_time": 60,
            },
        )
        self._running = False
        self._stats: dict[str, dict[str, Any]] = {}

    @property
    def running(self) -> bool:
        return self._running

    def add_pump(
        self,
        name: str,
        func: PumpFunc,
        seconds: float,
        description: Optional[str] = None,
    ) -> None:
        """Schedule ``func`` every ``seconds``; replaces a pump of the same name."""
        self._scheduler.add_job(
            self._wrap_job(name, func),
            trigger=IntervalTrigger(seconds=seconds),
            id=name,
            name=description or name,
            replace_existing=True,
        )
        self._stats.setdefault(name, {"runs": 0, "errors": 0, "last_run": None, "last_duration_ms": None})
        logger.info(f"Scheduled pump: {name} (every {seconds:g}s)")

    def _wrap_job(self, name: str, func: PumpFunc) -> Callable[[], Awaitable[None]]:
        async def wrapper() -> None:
            await self._execute_job(name, func)

        return wrapper

    async def _execute_job(self, name: str, func: PumpFunc) -> None:
        stats = self._stats.setdefault(name, {"runs": 0, "errors": 0, "last_run": None, "last_duration_ms": None})
        start = time.monotonic()
        try:
            result = await func()
            if result:
                logger.debug(f"Pump {name}: {result}")
        except asyncio.CancelledError:
            raise
        except Exception:
            stats["errors"] += 1
            logger.exception(f"Pump {name} failed")
        finally:
            stats["runs"] += 1
            stats["last_run"] = datetime.now(timezone.utc).isoformat()
            stats["last_duration_ms"] = int((time.monotonic() - start) * 1000)

    def start(self) -> None:
        if self._running:
            logger.warning("Scheduler already running")
            return
        self._scheduler.start()
        self._running = True
        logger.info("Pump scheduler started")

    def shutdown(self) -> None:
        """Stop immediately without waiting for running pumps."""
        if not self._running:
            return
        self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Pump scheduler stopped")

    def get_jobs_status(self) -> list[dict[str, Any]]:
        jobs = []
        for job in self._scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run_time": job.next_run_time.isoformat()
                    if getattr(job, "next_run_time", None)
                    else None,
                    **self._stats.get(job.id, {}),
                }
            )
        return jobs
