"""Worker entry point: runs the allotment engine until SIGINT/SIGTERM."""

from __future__ import annotations

import asyncio
import signal

from allotrack.cache import Cache, ValkeyBroadcastNotifier, ValkeyConnection
from allotrack.core.config import Settings, get_settings
from allotrack.core.logging import get_logger, setup_logging
from allotrack.database.connection import Database
from allotrack.repositories.allotment_orm import SqlAlchemyAllotmentStore
from allotrack.services.allotment import AllotmentEngine, TrackingConfig
from allotrack.services.data_providers import build_sources


logger = get_logger("main")


def build_engine(settings: Settings, database: Database, valkey: ValkeyConnection) -> AllotmentEngine:
    """Wire the engine to PostgreSQL, Valkey and the configured HTTP sources."""
    return AllotmentEngine(
        store=SqlAlchemyAllotmentStore(database.session),
        sources=build_sources(settings),
        notifier=ValkeyBroadcastNotifier(valkey.client, channel=settings.notification_channel),
        cache=Cache(valkey.client, prefix="allotment", default_ttl=settings.cache_default_ttl),
        config=TrackingConfig.from_settings(settings),
    )


async def run(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    if not settings.scheduler_enabled:
        logger.warning("Scheduler disabled, allotment worker not started")
        return

    database = Database.from_settings(settings)
    valkey = ValkeyConnection.from_settings(settings)
    engine = build_engine(settings, database, valkey)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    result = await engine.start()
    if not result.success:
        logger.error(f"Allotment engine failed to start: {result.error}")
    else:
        await stop_event.wait()
        logger.info("Shutdown signal received")
        await engine.stop()

    for source in engine.sources:
        await source.aclose()
    try:
        await database.dispose()
        await valkey.close()
    except Exception as e:
        logger.warning(f"Resource cleanup failed: {e}")


def main() -> None:
    setup_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
