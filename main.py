"""Entry point — run the report scheduler as a standalone process."""

import asyncio
import logging
import signal

from core.config import load_settings
from core.event_bus import EventBus
from core.logging_config import setup_json_logging
from scheduler.renderers import build_renderer
from scheduler.report_scheduler import SchedulerLoop
from scheduler.run_tracker import RunTracker
from scheduler.schedule_store import ScheduleStore
from store.run_log_store import RunLogStore

logger = logging.getLogger(__name__)


async def main() -> None:
    settings = load_settings()
    setup_json_logging(settings.log_level)

    store = ScheduleStore(settings.database_url, claim_lease_seconds=settings.claim_lease_seconds)
    run_log = RunLogStore(settings.database_url)
    await store.init()
    await run_log.init()

    loop = SchedulerLoop(
        store,
        build_renderer(settings),
        tracker=RunTracker(store, run_log),
        event_bus=EventBus(),
        settings=settings,
    )

    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, stop.set)
        except NotImplementedError:   # Windows
            pass

    await loop.start()
    logger.info("Report scheduler running", extra={"database_url": settings.database_url})
    try:
        await stop.wait()
    finally:
        await loop.stop()
        await store.close()
        await run_log.close()


if __name__ == "__main__":
    asyncio.run(main())
