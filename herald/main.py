"""Herald scheduler service entry point."""

import asyncio
import contextlib
import logging
import signal

from herald.config import settings
from herald.scheduler import ActionDispatcher, SchedulerEngine, SqlScheduleStore

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


async def _log_transport(owner_context: str, text: str) -> bool:
    """Stand-in transport: writes deliveries to the log."""
    logger.info("[%s] %s", owner_context, text)
    return True


async def _report_sink_error(entry, error) -> None:
    logger.error("Delivery to %s failed: %s", entry.owner_context, error)


async def run() -> None:
    """Start the engine, purge old history, and run until signalled."""
    engine = SchedulerEngine(
        store=SqlScheduleStore(),
        sink=ActionDispatcher(_log_transport),
        on_sink_error=_report_sink_error,
    )
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await engine.start()
    try:
        purged = await engine.cleanup()
        logger.info("Retention cleanup removed %d entr(ies)", purged)
        await stop.wait()
    finally:
        await engine.stop()


def main() -> None:
    """Run the scheduler service."""
    logger.info("Starting Herald scheduler (db=%s)", settings.database_path)
    asyncio.run(run())


if __name__ == "__main__":
    main()
