"""
Standalone queue consumer.

Run with `python -m faultline.worker` next to one or more API processes that
have ASYNC_INGESTION=true; all of them share the Redis broker.
"""
import asyncio
import logging
import signal

from faultline.config import settings
from faultline.database import init_db
from faultline.queue import InlineDispatchQueue
from faultline.services import create_services

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def main() -> None:
    await init_db()
    services = await create_services()
    if isinstance(services.queue, InlineDispatchQueue):
        logger.error("❌ No broker available (set ASYNC_INGESTION=true and REDIS_URL); nothing to consume")
        await services.close()
        return

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    services.start_workers()
    if settings.SCHEDULER_ENABLED:
        services.scheduler.start()
    logger.info("Worker process running")

    await stop.wait()
    logger.info("Shutting down worker process...")
    await services.close()


if __name__ == "__main__":
    asyncio.run(main())
