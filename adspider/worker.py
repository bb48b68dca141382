import asyncio
import logging
import signal

from .analyzer import AdAnalyzer
from .config import AppConfig, settings
from .job_store import JobStore
from .log import setup_logging
from .notifier import Notifier
from .pipeline import JobPipeline
from .redis_client import RedisConnection
from .scheduler import Scheduler
from .scraper import ApifyScraper
from .storage import SupabaseStorage

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT = 30.0  # seconds to let running jobs finish


async def run(config: AppConfig = settings) -> None:
    connection = RedisConnection()
    if not await connection.check():
        logger.error("Redis is not reachable; the worker will keep retrying.")

    store = JobStore(connection)
    scraper = ApifyScraper()
    analyzer = AdAnalyzer() if config.has_openai else None
    storage = SupabaseStorage() if config.has_supabase else None
    notifier = Notifier() if config.has_supabase else None
    if analyzer is None:
        logger.warning("OPENAI_API_KEY not set; ads will not be analyzed.")
    if storage is None:
        logger.warning("Supabase not configured; ads will not be stored.")

    pipeline = JobPipeline(store, scraper, analyzer=analyzer, storage=storage, notifier=notifier, config=config)
    scheduler = Scheduler(store, pipeline, max_workers=config.max_workers)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.stop)

    try:
        await scheduler.run()
    finally:
        await scheduler.drain(SHUTDOWN_TIMEOUT)
        for client in (scraper, analyzer, storage, notifier):
            if client is not None:
                await client.aclose()
        await connection.close()
        logger.info("Worker shut down.")


def main() -> None:
    setup_logging(settings.log_level, settings.log_dir)
    asyncio.run(run())


if __name__ == "__main__":
    main()
