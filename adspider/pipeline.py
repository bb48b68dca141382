import asyncio
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

from .analyzer import AdAnalyzer
from .config import AppConfig, settings
from .job_store import JobStore
from .models import Job, ScrapeFilters, ScrapeProgress, utcnow
from .notifier import Notifier
from .run_manager import extract_page_id
from .scraper import ApifyScraper, ScrapeError
from .storage import SupabaseStorage

logger = logging.getLogger(__name__)

ANALYZE_PROGRESS_EVERY = 5
PROGRESS_MIN_INTERVAL = 1.0  # seconds between scrape progress writes


class ProgressReporter:
    """
    Receives scraper progress and writes it to the job record.

    Writes are throttled to one per min_interval unless the message changes,
    and the scraped counter never moves backwards.
    """
    def __init__(self, store: JobStore, job_id: str, min_interval: float = PROGRESS_MIN_INTERVAL):
        self.store = store
        self.job_id = job_id
        self.min_interval = min_interval
        self.scraped = 0
        self._last_message: Optional[str] = None
        self._last_write = 0.0

    async def publish(self, event: ScrapeProgress) -> None:
        self.scraped = max(self.scraped, event.current)
        now = time.monotonic()
        if event.message == self._last_message and now - self._last_write < self.min_interval:
            return
        self._last_message = event.message
        self._last_write = now
        await self.store.update_progress(
            self.job_id, message=event.message, scraped=self.scraped, total=event.total
        )


class JobPipeline:
    """Runs one job end to end: scrape, analyze, persist raw, persist to store, complete."""

    def __init__(
        self,
        store: JobStore,
        scraper: ApifyScraper,
        analyzer: Optional[AdAnalyzer] = None,
        storage: Optional[SupabaseStorage] = None,
        notifier: Optional[Notifier] = None,
        config: AppConfig = settings,
    ):
        self.store = store
        self.scraper = scraper
        self.analyzer = analyzer
        self.storage = storage
        self.notifier = notifier
        self.config = config

    async def run(self, job_id: str, job: Job) -> None:
        logger.info(f"Job {job_id}: starting pipeline for {job.url[:80]}")
        try:
            await self._run(job_id, job)
        except ScrapeError as e:
            logger.error(f"Job {job_id}: scrape failed: {e}")
            await self.store.set_failed(job_id, e.user_message)
        except Exception as e:
            logger.exception(f"Job {job_id}: unexpected error: {e}")
            await self.store.set_failed(job_id, str(e))

    async def _run(self, job_id: str, job: Job) -> None:
        items = await self._scrape(job_id, job)
        if not items:
            logger.warning(f"Job {job_id}: no ads found.")
            await self.store.update_progress(job_id, message="No ads found")
            await self.store.set_failed(job_id, "No ads found")
            return

        scraped = len(items)
        await self.store.update_progress(
            job_id, message=f"Scraped {scraped} ads", scraped=scraped, pending=scraped
        )

        analyzed = 0
        if job.auto_analyze and self.analyzer is not None:
            analyzed = await self._analyze(job_id, items)

        if job.save_raw:
            await self._save_raw(job_id, job, items)

        inserted = 0
        if job.save_store and self.storage is not None:
            inserted = await self._store(job_id, items)
        else:
            await self.store.update_progress(job_id, pending=0)

        await self.store.update_progress(job_id, message="Completed")
        await self.store.set_completed(job_id, {
            "ads_scraped": scraped,
            "ads_analyzed": analyzed,
            "ads_inserted": inserted,
        })
        logger.info(f"Job {job_id} completed: scraped={scraped} analyzed={analyzed} inserted={inserted}")

        if job.page_id and inserted > 0 and self.notifier is not None:
            try:
                await self.notifier.on_page_completed(job.page_id, job.period)
            except Exception as e:
                logger.error(f"Job {job_id}: completion notification failed: {e}")

    async def _scrape(self, job_id: str, job: Job) -> List[Dict[str, Any]]:
        cap = min(job.max_items, self.config.max_ads_per_brand)
        if job.max_items > cap:
            logger.warning(f"Job {job_id}: max_items {job.max_items} capped to {cap}.")

        filters = ScrapeFilters(period=job.period, start_date=job.start_date, end_date=job.end_date)
        reporter = ProgressReporter(self.store, job_id)
        return await self.scraper.scrape(job.url, cap, filters=filters, observer=reporter)

    async def _analyze(self, job_id: str, items: List[Dict[str, Any]]) -> int:
        total = len(items)
        analyzed = 0
        for i, item in enumerate(items):
            try:
                result = await self.analyzer.analyze_item(item)
            except Exception as e:
                logger.error(f"Job {job_id}: analysis failed for item {i + 1}/{total}: {e}")
                result = None

            if result is not None:
                item["analysis"] = result.model_dump(mode="json")
                analyzed += 1

            if (i + 1) % ANALYZE_PROGRESS_EVERY == 0:
                await self.store.update_progress(
                    job_id, message=f"Analyzing... {i + 1}/{total}", analyzed=analyzed
                )

        await self.store.update_progress(job_id, message=f"Analyzed {analyzed}/{total}", analyzed=analyzed)
        return analyzed

    def _write_raw(self, path: str, items: List[Dict[str, Any]]) -> None:
        os.makedirs(self.config.data_dir, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(items, f, ensure_ascii=False, indent=2)

    async def _save_raw(self, job_id: str, job: Job, items: List[Dict[str, Any]]) -> Optional[str]:
        page_id = job.page_id or extract_page_id(job.url)
        path = os.path.join(self.config.data_dir, f"{page_id}_{utcnow().strftime('%Y%m%d_%H%M%S')}.json")
        try:
            # blocking file IO stays off the event loop
            await asyncio.to_thread(self._write_raw, path, items)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Job {job_id}: failed to save raw data: {e}")
            return None
        logger.info(f"Job {job_id}: raw data saved to {path}")
        return path

    async def _store(self, job_id: str, items: List[Dict[str, Any]]) -> int:
        total = len(items)

        async def on_progress(current: int, total: int, success: int, failed: int):
            await self.store.update_progress(
                job_id,
                message=f"Saving... {current}/{total}",
                inserted=success,
                failed=failed,
                pending=total - current,
            )

        try:
            result = await self.storage.save_raw_ads_batch(items, on_progress)
        except Exception as e:
            logger.exception(f"Job {job_id}: batch save failed: {e}")
            await self.store.update_progress(job_id, inserted=0, failed=total, pending=0)
            return 0

        if result.error:
            logger.error(f"Job {job_id}: batch save error: {result.error}")
        await self.store.update_progress(
            job_id, inserted=result.success, failed=result.failed, pending=0
        )
        return result.success
