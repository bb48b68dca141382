import asyncio
import logging
from collections import deque
from types import MappingProxyType
from typing import Deque, Dict, Mapping, Optional

from .job_store import JobStore, StoreUnavailable
from .pipeline import JobPipeline

logger = logging.getLogger(__name__)

BUSY_INTERVAL = 0.5  # seconds, while any job is in flight
IDLE_INTERVAL = 2.0  # seconds, when nothing is running
RETRY_INTERVAL = 2.0  # seconds, when the job store is unreachable
ERROR_INTERVAL = 5.0  # seconds, after an unexpected loop error


class Scheduler:
    """
    Pulls queued jobs and runs up to max_workers pipelines concurrently.

    Each tick reclaims finished slots, then claims at most as many jobs as
    there are free slots. Claiming is an atomic pop, so several schedulers
    may share one queue.
    """
    def __init__(
        self,
        store: JobStore,
        pipeline: JobPipeline,
        max_workers: int = 5,
        busy_interval: float = BUSY_INTERVAL,
        idle_interval: float = IDLE_INTERVAL,
        retry_interval: float = RETRY_INTERVAL,
        error_interval: float = ERROR_INTERVAL,
    ):
        self.store = store
        self.pipeline = pipeline
        self.max_workers = max_workers
        self.busy_interval = busy_interval
        self.idle_interval = idle_interval
        self.retry_interval = retry_interval
        self.error_interval = error_interval
        self._tasks: Dict[str, asyncio.Task] = {}
        # Claimed ids whose record could not be read yet
        self._held: Deque[str] = deque()
        self.running = False

    @property
    def active_jobs(self) -> Mapping[str, asyncio.Task]:
        return MappingProxyType(self._tasks)

    @property
    def free_slots(self) -> int:
        return max(self.max_workers - len(self._tasks), 0)

    def _reclaim(self) -> None:
        for job_id, task in list(self._tasks.items()):
            if task.done():
                del self._tasks[job_id]
                if not task.cancelled() and task.exception() is not None:
                    logger.error(f"Job {job_id} task ended with an error: {task.exception()}")

    async def _start(self, job_id: str) -> bool:
        try:
            job = await self.store.start_job(job_id)
        except StoreUnavailable:
            logger.warning(f"Job store unavailable while starting {job_id}; holding the claim.")
            self._held.append(job_id)
            return False
        if job is None:
            logger.warning(f"Claimed job {job_id} is missing or no longer queued; skipping.")
            return False

        self._tasks[job_id] = asyncio.create_task(self.pipeline.run(job_id, job), name=f"job-{job_id}")
        logger.info(f"Job {job_id} started ({len(self._tasks)}/{self.max_workers} slots busy).")
        return True

    async def run_once(self) -> Optional[float]:
        """
        One scheduling tick.

        Returns:
            How long to sleep before the next tick.
        """
        self._reclaim()

        if not await self.store.ping():
            logger.warning("Job store unavailable; waiting.")
            return self.retry_interval

        held, self._held = self._held, deque()
        for job_id in held:
            if self.free_slots:
                await self._start(job_id)
            else:
                self._held.append(job_id)
        if self._held:
            return self.retry_interval

        for _ in range(self.free_slots):
            job_id = await self.store.claim_next_queued()
            if job_id is None:
                break
            await self._start(job_id)
            if self._held:
                return self.retry_interval

        return self.busy_interval if self._tasks else self.idle_interval

    async def run(self) -> None:
        self.running = True
        logger.info(f"Scheduler started with {self.max_workers} worker slot(s).")
        while self.running:
            try:
                delay = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Scheduler loop error: {e}")
                delay = self.error_interval
            await asyncio.sleep(delay)
        logger.info("Scheduler stopped.")

    def stop(self) -> None:
        self.running = False

    async def drain(self, timeout: Optional[float] = None) -> None:
        """
        Returns held claims to the queue, then waits for in-flight pipelines
        and cancels whatever is left after timeout.
        """
        while self._held:
            job_id = self._held.popleft()
            if not await self.store.release_claim(job_id):
                logger.error(f"Claimed job {job_id} could not be returned to the queue.")

        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info(f"Waiting for {len(tasks)} running job(s) to finish...")
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} job(s) still running at shutdown.")
            await asyncio.gather(*pending, return_exceptions=True)
        self._reclaim()
