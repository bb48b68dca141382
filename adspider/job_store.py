import functools
import logging
from typing import AbstractSet, Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from .models import TERMINAL_STATUSES, Job, JobProgress, JobSpec, JobStats, JobStatus, utcnow
from .redis_client import RedisConnection

logger = logging.getLogger(__name__)

JOBS_KEY = "spider:jobs"
JOB_PREFIX = "spider:job:"
QUEUE_KEY = "spider:queue"
DATA_FIELD = "data"

# list_jobs limit used by bulk operations that must see every job
SCAN_LIMIT = 10000

# WATCH conflicts tolerated before a status change gives up
TRANSITION_ATTEMPTS = 5


class StoreUnavailable(Exception):
    """Raised internally when no Redis client can be obtained."""
    pass


def degrades_to(default_factory: Callable[[], Any]):
    """
    Wraps a JobStore coroutine so a lost backing store never raises.

    Redis errors discard the connection (it is rebuilt lazily) and, like an
    unreachable store, yield a fresh default value.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self: "JobStore", *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except StoreUnavailable:
                logger.warning(f"{func.__name__}: Redis unavailable.")
                return default_factory()
            except RedisError as e:
                logger.error(f"{func.__name__}: Redis error: {e}")
                self.connection.discard()
                return default_factory()
        return wrapper
    return decorator


class JobStore:
    """
    Durable CRUD over Job records plus the FIFO work queue.

    Records are JSON in the hash field "data" of spider:job:<id>. The
    spider:jobs list keeps every id, newest at the head. The queue is
    spider:queue: LPUSH to enqueue, RPOP to claim.
    """
    def __init__(self, connection: RedisConnection):
        self.connection = connection

    async def _redis(self):
        client = await self.connection.get_client()
        if client is None:
            raise StoreUnavailable()
        return client

    def _parse(self, job_id: str, data: Optional[str]) -> Optional[Job]:
        if not data:
            return None
        try:
            return Job.model_validate_json(data)
        except ValidationError as e:
            logger.error(f"Job {job_id} has an unreadable record: {e}")
            return None

    async def _write(self, client, job: Job) -> None:
        await client.hset(JOB_PREFIX + job.job_id, mapping={DATA_FIELD: job.model_dump_json()})

    async def _transition(
        self,
        client,
        job_id: str,
        allowed: AbstractSet[JobStatus],
        changes: Callable[[Job], Dict[str, Any]],
        queue_ops: Optional[Callable[[Any], None]] = None,
    ) -> Optional[Job]:
        """
        Check-and-set on one job record.

        The record is WATCHed, its status checked against `allowed`, and the
        new record plus any queue commands from `queue_ops` are written in a
        single MULTI/EXEC. A concurrent write to the record aborts the EXEC
        and the check is repeated against the fresh record.

        Returns:
            The updated job, or None when the record is missing or its status
            is not in `allowed`.
        """
        key = JOB_PREFIX + job_id
        async with client.pipeline(transaction=True) as pipe:
            for _ in range(TRANSITION_ATTEMPTS):
                try:
                    await pipe.watch(key)
                    job = self._parse(job_id, await pipe.hget(key, DATA_FIELD))
                    if job is None or job.status not in allowed:
                        await pipe.unwatch()
                        return None
                    updated = Job.model_validate({**job.model_dump(), **changes(job)})
                    pipe.multi()
                    pipe.hset(key, mapping={DATA_FIELD: updated.model_dump_json()})
                    if queue_ops is not None:
                        queue_ops(pipe)
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.debug(f"Job {job_id} changed during update; retrying.")
                    continue
        logger.warning(f"Job {job_id}: gave up after {TRANSITION_ATTEMPTS} conflicting updates.")
        return None

    @degrades_to(lambda: False)
    async def ping(self) -> bool:
        client = await self._redis()
        return bool(await client.ping())

    @degrades_to(lambda: None)
    async def create_job(self, spec: JobSpec) -> Optional[Job]:
        client = await self._redis()
        job = Job(**spec.model_dump(), progress=JobProgress(total=spec.max_items))
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(JOB_PREFIX + job.job_id, mapping={DATA_FIELD: job.model_dump_json()})
            pipe.lpush(JOBS_KEY, job.job_id)
            pipe.lpush(QUEUE_KEY, job.job_id)
            await pipe.execute()
        logger.info(f"Job {job.job_id} created and queued.")
        return job

    @degrades_to(lambda: None)
    async def get_job(self, job_id: str) -> Optional[Job]:
        client = await self._redis()
        return self._parse(job_id, await client.hget(JOB_PREFIX + job_id, DATA_FIELD))

    @degrades_to(lambda: None)
    async def claim_next_queued(self) -> Optional[str]:
        client = await self._redis()
        # RPOP is atomic: an id is handed to exactly one claimer
        return await client.rpop(QUEUE_KEY)

    @degrades_to(lambda: False)
    async def release_claim(self, job_id: str) -> bool:
        """Puts a claimed id back at the consuming end of the queue, so it is claimed next."""
        client = await self._redis()
        await client.rpush(QUEUE_KEY, job_id)
        logger.info(f"Job {job_id} released back to the queue.")
        return True

    @degrades_to(lambda: False)
    async def update_job(self, job_id: str, fields: Dict[str, Any]) -> bool:
        client = await self._redis()
        job = await self.get_job(job_id)
        if job is None:
            return False
        merged = Job.model_validate({**job.model_dump(), **fields})
        await self._write(client, merged)
        return True

    @degrades_to(lambda: False)
    async def update_progress(self, job_id: str, message: Optional[str] = None, **counters: int) -> bool:
        client = await self._redis()
        job = await self.get_job(job_id)
        if job is None:
            return False
        job.progress = JobProgress.model_validate({**job.progress.model_dump(), **counters})
        if message:
            job.message = message
        await self._write(client, job)
        return True

    async def start_job(self, job_id: str) -> Optional[Job]:
        """
        Moves a claimed job from queued to running and returns it.

        Returns None when the record is gone or is no longer queued. A lost
        store raises StoreUnavailable instead of degrading, so the claimer
        can tell "nothing to run" from "could not look".
        """
        try:
            client = await self._redis()
            return await self._transition(client, job_id, {JobStatus.QUEUED}, lambda job: {
                "status": JobStatus.RUNNING,
                "started_at": utcnow(),
            })
        except RedisError as e:
            logger.error(f"start_job: Redis error: {e}")
            self.connection.discard()
            raise StoreUnavailable(str(e)) from e

    @degrades_to(lambda: False)
    async def set_running(self, job_id: str) -> bool:
        return await self.start_job(job_id) is not None

    @degrades_to(lambda: False)
    async def set_completed(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> bool:
        client = await self._redis()
        job = await self._transition(client, job_id, {JobStatus.RUNNING}, lambda job: {
            "status": JobStatus.COMPLETED,
            "completed_at": utcnow(),
            "result": result,
        })
        if job is None:
            logger.warning(f"Job {job_id} is not running; completion not recorded.")
        return job is not None

    @degrades_to(lambda: False)
    async def set_failed(self, job_id: str, error: str) -> bool:
        client = await self._redis()
        job = await self._transition(client, job_id, {JobStatus.RUNNING}, lambda job: {
            "status": JobStatus.FAILED,
            "completed_at": utcnow(),
            "error": error,
        })
        if job is None:
            logger.warning(f"Job {job_id} is not running; failure not recorded.")
        return job is not None

    @degrades_to(list)
    async def list_jobs(self, limit: int = 50) -> List[Job]:
        if limit <= 0:
            return []
        client = await self._redis()
        job_ids = await client.lrange(JOBS_KEY, 0, limit - 1)
        jobs = []
        for job_id in job_ids:
            job = await self.get_job(job_id)
            if job:
                jobs.append(job)
        # The list is head-newest already; sort anyway so requeued or
        # re-inserted ids cannot disturb the order.
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    @degrades_to(JobStats)
    async def compute_stats(self) -> JobStats:
        await self._redis()
        stats = JobStats()
        for job in await self.list_jobs(SCAN_LIMIT):
            stats.total += 1
            status = job.status.value
            setattr(stats, status, getattr(stats, status) + 1)
            stats.total_scraped += job.progress.scraped
            stats.total_analyzed += job.progress.analyzed
            stats.total_inserted += job.progress.inserted
            stats.total_pending += job.progress.pending
            stats.total_failed += job.progress.failed
        return stats

    @degrades_to(lambda: False)
    async def cancel_job(self, job_id: str) -> bool:
        """Cancels a job that has not started yet. Running jobs are not preemptible."""
        client = await self._redis()
        job = await self._transition(
            client,
            job_id,
            {JobStatus.QUEUED},
            lambda job: {"status": JobStatus.CANCELLED, "completed_at": utcnow()},
            lambda pipe: pipe.lrem(QUEUE_KEY, 0, job_id),
        )
        if job is None:
            current = await self.get_job(job_id)
            if current is not None:
                logger.warning(f"Job {job_id} is {current.status.value}; only queued jobs can be cancelled.")
            return False
        logger.info(f"Job {job_id} cancelled.")
        return True

    @degrades_to(lambda: False)
    async def requeue_job(self, job_id: str) -> bool:
        """
        Puts a terminal job back on the queue with zeroed progress.

        A job that is already queued is left alone (it keeps its single queue
        entry). A running job is rejected so a late completion write cannot
        race the reset.
        """
        client = await self._redis()

        def reset(job: Job) -> Dict[str, Any]:
            return {
                "status": JobStatus.QUEUED,
                "progress": JobProgress(total=job.max_items),
                "error": None,
                "result": None,
                "message": None,
                "started_at": None,
                "completed_at": None,
            }

        def enqueue(pipe) -> None:
            pipe.lrem(QUEUE_KEY, 0, job_id)
            pipe.lpush(QUEUE_KEY, job_id)

        if await self._transition(client, job_id, TERMINAL_STATUSES, reset, enqueue) is not None:
            logger.info(f"Job {job_id} requeued.")
            return True

        current = await self.get_job(job_id)
        if current is None:
            return False
        if current.status == JobStatus.RUNNING:
            logger.warning(f"Job {job_id} is running and cannot be requeued.")
        return current.status == JobStatus.QUEUED

    @degrades_to(lambda: False)
    async def delete_job(self, job_id: str) -> bool:
        client = await self._redis()
        async with client.pipeline(transaction=True) as pipe:
            pipe.delete(JOB_PREFIX + job_id)
            pipe.lrem(JOBS_KEY, 0, job_id)
            pipe.lrem(QUEUE_KEY, 0, job_id)
            await pipe.execute()
        return True

    @degrades_to(int)
    async def _clear_status(self, status: JobStatus) -> int:
        await self._redis()
        count = 0
        for job in await self.list_jobs(SCAN_LIMIT):
            if job.status == status and await self.delete_job(job.job_id):
                count += 1
        if count:
            logger.info(f"Cleared {count} {status.value} job(s).")
        return count

    async def clear_completed(self) -> int:
        return await self._clear_status(JobStatus.COMPLETED)

    async def clear_failed(self) -> int:
        return await self._clear_status(JobStatus.FAILED)

    async def clear_cancelled(self) -> int:
        return await self._clear_status(JobStatus.CANCELLED)

    async def clear_queued(self) -> int:
        return await self._clear_status(JobStatus.QUEUED)

    async def _bulk(self, operation, job_ids: Iterable[str]) -> int:
        count = 0
        for job_id in job_ids:
            if await operation(job_id):
                count += 1
        return count

    async def bulk_delete(self, job_ids: Iterable[str]) -> int:
        return await self._bulk(self.delete_job, job_ids)

    async def bulk_cancel(self, job_ids: Iterable[str]) -> int:
        return await self._bulk(self.cancel_job, job_ids)

    async def bulk_requeue(self, job_ids: Iterable[str]) -> int:
        return await self._bulk(self.requeue_job, job_ids)
