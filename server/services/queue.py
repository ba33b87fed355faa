"""Job queue for ``workflow/execute`` jobs with a worker pool.

Redis backend: jobs are LPUSHed onto a list and BLMOVEd to a processing
list by workers; they are removed only after the handler returns, and are
moved back on startup (at-least-once). Memory backend: asyncio.Queue.
"""

import asyncio
import json
import time
from typing import Awaitable, Callable, Dict, List, Optional

from redis.exceptions import RedisError

from core.cache import CacheService
from core.logging import get_logger
from services.execution.errors import InfrastructureFault
from services.execution.models import ExecutionJob

logger = get_logger(__name__)

QUEUE_KEY = "jobs:workflow-execute"
PROCESSING_KEY = "jobs:workflow-execute:processing"
DEDUPE_KEY = "jobs:workflow-execute:seen:{job_id}"
DEDUPE_TTL = 86400

JobHandler = Callable[[ExecutionJob], Awaitable[None]]


class JobQueue:
    """Queue plus worker pool consuming jobs into a handler (the controller)."""

    def __init__(self, cache: CacheService, workers: int = 4):
        self.cache = cache
        self.workers = workers
        self._handler: Optional[JobHandler] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._seen: Dict[str, float] = {}
        self._tasks: List[asyncio.Task] = []
        self._running = False

    def set_handler(self, handler: JobHandler) -> None:
        self._handler = handler

    # =========================================================================
    # Producer side
    # =========================================================================

    async def enqueue(self, job: ExecutionJob, force: bool = False) -> bool:
        """Enqueue ``job``; a job id already enqueued is dropped unless ``force``.

        Returns True when the job was enqueued.
        """
        if self.cache.is_redis_available():
            try:
                if not force:
                    fresh = await self.cache.redis.set(
                        DEDUPE_KEY.format(job_id=job.id), "1", nx=True, ex=DEDUPE_TTL
                    )
                    if not fresh:
                        logger.debug("Duplicate job dropped", job_id=job.id)
                        return False
                await self.cache.redis.lpush(QUEUE_KEY, json.dumps(job.to_dict()))
            except RedisError as e:
                raise InfrastructureFault(f"Job queue unavailable: {e}") from e
        else:
            self._prune_seen()
            if not force and job.id in self._seen:
                logger.debug("Duplicate job dropped", job_id=job.id)
                return False
            self._seen[job.id] = time.monotonic()
            await self._queue.put(job)

        logger.info("Job enqueued", job_id=job.id, workflow_id=job.workflow_id,
                    trigger_type=job.trigger_type.value)
        return True

    def _prune_seen(self) -> None:
        cutoff = time.monotonic() - DEDUPE_TTL
        for job_id in [k for k, v in self._seen.items() if v < cutoff]:
            del self._seen[job_id]

    async def size(self) -> int:
        if self.cache.is_redis_available():
            return int(await self.cache.redis.llen(QUEUE_KEY))
        return self._queue.qsize()

    # =========================================================================
    # Worker side
    # =========================================================================

    async def start(self) -> None:
        """Start the worker pool."""
        if self._running:
            logger.warning("Job queue already running")
            return
        if self._handler is None:
            raise RuntimeError("JobQueue handler not set")

        self._running = True
        if self.cache.is_redis_available():
            await self._requeue_inflight()
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"job_worker_{i}")
            for i in range(self.workers)
        ]
        logger.info("Job queue started", workers=self.workers,
                    backend="redis" if self.cache.is_redis_available() else "memory")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Job queue stopped")

    async def join(self) -> None:
        """Wait until every in-memory job has been handled."""
        await self._queue.join()

    async def _requeue_inflight(self) -> None:
        """Move jobs left in the processing list by a crashed worker back to the queue."""
        moved = 0
        while await self.cache.redis.lmove(PROCESSING_KEY, QUEUE_KEY, "RIGHT", "RIGHT"):
            moved += 1
        if moved:
            logger.info("Requeued in-flight jobs", count=moved)

    async def _worker_loop(self, worker_id: int) -> None:
        while self._running:
            try:
                if self.cache.is_redis_available():
                    await self._consume_redis()
                else:
                    await self._consume_memory()
            except asyncio.CancelledError:
                raise
            except RedisError as e:
                logger.error("Queue backend error", worker=worker_id, error=str(e))
                await asyncio.sleep(1.0)

    async def _consume_memory(self) -> None:
        job = await self._queue.get()
        try:
            await self._dispatch(job)
        finally:
            self._queue.task_done()

    async def _consume_redis(self) -> None:
        raw = await self.cache.redis.blmove(QUEUE_KEY, PROCESSING_KEY, 1, "RIGHT", "LEFT")
        if raw is None:
            return
        try:
            await self._dispatch(ExecutionJob.from_dict(json.loads(raw)))
        finally:
            await self.cache.redis.lrem(PROCESSING_KEY, 1, raw)

    async def _dispatch(self, job: ExecutionJob) -> None:
        try:
            await self._handler(job)
        except Exception as e:
            logger.exception("Job handler failed", job_id=job.id, error=str(e))
