"""Recovery sweeper for crash recovery.

Runs as background task to:
- Detect abandoned executions (still running, not touched recently)
- Re-enqueue their stored job so the controller resumes from checkpoints
- Re-enqueue finished executions whose usage increment never landed
- Re-arm cron triggers whose armed job went missing
"""

import asyncio
from datetime import timedelta
from typing import List, Optional, Callable, Awaitable

from core.database import Database
from core.logging import get_logger
from models.database import utcnow
from .concurrency import TenantConcurrencyLimiter
from .ledger import ExecutionLedger
from .models import ExecutionJob

logger = get_logger(__name__)

EnqueueFn = Callable[[ExecutionJob], Awaitable[bool]]
RearmFn = Callable[[], Awaitable[int]]


class RecoverySweeper:
    """Background task that recovers abandoned workflow executions.

    Conductor's sweeper pattern:
    - Periodically scans for stuck executions
    - Re-submits them with their original execution id
    - Reconciles armed cron jobs with active workflows
    """

    def __init__(self, database: Database, ledger: ExecutionLedger,
                 stale_seconds: int = 600,
                 sweep_interval: int = 60,
                 limiter: Optional[TenantConcurrencyLimiter] = None):
        """Initialize recovery sweeper.

        Args:
            database: Database for execution lookups
            ledger: ExecutionLedger for touching and failing records
            stale_seconds: Seconds without progress before a running record is stuck
            sweep_interval: Seconds between sweep runs
            limiter: Concurrency limiter; a record whose slot is still held is live
        """
        self.database = database
        self.ledger = ledger
        self.stale_seconds = stale_seconds
        self.sweep_interval = sweep_interval
        self.limiter = limiter
        self._running = False
        self._task: Optional[asyncio.Task] = None

        # Recovery callbacks (set at startup wiring)
        self._on_recovery: Optional[EnqueueFn] = None
        self._on_rearm: Optional[RearmFn] = None

    def set_recovery_callback(self, callback: EnqueueFn) -> None:
        """Set callback that re-submits a stuck job (usually ``JobQueue.enqueue``)."""
        self._on_recovery = callback

    def set_rearm_callback(self, callback: RearmFn) -> None:
        """Set callback that re-arms orphaned cron triggers."""
        self._on_rearm = callback

    async def start(self) -> None:
        """Start the recovery sweeper background task."""
        if self._running:
            logger.warning("Recovery sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Recovery sweeper started",
                    stale_seconds=self.stale_seconds,
                    sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        """Stop the recovery sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Recovery sweeper stopped")

    async def _sweep_loop(self) -> None:
        """Main sweep loop - runs continuously."""
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Sweep iteration failed", error=str(e))

            await asyncio.sleep(self.sweep_interval)

    async def sweep_once(self) -> List[str]:
        """Single sweep iteration.

        Returns:
            Execution ids that were re-submitted
        """
        recovered = await self.recover_stale_executions()
        recovered += await self.recover_unaccounted_executions()

        if self._on_rearm:
            rearmed = await self._on_rearm()
            if rearmed:
                logger.info("Re-armed orphaned cron triggers", count=rearmed)

        return recovered

    async def recover_stale_executions(self) -> List[str]:
        cutoff = utcnow() - timedelta(seconds=self.stale_seconds)
        stale = await self.database.find_stale_executions(cutoff)
        if not stale:
            return []

        logger.info("Found stale executions", count=len(stale))
        recovered = []

        for record in stale:
            if not record.job_payload:
                await self.ledger.mark_failed(record.id, "Execution abandoned without a job payload")
                continue

            if self.limiter and await self.limiter.is_held(record.owner_id, record.id):
                logger.debug("Execution still holds its slot", execution_id=record.id)
                await self.ledger.touch(record.id)
                continue

            job = ExecutionJob.from_dict(record.job_payload)
            # Touch first so the next sweep does not re-submit while the job waits in the queue
            await self.ledger.touch(record.id)

            if self._on_recovery is None:
                logger.warning("No recovery callback set", execution_id=record.id)
                continue

            if await self._resubmit(job):
                recovered.append(record.id)
                logger.info("Re-submitted stale execution", execution_id=record.id,
                            workflow_id=record.workflow_id)

        return recovered

    async def recover_unaccounted_executions(self) -> List[str]:
        """Re-submit finished executions so the controller replays their usage step."""
        cutoff = utcnow() - timedelta(seconds=self.stale_seconds)
        pending = await self.database.find_unaccounted_executions(cutoff)
        if not pending or self._on_recovery is None:
            return []

        recovered = []
        for record in pending:
            if not record.job_payload:
                continue
            if await self._resubmit(ExecutionJob.from_dict(record.job_payload)):
                recovered.append(record.id)
                logger.info("Re-submitted execution with uncounted usage",
                            execution_id=record.id, status=record.status)
        return recovered

    async def _resubmit(self, job: ExecutionJob) -> bool:
        try:
            await self._on_recovery(job)
            return True
        except Exception as e:
            logger.error("Recovery callback failed", execution_id=job.id, error=str(e))
            return False
