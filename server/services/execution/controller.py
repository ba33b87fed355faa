"""Retry/concurrency controller - admits and runs ``workflow/execute`` jobs.

Each job runs as a sequence of durable steps keyed by the pre-generated
execution id:

    create-execution-record -> execute-workflow -> save-execution-results -> increment-usage

Redelivering a job after a crash replays completed steps from their
checkpoints, so it never creates a second record or a second usage increment.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from core.config import Settings
from core.database import Database
from core.logging import get_logger, bind_execution_context, clear_execution_context
from constants import (
    METRIC_EXECUTIONS,
    STEP_CREATE_RECORD,
    STEP_EXECUTE,
    STEP_SAVE_RESULTS,
    STEP_INCREMENT_USAGE,
)
from services.plans import PlanService
from services.quota import QuotaGuard
from .concurrency import TenantConcurrencyLimiter
from .errors import InfrastructureFault, QuotaExceeded, WorkflowValidationError, StaleWorkflowState
from .executor import GraphExecutor
from .ledger import ExecutionLedger
from .models import ExecutionJob, ExecutionResult, ExecutionStatus, RetryPolicy, WorkflowState
from .steps import DurableSteps

logger = get_logger(__name__)

RETRYABLE_ERRORS = (InfrastructureFault, OperationalError)


class ExecutionController:
    """Runs queued jobs under quota, per-owner concurrency and bounded retries."""

    def __init__(self, settings: Settings, database: Database, executor: GraphExecutor,
                 ledger: ExecutionLedger, quota: QuotaGuard, plans: PlanService,
                 limiter: TenantConcurrencyLimiter,
                 retry_policy: Optional[RetryPolicy] = None,
                 heartbeat_interval: Optional[float] = None):
        self.settings = settings
        self.database = database
        self.executor = executor
        self.ledger = ledger
        self.quota = quota
        self.plans = plans
        self.limiter = limiter
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings, RETRYABLE_ERRORS)
        # A third of the recovery window
        self.heartbeat_interval = heartbeat_interval or max(settings.recovery_stale_seconds / 3, 1.0)

    async def run_job(self, job: ExecutionJob) -> Optional[ExecutionStatus]:
        """Run a job to a terminal state.

        Returns:
            Final execution status, or None when the job was rejected before
            start (quota or validation) and no record was written.
        """
        bind_execution_context(job.id, job.workflow_id, job.owner_id)
        try:
            attempt = 0
            while True:
                try:
                    return await self._run_once(job, attempt + 1)
                except RETRYABLE_ERRORS as e:
                    if not self.retry_policy.should_retry(e, attempt):
                        logger.error("Retries exhausted", attempts=attempt + 1, error=str(e))
                        return await self._give_up(job, f"Infrastructure failure: {e}")
                    delay = self.retry_policy.calculate_delay(attempt)
                    logger.warning("Retrying job after infrastructure fault",
                                   attempt=attempt + 1, delay=delay, error=str(e))
                    await asyncio.sleep(delay)
                    attempt += 1
        except QuotaExceeded as e:
            logger.info("Job rejected by quota", resource=e.resource, used=e.used, limit=e.limit)
            return None
        except WorkflowValidationError as e:
            # A resumed job already has a running record; it must not stay running
            if await self.ledger.mark_failed(job.id, f"Validation failed: {e}"):
                return ExecutionStatus.FAILED
            logger.warning("Job rejected by validation", error=str(e), problems=e.problems)
            return None
        finally:
            clear_execution_context()

    async def _give_up(self, job: ExecutionJob, error: str) -> ExecutionStatus:
        """Persist the outcome of a job whose retries ran out."""
        record = await self.database.get_execution(job.id)
        if record is None:
            await self.ledger.write_failed(job, error)
            return ExecutionStatus.FAILED

        status = ExecutionStatus(record.status)
        if not status.is_terminal:
            await self.ledger.mark_failed(job.id, error)
            return ExecutionStatus.FAILED

        # Results are saved; the recovery sweep replays the usage step
        logger.warning("Usage accounting deferred to recovery", status=status.value, error=error)
        return status

    async def _run_once(self, job: ExecutionJob, attempt: int) -> ExecutionStatus:
        record = await self.database.get_execution(job.id)
        if record is not None and ExecutionStatus(record.status).is_terminal:
            logger.info("Job already finished", status=record.status)
            await self._finish_accounting(job)
            return ExecutionStatus(record.status)

        plan_id = await self.database.get_plan_id(job.owner_id)

        # A running record means the job was admitted before a crash: resume it
        if record is None:
            try:
                await self._check_not_stale(job)
            except StaleWorkflowState as e:
                await self.ledger.write_skipped(job, str(e))
                return ExecutionStatus.SKIPPED

            await self.quota.assert_within_limit(job.owner_id, plan_id, METRIC_EXECUTIONS)
            self.quota.assert_steps_limit(job.owner_id, plan_id, len(job.nodes))
            self.executor.validate(job.graph())

        limit = self.plans.get(plan_id).max_concurrency or self.settings.default_max_concurrency
        async with self.limiter.slot(job.owner_id, job.id, limit):
            return await self._run_steps(job, attempt)

    async def _check_not_stale(self, job: ExecutionJob) -> None:
        """Scheduler-originated jobs must still point at an active workflow."""
        if not job.trigger_type.from_scheduler:
            return
        workflow = await self.database.get_workflow(job.workflow_id)
        status = workflow.status if workflow else None
        if status != WorkflowState.ACTIVE.value:
            raise StaleWorkflowState(job.workflow_id, status)

    async def _run_steps(self, job: ExecutionJob, attempt: int) -> ExecutionStatus:
        steps = DurableSteps(self.database, job.id)

        async def create_record():
            record = await self.ledger.create_record(job, attempt=attempt)
            return {"execution_id": record.id}

        async def execute_workflow():
            result = await self.executor.execute(job.graph(), job.trigger_data,
                                                 job.owner_id, execution_id=job.id)
            return result.to_dict()

        await steps.run(STEP_CREATE_RECORD, create_record)
        await self.ledger.touch(job.id, attempt=attempt)

        async with self._heartbeat(job):
            result = ExecutionResult.from_dict(await steps.run(STEP_EXECUTE, execute_workflow))

        async def save_results():
            return {"saved": await self.ledger.save_results(result)}

        await steps.run(STEP_SAVE_RESULTS, save_results)
        await steps.run(STEP_INCREMENT_USAGE, lambda: self._increment_usage(job))

        logger.info("Job completed", status=result.status.value,
                    duration_ms=result.duration_ms, attempt=attempt)
        return result.status

    @asynccontextmanager
    async def _heartbeat(self, job: ExecutionJob):
        """Keep the record fresh and the slot lease alive while the graph runs."""

        async def beat():
            while True:
                await asyncio.sleep(self.heartbeat_interval)
                try:
                    await self.ledger.touch(job.id)
                    await self.limiter.renew(job.owner_id, job.id)
                except SQLAlchemyError as e:
                    logger.warning("Heartbeat failed", error=str(e))

        task = asyncio.create_task(beat(), name=f"heartbeat_{job.id}")
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _increment_usage(self, job: ExecutionJob) -> dict:
        counted = await self.quota.increment_usage(
            job.owner_id, METRIC_EXECUTIONS, 1,
            execution_id=job.id, workflow_id=job.workflow_id,
        )
        return {"counted": counted}

    async def _finish_accounting(self, job: ExecutionJob) -> None:
        """A crash between saving results and counting usage leaves one step to replay."""
        steps = DurableSteps(self.database, job.id)
        if STEP_SAVE_RESULTS in await steps.completed():
            await steps.run(STEP_INCREMENT_USAGE, lambda: self._increment_usage(job))
