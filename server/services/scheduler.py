"""
Cron Scheduler Service using APScheduler.

Each active workflow with a scheduled trigger has exactly one armed one-shot
job. When it fires, the handler re-reads the workflow, enqueues a
``workflow/execute`` job and re-arms for the next occurrence strictly after
"now". There is no persisted schedule state beyond the armed job.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from typing import Callable, Dict, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.base import JobLookupError

from core.database import Database
from core.logging import get_logger
from constants import KIND_SCHEDULED_TRIGGER
from models.database import utcnow
from services.execution.errors import InfrastructureFault, NodeTypeNotFound
from services.execution.ledger import ExecutionLedger
from services.execution.models import ExecutionJob, TriggerType, WorkflowGraph, WorkflowState
from services.queue import JobQueue
from services.registry import NodeRegistry

logger = get_logger(__name__)

JOB_PREFIX = "cron:"


def build_cron_trigger(cron_expression: str, timezone: str = "UTC") -> CronTrigger:
    """Parse a cron expression into a CronTrigger.

    Args:
        cron_expression: 6-field cron expression (second minute hour day month weekday)
                        or 5-field (minute hour day month weekday)
        timezone: Timezone the expression is evaluated in

    Raises:
        ValueError: wrong field count or invalid field values
    """
    parts = cron_expression.split()

    if len(parts) == 6:
        second, minute, hour, day, month, day_of_week = parts
    elif len(parts) == 5:
        second = '0'
        minute, hour, day, month, day_of_week = parts
    else:
        raise ValueError(f"Cron expression must have 5 or 6 fields: '{cron_expression}'")

    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
        timezone=timezone
    )


def next_fire_time(cron_expression: str, timezone: str, now: datetime) -> Optional[datetime]:
    """Next occurrence strictly after ``now``, returned in UTC."""
    trigger = build_cron_trigger(cron_expression, timezone)
    # Passing now as the previous fire time excludes now itself
    fire_at = trigger.get_next_fire_time(now, now)
    return fire_at.astimezone(dt_timezone.utc) if fire_at else None


def scheduled_job_id(workflow_id: str, scheduled_for: datetime) -> str:
    """Deterministic execution id so a duplicate fire cannot run twice."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"cron:{workflow_id}:{scheduled_for.isoformat()}"))


@dataclass
class ArmedTrigger:
    workflow_id: str
    owner_id: str
    cron_expression: str
    timezone: str
    fire_at: datetime


class CronScheduler:
    """Self-rescheduling cron path of the trigger subsystem."""

    def __init__(self, database: Database, queue: JobQueue, ledger: ExecutionLedger,
                 registry: NodeRegistry, timezone: str = "UTC",
                 scheduler: Optional[AsyncIOScheduler] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.database = database
        self.queue = queue
        self.ledger = ledger
        self.registry = registry
        self.timezone = timezone
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone)
        self.clock = clock
        self._armed: Dict[str, ArmedTrigger] = {}

    def start(self):
        """Start the scheduler if not already running."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("[Scheduler] Started")

    def shutdown(self):
        """Shutdown the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("[Scheduler] Shutdown")

    @staticmethod
    def job_id(workflow_id: str) -> str:
        return f"{JOB_PREFIX}{workflow_id}"

    # =========================================================================
    # ARM / DISARM
    # =========================================================================

    def find_schedule(self, graph: WorkflowGraph) -> Optional[Tuple[str, str]]:
        """``(cron, timezone)`` of the first scheduled trigger node, if any."""
        for node in graph.nodes:
            try:
                capability = self.registry.resolve(node.type_id)
            except NodeTypeNotFound:
                continue
            if capability.kind == KIND_SCHEDULED_TRIGGER:
                params = capability.parse_config(node.config)
                return params.cron, params.timezone
        return None

    def arm_trigger(self, workflow_id: str, cron_expression: str, timezone: str,
                    graph_snapshot: WorkflowGraph,
                    now: Optional[datetime] = None) -> Optional[datetime]:
        """Arm a one-shot job for the next occurrence after ``now``.

        Returns:
            The UTC fire time, or None when the expression has no future occurrence
        """
        now = now or self.clock()
        fire_at = next_fire_time(cron_expression, timezone, now)
        if fire_at is None:
            logger.warning("[Scheduler] Cron expression has no future occurrence",
                           workflow_id=workflow_id, cron=cron_expression)
            self.disarm(workflow_id)
            return None

        # A stopped scheduler keeps pending duplicates instead of replacing them
        self._remove_job(workflow_id)
        self.scheduler.add_job(
            self.fire,
            trigger=DateTrigger(run_date=fire_at),
            id=self.job_id(workflow_id),
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
            kwargs={"workflow_id": workflow_id, "scheduled_for": fire_at},
        )
        self._armed[workflow_id] = ArmedTrigger(
            workflow_id=workflow_id,
            owner_id=graph_snapshot.owner_id,
            cron_expression=cron_expression,
            timezone=timezone,
            fire_at=fire_at,
        )
        logger.info("[Scheduler] Armed cron trigger", workflow_id=workflow_id,
                    cron=cron_expression, timezone=timezone, fire_at=fire_at.isoformat())
        return fire_at

    def _remove_job(self, workflow_id: str) -> bool:
        try:
            self.scheduler.remove_job(self.job_id(workflow_id))
        except JobLookupError:
            return False
        return True

    def disarm(self, workflow_id: str) -> bool:
        """Remove the armed job. Returns True if a job was removed."""
        self._armed.pop(workflow_id, None)
        removed = self._remove_job(workflow_id)
        if removed:
            logger.info("[Scheduler] Disarmed cron trigger", workflow_id=workflow_id)
        return removed

    def is_armed(self, workflow_id: str) -> bool:
        return self.scheduler.get_job(self.job_id(workflow_id)) is not None

    def armed_at(self, workflow_id: str) -> Optional[datetime]:
        armed = self._armed.get(workflow_id)
        return armed.fire_at if armed else None

    def get_job_info(self, workflow_id: str) -> Optional[Dict]:
        armed = self._armed.get(workflow_id)
        if not armed or not self.is_armed(workflow_id):
            return None
        return {
            "id": self.job_id(workflow_id),
            "workflow_id": workflow_id,
            "cron": armed.cron_expression,
            "timezone": armed.timezone,
            "next_run_time": armed.fire_at.isoformat(),
        }

    # =========================================================================
    # FIRE HANDLER
    # =========================================================================

    async def fire(self, workflow_id: str, scheduled_for: Optional[datetime] = None,
                   now: Optional[datetime] = None) -> Optional[ExecutionJob]:
        """Handle one fire of an armed cron job.

        Returns:
            The enqueued job, or None when the workflow was not active
        """
        now = now or self.clock()
        scheduled_for = scheduled_for or now
        armed = self._armed.get(workflow_id)
        workflow = await self.database.get_workflow(workflow_id)

        trigger_data = {
            "fired_at": now.isoformat(),
            "scheduled_for": scheduled_for.isoformat(),
        }

        if workflow is None or workflow.status != WorkflowState.ACTIVE.value:
            owner_id = workflow.owner_id if workflow else (armed.owner_id if armed else "")
            skipped = ExecutionJob(
                id=scheduled_job_id(workflow_id, scheduled_for),
                workflow_id=workflow_id,
                owner_id=owner_id,
                trigger_data=trigger_data,
                trigger_type=TriggerType.SCHEDULED,
            )
            status = workflow.status if workflow else "deleted"
            await self.ledger.write_skipped(skipped, f"Workflow is not active (status={status})")
            self.disarm(workflow_id)
            return None

        graph = WorkflowGraph.from_record(workflow)
        schedule = self.find_schedule(graph)
        if schedule is None and armed is not None:
            schedule = (armed.cron_expression, armed.timezone)

        if schedule:
            trigger_data.update({"cron": schedule[0], "timezone": schedule[1]})

        job = ExecutionJob(
            id=scheduled_job_id(workflow_id, scheduled_for),
            workflow_id=workflow_id,
            owner_id=workflow.owner_id,
            nodes=workflow.nodes,
            edges=workflow.edges,
            trigger_data=trigger_data,
            trigger_type=TriggerType.SCHEDULED,
        )

        try:
            await self.queue.enqueue(job)
        except InfrastructureFault as e:
            logger.error("[Scheduler] Failed to enqueue scheduled job",
                         workflow_id=workflow_id, error=str(e))
        finally:
            if schedule:
                self.arm_trigger(workflow_id, schedule[0], schedule[1], graph, now=now)
            else:
                self.disarm(workflow_id)

        return job

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def rearm_orphans(self, now: Optional[datetime] = None) -> int:
        """Arm active scheduled workflows whose job is missing (restart, crash)."""
        rearmed = 0
        for workflow in await self.database.list_workflows(status=WorkflowState.ACTIVE.value):
            if self.is_armed(workflow.id):
                continue
            graph = WorkflowGraph.from_record(workflow)
            try:
                schedule = self.find_schedule(graph)
            except ValueError as e:
                logger.warning("[Scheduler] Invalid schedule on active workflow",
                               workflow_id=workflow.id, error=str(e))
                continue
            if schedule and self.arm_trigger(workflow.id, schedule[0], schedule[1], graph, now=now):
                rearmed += 1
        return rearmed
