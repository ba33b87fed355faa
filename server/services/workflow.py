"""Workflow Service - Facade for workflow lifecycle and execution submission.

Delegates to specialized modules:
- GraphExecutor: static validation of graphs
- QuotaGuard: plan limits checked before activation and submission
- CronScheduler: arming and disarming scheduled triggers
- JobQueue: ``workflow/execute`` jobs consumed by the controller

The HTTP layer only talks to this facade.
"""

import uuid
from typing import Dict, Any, List, Optional

from core.database import Database
from core.logging import get_logger
from constants import METRIC_EXECUTIONS
from models.database import Workflow, WorkflowExecution, NodeExecutionResult, ExecutionLog
from services.execution import (
    ExecutionJob,
    GraphExecutor,
    ResourceNotFound,
    TriggerType,
    WorkflowGraph,
    WorkflowState,
)
from services.queue import JobQueue
from services.quota import QuotaGuard
from services.scheduler import CronScheduler

logger = get_logger(__name__)


class WorkflowService:
    """Workflow CRUD, activation lifecycle and execution submission."""

    def __init__(
        self,
        database: Database,
        executor: GraphExecutor,
        quota: QuotaGuard,
        queue: JobQueue,
        scheduler: CronScheduler,
    ):
        self.database = database
        self.executor = executor
        self.quota = quota
        self.queue = queue
        self.scheduler = scheduler

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create_workflow(self, owner_id: str, name: str = "Untitled workflow",
                              nodes: Optional[List[Dict[str, Any]]] = None,
                              edges: Optional[List[Dict[str, Any]]] = None,
                              description: Optional[str] = None,
                              workflow_id: Optional[str] = None) -> Workflow:
        """Create a workflow in ``draft`` state."""
        workflow = Workflow(
            id=workflow_id or str(uuid.uuid4()),
            owner_id=owner_id,
            name=name,
            description=description,
            status=WorkflowState.DRAFT.value,
            nodes=nodes or [],
            edges=edges or [],
        )
        saved = await self.database.save_workflow(workflow)
        logger.info("Workflow created", workflow_id=saved.id, owner_id=owner_id,
                    nodes=len(saved.nodes))
        return saved

    async def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self.database.get_workflow(workflow_id)
        if workflow is None:
            raise ResourceNotFound("Workflow", workflow_id)
        return workflow

    async def list_workflows(self, owner_id: Optional[str] = None,
                             status: Optional[str] = None) -> List[Workflow]:
        return await self.database.list_workflows(owner_id=owner_id, status=status)

    async def update_workflow(self, workflow_id: str, name: Optional[str] = None,
                              description: Optional[str] = None,
                              nodes: Optional[List[Dict[str, Any]]] = None,
                              edges: Optional[List[Dict[str, Any]]] = None) -> Workflow:
        """Update fields that were provided.

        An active workflow is re-validated and its schedule re-armed so the
        next fire uses the new graph.
        """
        workflow = await self.get_workflow(workflow_id)
        if name is not None:
            workflow.name = name
        if description is not None:
            workflow.description = description
        if nodes is not None:
            workflow.nodes = nodes
        if edges is not None:
            workflow.edges = edges

        graph_changed = nodes is not None or edges is not None
        if graph_changed and workflow.status == WorkflowState.ACTIVE.value:
            self.executor.validate(WorkflowGraph.from_record(workflow))

        saved = await self.database.save_workflow(workflow)
        if graph_changed and saved.status == WorkflowState.ACTIVE.value:
            self._arm_schedule(saved)
        logger.info("Workflow updated", workflow_id=workflow_id)
        return saved

    async def delete_workflow(self, workflow_id: str) -> None:
        self.scheduler.disarm(workflow_id)
        if not await self.database.delete_workflow(workflow_id):
            raise ResourceNotFound("Workflow", workflow_id)
        logger.info("Workflow deleted", workflow_id=workflow_id)

    # =========================================================================
    # ACTIVATION
    # =========================================================================

    async def activate(self, workflow_id: str) -> Workflow:
        """Validate, check the active-workflow limit and arm cron triggers."""
        workflow = await self.get_workflow(workflow_id)
        graph = WorkflowGraph.from_record(workflow)
        self.executor.validate(graph)

        if workflow.status != WorkflowState.ACTIVE.value:
            plan_id = await self.database.get_plan_id(workflow.owner_id)
            await self.quota.assert_can_activate(workflow.owner_id, plan_id)

        workflow = await self.database.set_workflow_status(workflow_id, WorkflowState.ACTIVE.value)
        fire_at = self._arm_schedule(workflow)
        logger.info("Workflow activated", workflow_id=workflow_id,
                    next_fire=fire_at.isoformat() if fire_at else None)
        return workflow

    async def deactivate(self, workflow_id: str) -> Workflow:
        """Disarm cron triggers and mark inactive. Polling stops on the next sweep."""
        await self.get_workflow(workflow_id)
        self.scheduler.disarm(workflow_id)
        workflow = await self.database.set_workflow_status(workflow_id, WorkflowState.INACTIVE.value)
        logger.info("Workflow deactivated", workflow_id=workflow_id)
        return workflow

    def _arm_schedule(self, workflow: Workflow):
        graph = WorkflowGraph.from_record(workflow)
        schedule = self.scheduler.find_schedule(graph)
        if schedule is None:
            self.scheduler.disarm(workflow.id)
            return None
        cron, timezone = schedule
        return self.scheduler.arm_trigger(workflow.id, cron, timezone, graph)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute(self, workflow_id: str, trigger_data: Optional[Dict[str, Any]] = None,
                      test: bool = False) -> str:
        """Submit a manual or test run.

        Validation and quota errors are raised to the caller; otherwise the job is
        enqueued and its pre-generated execution id returned.
        """
        workflow = await self.get_workflow(workflow_id)
        graph = WorkflowGraph.from_record(workflow)
        self.executor.validate(graph)

        plan_id = await self.database.get_plan_id(workflow.owner_id)
        await self.quota.assert_within_limit(workflow.owner_id, plan_id, METRIC_EXECUTIONS)
        self.quota.assert_steps_limit(workflow.owner_id, plan_id, len(graph.nodes))

        job = ExecutionJob(
            workflow_id=workflow.id,
            owner_id=workflow.owner_id,
            nodes=workflow.nodes,
            edges=workflow.edges,
            trigger_data=trigger_data or {},
            trigger_type=TriggerType.TEST if test else TriggerType.MANUAL,
        )
        await self.queue.enqueue(job)
        logger.info("Workflow execution submitted", workflow_id=workflow_id,
                    execution_id=job.id, trigger_type=job.trigger_type.value)
        return job.id

    # =========================================================================
    # READ API
    # =========================================================================

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        record = await self.database.get_execution(execution_id)
        if record is None:
            raise ResourceNotFound("Execution", execution_id)
        return record

    async def list_executions(self, workflow_id: Optional[str] = None,
                              owner_id: Optional[str] = None,
                              limit: int = 50) -> List[WorkflowExecution]:
        return await self.database.list_executions(workflow_id=workflow_id,
                                                   owner_id=owner_id, limit=limit)

    async def get_node_results(self, execution_id: str) -> List[NodeExecutionResult]:
        await self.get_execution(execution_id)
        return await self.database.get_node_results(execution_id)

    async def get_execution_logs(self, execution_id: str) -> List[ExecutionLog]:
        await self.get_execution(execution_id)
        return await self.database.get_execution_logs(execution_id)
