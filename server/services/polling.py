"""Polling sweeper - the fixed-interval path of the trigger subsystem.

Every sweep lists active workflows that contain a polling trigger node and
checks each one independently under a timeout. New data becomes a queued
``workflow/execute`` job; the new cursor is stored only after the enqueue so a
crash in between re-polls the same batch, which the deterministic job id dedupes.
"""

import asyncio
import uuid
from typing import List, Optional

from core.database import Database
from core.logging import get_logger
from constants import KIND_POLLING_TRIGGER
from models.database import Workflow, as_utc
from services.execution.errors import NodeTypeNotFound
from services.execution.models import ExecutionJob, Node, TriggerType, WorkflowGraph, WorkflowState
from services.queue import JobQueue
from services.registry import NodeRegistry, PollState

logger = get_logger(__name__)


def polling_job_id(workflow_id: str, trigger_type: str, cursor: Optional[str]) -> str:
    if cursor is None:
        return str(uuid.uuid4())
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"poll:{workflow_id}:{trigger_type}:{cursor}"))


class PollingSweeper:
    """Background task that polls external sources for active workflows."""

    def __init__(self, database: Database, registry: NodeRegistry, queue: JobQueue,
                 interval: int = 300, check_timeout: float = 30.0):
        self.database = database
        self.registry = registry
        self.queue = queue
        self.interval = interval
        self.check_timeout = check_timeout
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running:
            logger.warning("Polling sweeper already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Polling sweeper started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Polling sweeper stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Polling sweep failed", error=str(e))
            await asyncio.sleep(self.interval)

    def polling_nodes(self, graph: WorkflowGraph) -> List[Node]:
        """First polling trigger node of each type in the graph."""
        found = {}
        for node in graph.nodes:
            try:
                capability = self.registry.resolve(node.type_id)
            except NodeTypeNotFound:
                continue
            if capability.kind == KIND_POLLING_TRIGGER and node.type_id not in found:
                found[node.type_id] = node
        return list(found.values())

    async def sweep_once(self) -> int:
        """Check every active polling workflow once.

        Returns:
            Number of jobs enqueued
        """
        workflows = await self.database.list_workflows(status=WorkflowState.ACTIVE.value)
        checks = []
        for workflow in workflows:
            graph = WorkflowGraph.from_record(workflow)
            for node in self.polling_nodes(graph):
                checks.append(self._guarded_check(workflow, node))

        if not checks:
            return 0

        results = await asyncio.gather(*checks)
        enqueued = sum(1 for r in results if r)
        logger.debug("Polling sweep finished", checked=len(checks), enqueued=enqueued)
        return enqueued

    async def _guarded_check(self, workflow: Workflow, node: Node) -> bool:
        """Run one check; failures are logged and never leak into other workflows."""
        try:
            return await asyncio.wait_for(self.check_workflow(workflow, node), self.check_timeout)
        except asyncio.TimeoutError:
            logger.warning("Polling check timed out", workflow_id=workflow.id,
                           trigger_type=node.type_id, timeout=self.check_timeout)
        except Exception as e:
            logger.error("Polling check failed", workflow_id=workflow.id,
                         trigger_type=node.type_id, error=f"{type(e).__name__}: {e}")
        return False

    async def check_workflow(self, workflow: Workflow, node: Node) -> bool:
        capability = self.registry.resolve(node.type_id)
        config = capability.parse_config(node.config)

        stored = await self.database.get_polling_state(workflow.id, node.type_id)
        state = PollState(
            cursor=stored.cursor if stored else None,
            last_seen_at=as_utc(stored.last_seen_at) if stored else None,
            data=dict(stored.state or {}) if stored else {},
        )

        result = await capability.poll(config, state)

        enqueued = False
        if result.has_new_data:
            job = ExecutionJob(
                id=polling_job_id(workflow.id, node.type_id, result.cursor),
                workflow_id=workflow.id,
                owner_id=workflow.owner_id,
                nodes=workflow.nodes,
                edges=workflow.edges,
                trigger_data={
                    "items": result.items,
                    "trigger_type": node.type_id,
                    "cursor": result.cursor,
                },
                trigger_type=TriggerType.POLLING,
            )
            enqueued = await self.queue.enqueue(job)
            logger.info("Polling found new data", workflow_id=workflow.id,
                        trigger_type=node.type_id, items=len(result.items), cursor=result.cursor)

        await self.database.save_polling_state(
            workflow.id, node.type_id, result.cursor,
            state=result.state, seen_new=result.has_new_data,
        )
        return enqueued
