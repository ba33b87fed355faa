"""Graph executor with continuous scheduling and partial failure.

Implements:
- Up-front validation (Kahn's algorithm must consume every node)
- Continuous scheduling with asyncio.wait (FIRST_COMPLETED pattern): a node
  starts as soon as all of its sources are resolved
- Conditional edges evaluated against the source output at runtime
- Failure isolation: descendants of a failed node are skipped, independent
  branches keep running
"""

import asyncio
import time
import uuid
from collections import defaultdict
from typing import Dict, Any, List, Optional, Set, Tuple

import orjson

from core.logging import get_logger
from models.database import utcnow
from services.registry import NodeRegistry, Capability
from .conditions import evaluate_condition
from .errors import WorkflowValidationError, NodeFailure
from .models import (
    WorkflowGraph,
    Node,
    Edge,
    NodeStatus,
    NodeResult,
    ExecutionStatus,
    ExecutionResult,
    LogEntry,
)
from .templates import TEMPLATE_PATTERN, resolve_templates

logger = get_logger(__name__)

# Skip reasons: a branch not taken does not poison a downstream join,
# an upstream failure does.
SKIP_BRANCH = "branch not taken"
SKIP_UPSTREAM = "upstream node failed or was skipped"


def _json_safe(node_id: str, output: Any) -> Any:
    """Normalize a node output to plain JSON types (datetimes become ISO strings).

    Outputs are checkpointed and stored as JSON, so downstream nodes see the same
    value on a first run and on a replay.
    """
    try:
        return orjson.loads(orjson.dumps(output, option=orjson.OPT_NON_STR_KEYS))
    except orjson.JSONEncodeError as e:
        raise NodeFailure(node_id, f"output is not JSON-serializable: {e}") from e


def _has_template(value: Any) -> bool:
    if isinstance(value, str):
        return bool(TEMPLATE_PATTERN.search(value))
    if isinstance(value, dict):
        return any(_has_template(v) for v in value.values())
    if isinstance(value, list):
        return any(_has_template(v) for v in value)
    return False


def compute_execution_layers(graph: WorkflowGraph) -> List[List[str]]:
    """Kahn's algorithm with layers.

    Nodes in the same layer have no dependencies on each other. Raises
    WorkflowValidationError when the graph has a cycle.
    """
    node_ids = [node.id for node in graph.nodes]
    in_degree: Dict[str, int] = {node_id: 0 for node_id in node_ids}
    adjacency: Dict[str, List[str]] = defaultdict(list)

    for edge in graph.edges:
        adjacency[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    layers: List[List[str]] = []
    layer = [node_id for node_id in node_ids if in_degree[node_id] == 0]
    consumed = 0

    while layer:
        layers.append(layer)
        consumed += len(layer)
        next_layer = []
        for node_id in layer:
            for successor in adjacency[node_id]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    next_layer.append(successor)
        layer = next_layer

    if consumed != len(node_ids):
        cyclic = sorted(node_id for node_id, degree in in_degree.items() if degree > 0)
        raise WorkflowValidationError(
            f"Workflow graph contains a cycle involving: {', '.join(cyclic)}",
            problems=[f"cycle: {node_id}" for node_id in cyclic],
        )

    return layers


class GraphExecutor:
    """Executes a workflow graph against the node registry.

    Features:
    - Root nodes receive the trigger payload
    - Nodes with in-edges receive ``{source_id: source_output}``
    - Config templates resolved against input and completed outputs
    - Per-node timeout counted as a node failure
    """

    def __init__(self, registry: NodeRegistry, node_timeout: float = 300.0):
        self.registry = registry
        self.node_timeout = node_timeout

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate(self, graph: WorkflowGraph) -> List[List[str]]:
        """Validate a graph before any node runs.

        Returns:
            Execution layers (topological order)

        Raises:
            WorkflowValidationError: empty graph, duplicate ids, dangling edges,
                invalid static config or a cycle
            NodeTypeNotFound: a node type is not registered
        """
        if not graph.nodes:
            raise WorkflowValidationError("Workflow has no nodes")

        seen: Set[str] = set()
        duplicates: Set[str] = set()
        for node in graph.nodes:
            if node.id in seen:
                duplicates.add(node.id)
            seen.add(node.id)
        if duplicates:
            duplicates = sorted(duplicates)
            raise WorkflowValidationError(
                f"Duplicate node ids: {', '.join(duplicates)}",
                problems=[f"duplicate node id: {node_id}" for node_id in duplicates],
            )

        dangling = [
            f"{edge.source} -> {edge.target}" for edge in graph.edges
            if edge.source not in seen or edge.target not in seen
        ]
        if dangling:
            raise WorkflowValidationError(
                f"Edges reference unknown nodes: {', '.join(dangling)}",
                problems=[f"dangling edge: {d}" for d in dangling],
            )

        problems: List[str] = []
        for node in graph.nodes:
            capability = self.registry.resolve(node.type_id)
            if not _has_template(node.config):
                problems.extend(f"{node.id}.{err}" for err in capability.config_errors(node.config))
        if problems:
            raise WorkflowValidationError("Invalid node configuration", problems=problems)

        return compute_execution_layers(graph)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute(self, graph: WorkflowGraph, trigger_payload: Any, owner_id: str,
                      execution_id: Optional[str] = None) -> ExecutionResult:
        """Run every node of ``graph`` and collect per-node results.

        Raises WorkflowValidationError before any node runs; node failures
        never raise, they are reported in the result.
        """
        self.validate(graph)

        execution_id = execution_id or str(uuid.uuid4())
        started_at = utcnow()
        start = time.monotonic()
        logs: List[LogEntry] = [LogEntry("info", "Execution started",
                                         data={"workflow_id": graph.id, "owner_id": owner_id})]

        run = _GraphRun(self, graph, trigger_payload, logs)
        await run.drive()

        failed = [r for r in run.results.values() if r.status == NodeStatus.FAILED]
        status = ExecutionStatus.FAILED if failed else ExecutionStatus.SUCCEEDED
        error = None
        if failed:
            error = "; ".join(f"{r.node_name}: {r.error}" for r in failed)

        duration_ms = int((time.monotonic() - start) * 1000)
        logs.append(LogEntry("error" if failed else "info", "Execution finished",
                             data={"status": status.value, "duration_ms": duration_ms}))

        logger.info("Graph executed", execution_id=execution_id, workflow_id=graph.id,
                    status=status.value, duration_ms=duration_ms, failed_nodes=len(failed))

        return ExecutionResult(
            execution_id=execution_id,
            workflow_id=graph.id,
            status=status,
            started_at=started_at,
            completed_at=utcnow(),
            duration_ms=duration_ms,
            node_results=run.results,
            final_output=run.final_output(),
            error=error,
            logs=logs,
        )


class _GraphRun:
    """Mutable state of one graph walk."""

    def __init__(self, executor: GraphExecutor, graph: WorkflowGraph,
                 trigger_payload: Any, logs: List[LogEntry]):
        self.executor = executor
        self.graph = graph
        self.trigger_payload = trigger_payload
        self.logs = logs
        self.nodes: Dict[str, Node] = graph.node_map()
        self.incoming: Dict[str, List[Edge]] = defaultdict(list)
        self.outgoing: Dict[str, List[Edge]] = defaultdict(list)
        for edge in graph.edges:
            self.incoming[edge.target].append(edge)
            self.outgoing[edge.source].append(edge)

        self.results: Dict[str, NodeResult] = {
            node.id: NodeResult(node_id=node.id, node_name=node.name) for node in graph.nodes
        }
        self.outputs: Dict[str, Any] = {}
        self.skip_reasons: Dict[str, str] = {}

    def _resolved(self, node_id: str) -> bool:
        return self.results[node_id].status in (
            NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED
        )

    def _ready_nodes(self) -> List[str]:
        return [
            node_id for node_id, result in self.results.items()
            if result.status == NodeStatus.PENDING
            and all(self._resolved(edge.source) for edge in self.incoming[node_id])
        ]

    def _gather_input(self, node_id: str) -> Tuple[Optional[str], Any]:
        """Decide whether a ready node runs and with which input.

        Returns ``(skip_reason, input)``; a non-None reason means skip.
        """
        edges = self.incoming[node_id]
        if not edges:
            return None, self.trigger_payload

        for edge in edges:
            source = self.results[edge.source]
            if source.status == NodeStatus.FAILED:
                return SKIP_UPSTREAM, None
            if source.status == NodeStatus.SKIPPED and self.skip_reasons.get(edge.source) != SKIP_BRANCH:
                return SKIP_UPSTREAM, None

        merged: Dict[str, Any] = {}
        for edge in edges:
            if self.results[edge.source].status != NodeStatus.SUCCEEDED:
                continue
            output = self.outputs.get(edge.source)
            if evaluate_condition(edge.condition, output):
                merged[edge.source] = output

        if not merged:
            return SKIP_BRANCH, None
        return None, merged

    def _skip(self, node_id: str, reason: str) -> None:
        result = self.results[node_id]
        result.status = NodeStatus.SKIPPED
        result.error = reason
        result.duration_ms = 0
        self.skip_reasons[node_id] = reason
        self.logs.append(LogEntry("warn", f"Node '{result.node_name}' skipped: {reason}", node_id=node_id))
        logger.debug("Node skipped", node_id=node_id, reason=reason)

    async def _run_node(self, node: Node, capability: Capability, node_input: Any) -> Any:
        config = resolve_templates(node.config, node_input, self.outputs)
        params = capability.parse_config(config)
        try:
            output = await asyncio.wait_for(capability.run(node_input, params),
                                            timeout=self.executor.node_timeout)
        except asyncio.TimeoutError:
            raise NodeFailure(node.id, f"timed out after {self.executor.node_timeout}s")
        return _json_safe(node.id, output)

    def _start(self, node_id: str, node_input: Any,
               task_to_node: Dict[asyncio.Task, Tuple[str, float]]) -> asyncio.Task:
        node = self.nodes[node_id]
        capability = self.executor.registry.resolve(node.type_id)
        self.results[node_id].status = NodeStatus.RUNNING
        self.logs.append(LogEntry("debug", f"Node '{node.name}' started", node_id=node_id,
                                  data={"type_id": node.type_id}))
        task = asyncio.create_task(self._run_node(node, capability, node_input),
                                   name=f"node_{node_id}")
        task_to_node[task] = (node_id, time.monotonic())
        return task

    def _schedule_ready(self, pending: Set[asyncio.Task],
                        task_to_node: Dict[asyncio.Task, Tuple[str, float]]) -> None:
        """Start every ready node; skipping can make further nodes ready."""
        while True:
            ready = self._ready_nodes()
            if not ready:
                return
            for node_id in ready:
                skip_reason, node_input = self._gather_input(node_id)
                if skip_reason:
                    self._skip(node_id, skip_reason)
                else:
                    pending.add(self._start(node_id, node_input, task_to_node))

    async def drive(self) -> None:
        """Continuous scheduling loop."""
        task_to_node: Dict[asyncio.Task, Tuple[str, float]] = {}
        pending: Set[asyncio.Task] = set()

        self._schedule_ready(pending, task_to_node)

        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    node_id, started = task_to_node.pop(task)
                    self._complete(node_id, task, started)
                self._schedule_ready(pending, task_to_node)
        finally:
            for task in pending:
                task.cancel()

    def _complete(self, node_id: str, task: asyncio.Task, started: float) -> None:
        result = self.results[node_id]
        result.duration_ms = int((time.monotonic() - started) * 1000)
        error = task.exception()

        if error is None:
            result.status = NodeStatus.SUCCEEDED
            result.output = task.result()
            self.outputs[node_id] = result.output
            self.logs.append(LogEntry("info", f"Node '{result.node_name}' succeeded", node_id=node_id,
                                      data={"duration_ms": result.duration_ms}))
            logger.debug("Node completed", node_id=node_id, duration_ms=result.duration_ms)
            return

        message = error.reason if isinstance(error, NodeFailure) else f"{type(error).__name__}: {error}"
        result.status = NodeStatus.FAILED
        result.error = message
        self.logs.append(LogEntry("error", f"Node '{result.node_name}' failed: {message}",
                                  node_id=node_id, data={"duration_ms": result.duration_ms}))
        logger.warning("Node failed", node_id=node_id, error=message)

    def final_output(self) -> Any:
        """Outputs of successful terminal nodes keyed by node id."""
        terminal_ids = [node_id for node_id in self.results if not self.outgoing[node_id]]
        succeeded = {
            node_id: self.outputs[node_id] for node_id in terminal_ids
            if self.results[node_id].status == NodeStatus.SUCCEEDED
        }
        if len(terminal_ids) == 1:
            return succeeded.get(terminal_ids[0])
        return succeeded or None
