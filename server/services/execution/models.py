"""Execution engine state models.

Graph, job and result types shared by the executor, the controller and the
scheduler paths. All models are JSON-serializable so they can be stored in
step checkpoints, queue payloads and the execution ledger.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple, Type

from constants import WORKFLOW_EXECUTE_EVENT
from models.database import utcnow


class NodeStatus(str, Enum):
    """Node lifecycle inside one execution.

    State transitions:
        PENDING -> RUNNING -> SUCCEEDED
                           -> FAILED
        PENDING -> SKIPPED (no usable input)
    """
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    """ExecutionRecord states. Only RUNNING is non-terminal."""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    POLLING = "polling"
    TEST = "test"

    @property
    def from_scheduler(self) -> bool:
        """Scheduler-originated jobs are re-checked against the live workflow."""
        return self in (TriggerType.SCHEDULED, TriggerType.POLLING)


class WorkflowState(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Node:
    """A typed operation in a workflow graph."""
    id: str
    type_id: str
    config: Dict[str, Any] = field(default_factory=dict)
    label: Optional[str] = None

    @property
    def name(self) -> str:
        return self.label or self.id

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type_id": self.type_id, "config": self.config, "label": self.label}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        """Create from dict. Accepts editor-style ``type``/``data`` keys too."""
        return cls(
            id=data["id"],
            type_id=data.get("type_id") or data.get("type", ""),
            config=data.get("config") or data.get("data") or {},
            label=data.get("label"),
        )


@dataclass
class Edge:
    """Dependency from source node to target node.

    An optional condition ``{field, operator, value}`` is evaluated against
    the source output; a false condition deactivates the edge for that run.
    """
    source: str
    target: str
    condition: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"source_node_id": self.source, "target_node_id": self.target}
        if self.condition:
            data["condition"] = self.condition
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        return cls(
            source=data.get("source_node_id") or data.get("source", ""),
            target=data.get("target_node_id") or data.get("target", ""),
            condition=data.get("condition"),
        )


@dataclass
class WorkflowGraph:
    """Immutable view of a workflow's graph for one execution."""
    id: str
    owner_id: str
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    status: WorkflowState = WorkflowState.DRAFT
    name: Optional[str] = None

    def node_map(self) -> Dict[str, Node]:
        return {node.id: node for node in self.nodes}

    @classmethod
    def from_parts(cls, workflow_id: str, owner_id: str, nodes: List[Dict[str, Any]],
                   edges: List[Dict[str, Any]], status: str = "draft",
                   name: Optional[str] = None) -> "WorkflowGraph":
        return cls(
            id=workflow_id,
            owner_id=owner_id,
            nodes=[Node.from_dict(n) for n in nodes or []],
            edges=[Edge.from_dict(e) for e in edges or []],
            status=WorkflowState(status),
            name=name,
        )

    @classmethod
    def from_record(cls, workflow) -> "WorkflowGraph":
        """Build from a ``models.database.Workflow`` row."""
        return cls.from_parts(workflow.id, workflow.owner_id, workflow.nodes,
                              workflow.edges, workflow.status, workflow.name)


@dataclass
class NodeResult:
    """Outcome of a single node within an execution."""
    node_id: str
    node_name: str
    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_name": self.node_name,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeResult":
        return cls(
            node_id=data["node_id"],
            node_name=data.get("node_name", data["node_id"]),
            status=NodeStatus(data["status"]),
            output=data.get("output"),
            error=data.get("error"),
            duration_ms=data.get("duration_ms"),
        )


@dataclass
class LogEntry:
    """Diagnostic line collected during execution and persisted with the record."""
    level: str
    message: str
    node_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "message": self.message,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        return cls(
            level=data["level"],
            message=data["message"],
            node_id=data.get("node_id"),
            data=data.get("data"),
            timestamp=_parse_iso(data.get("timestamp")) or utcnow(),
        )


@dataclass
class ExecutionResult:
    """Everything the executor produced for one run of a graph."""
    execution_id: str
    workflow_id: str
    status: ExecutionStatus
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    node_results: Dict[str, NodeResult] = field(default_factory=dict)
    final_output: Any = None
    error: Optional[str] = None
    logs: List[LogEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "node_results": {k: v.to_dict() for k, v in self.node_results.items()},
            "final_output": self.final_output,
            "error": self.error,
            "logs": [entry.to_dict() for entry in self.logs],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionResult":
        return cls(
            execution_id=data["execution_id"],
            workflow_id=data["workflow_id"],
            status=ExecutionStatus(data["status"]),
            started_at=_parse_iso(data["started_at"]),
            completed_at=_parse_iso(data["completed_at"]),
            duration_ms=data.get("duration_ms", 0),
            node_results={
                k: NodeResult.from_dict(v) for k, v in data.get("node_results", {}).items()
            },
            final_output=data.get("final_output"),
            error=data.get("error"),
            logs=[LogEntry.from_dict(entry) for entry in data.get("logs", [])],
        )


@dataclass
class ExecutionJob:
    """A ``workflow/execute`` job as carried by the queue.

    ``id`` is the pre-generated execution id; redelivering the same job
    resumes the same execution instead of creating a new one.
    """
    workflow_id: str
    owner_id: str
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    edges: List[Dict[str, Any]] = field(default_factory=list)
    trigger_data: Dict[str, Any] = field(default_factory=dict)
    trigger_type: TriggerType = TriggerType.MANUAL
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    type: str = WORKFLOW_EXECUTE_EVENT

    def graph(self) -> WorkflowGraph:
        return WorkflowGraph.from_parts(self.workflow_id, self.owner_id,
                                        self.nodes, self.edges, "active")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "workflow_id": self.workflow_id,
            "owner_id": self.owner_id,
            "nodes": self.nodes,
            "edges": self.edges,
            "trigger_data": self.trigger_data,
            "trigger_type": self.trigger_type.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionJob":
        return cls(
            id=data["id"],
            type=data.get("type", WORKFLOW_EXECUTE_EVENT),
            workflow_id=data["workflow_id"],
            owner_id=data["owner_id"],
            nodes=data.get("nodes", []),
            edges=data.get("edges", []),
            trigger_data=data.get("trigger_data") or {},
            trigger_type=TriggerType(data.get("trigger_type", "manual")),
        )


@dataclass
class RetryPolicy:
    """Retry configuration for whole-job retries.

    Implements exponential backoff with configurable limits.
    Delay formula: min(initial_delay * (backoff_multiplier ^ attempt), max_delay)
    """
    max_attempts: int = 3
    initial_delay: float = 1.0       # seconds
    max_delay: float = 30.0          # seconds
    backoff_multiplier: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = ()

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next attempt
        """
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Determine if the job should be retried after ``error``.

        Args:
            error: Exception raised by the failed attempt
            attempt: Current attempt number (0-indexed)
        """
        if attempt >= self.max_attempts:
            return False
        return isinstance(error, self.retry_on)

    @classmethod
    def from_settings(cls, settings, retry_on: Tuple[Type[BaseException], ...]) -> "RetryPolicy":
        return cls(
            max_attempts=settings.execution_max_retries,
            initial_delay=settings.execution_retry_initial_delay,
            max_delay=settings.execution_retry_max_delay,
            retry_on=retry_on,
        )
