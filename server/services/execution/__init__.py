"""Execution engine package.

Workflow execution with:
- Kahn validation and continuous FIRST_COMPLETED scheduling
- Partial failure: descendants of a failed node are skipped
- Durable steps keyed by execution id for crash-safe redelivery
- Per-tenant concurrency slots (Redis Lua or asyncio.Condition)
- Runtime conditional branching
"""

from .models import (
    NodeStatus,
    ExecutionStatus,
    TriggerType,
    WorkflowState,
    Node,
    Edge,
    WorkflowGraph,
    NodeResult,
    LogEntry,
    ExecutionResult,
    ExecutionJob,
    RetryPolicy,
)
from .errors import (
    EngineError,
    WorkflowValidationError,
    NodeTypeNotFound,
    QuotaExceeded,
    NodeFailure,
    InfrastructureFault,
    StaleWorkflowState,
    ResourceNotFound,
)
from .conditions import (
    evaluate_condition,
    evaluate_conditions,
    get_nested_value,
    OPERATORS,
)
from .executor import GraphExecutor, compute_execution_layers

__all__ = [
    # Models
    "NodeStatus",
    "ExecutionStatus",
    "TriggerType",
    "WorkflowState",
    "Node",
    "Edge",
    "WorkflowGraph",
    "NodeResult",
    "LogEntry",
    "ExecutionResult",
    "ExecutionJob",
    "RetryPolicy",
    # Errors
    "EngineError",
    "WorkflowValidationError",
    "NodeTypeNotFound",
    "QuotaExceeded",
    "NodeFailure",
    "InfrastructureFault",
    "StaleWorkflowState",
    "ResourceNotFound",
    # Conditions
    "evaluate_condition",
    "evaluate_conditions",
    "get_nested_value",
    "OPERATORS",
    # Executor
    "GraphExecutor",
    "compute_execution_layers",
]
