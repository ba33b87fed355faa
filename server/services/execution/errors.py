"""Execution engine exception hierarchy."""

from typing import List, Optional


class EngineError(Exception):
    """Base exception for all engine errors."""


class WorkflowValidationError(EngineError):
    """Graph rejected before any node runs."""

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        self.problems = problems or [message]
        super().__init__(message)


class NodeTypeNotFound(WorkflowValidationError):
    """A node references a type id that is not registered."""

    def __init__(self, type_id: str):
        self.type_id = type_id
        super().__init__(f"Unknown node type: {type_id}")


class QuotaExceeded(EngineError):
    """Plan limit reached for a tenant."""

    def __init__(self, owner_id: str, resource: str, used: int, limit: int):
        self.owner_id = owner_id
        self.resource = resource
        self.used = used
        self.limit = limit
        super().__init__(f"Quota exceeded for {resource}: {used}/{limit}")


class NodeFailure(EngineError):
    """A capability raised or timed out while running a node."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        self.reason = message
        super().__init__(f"[{node_id}] {message}")


class InfrastructureFault(EngineError):
    """Store, queue or lock unavailable; the whole job may be retried."""


class StaleWorkflowState(EngineError):
    """Scheduled or polled job arrived after its workflow was deactivated."""

    def __init__(self, workflow_id: str, status: Optional[str]):
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(f"Workflow {workflow_id} is not active (status={status})")


class ResourceNotFound(EngineError, LookupError):
    """Workflow or execution id does not exist."""

    def __init__(self, kind: str, resource_id: str):
        self.kind = kind
        self.resource_id = resource_id
        super().__init__(f"{kind} not found: {resource_id}")
