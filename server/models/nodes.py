"""Pydantic models for node config validation and API payloads.

Each built-in capability declares one of the config models below as its
schema; the executor validates a node's resolved config against it right
before the capability runs.
"""

from typing import Literal, Optional, Dict, Any, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from pydantic import BaseModel, Field, field_validator

from services.execution.conditions import is_known_operator


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseNodeParams(BaseModel):
    """Base class for all node parameters."""
    model_config = {"extra": "allow", "populate_by_name": True}


# =============================================================================
# TRIGGER NODE MODELS
# =============================================================================

class ManualTriggerParams(BaseNodeParams):
    """Parameters for manual trigger node."""


class WebhookTriggerParams(BaseNodeParams):
    """Parameters for webhook trigger node."""
    path: str = ""
    method_filter: str = Field(default="all", alias="methodFilter")


class ScheduledTriggerParams(BaseNodeParams):
    """Parameters for cron-scheduled trigger node.

    Accepts 5-field (minute precision) or 6-field (leading seconds) cron.
    """
    cron: str = Field(..., alias="cronExpression", min_length=1)
    timezone: str = "UTC"

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        if len(v.split()) not in (5, 6):
            raise ValueError("cron expression must have 5 or 6 fields")
        return v.strip()

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone: {v}")
        return v


class NewHttpItemsParams(BaseNodeParams):
    """Parameters for the HTTP polling trigger.

    Fetches a JSON document, takes the list at ``items_path`` and emits the
    items whose ``cursor_field`` is greater than the stored cursor.
    """
    url: str = Field(..., min_length=1)
    items_path: str = Field(default="", alias="itemsPath")
    cursor_field: str = Field(default="id", alias="cursorField")
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=30.0, gt=0, le=300)
    emit_on_first_poll: bool = Field(default=False, alias="emitOnFirstPoll")


# =============================================================================
# ACTION NODE MODELS
# =============================================================================

class HttpRequestParams(BaseNodeParams):
    """Parameters for HTTP request node."""
    url: str = Field(..., min_length=1)
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, Any] = Field(default_factory=dict)
    body: Optional[Any] = None
    timeout: float = Field(default=30.0, gt=0, le=300)
    fail_on_error: bool = Field(default=True, alias="failOnError")


class SetFieldsParams(BaseNodeParams):
    """Parameters for set-fields transform node."""
    fields: Dict[str, Any] = Field(default_factory=dict)
    keep_input: bool = Field(default=True, alias="keepInput")


class ConditionParams(BaseNodeParams):
    """Parameters for condition node (same operator table as conditional edges)."""
    field: str = ""
    operator: str = "eq"
    value: Optional[Any] = None

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, v: str) -> str:
        if not is_known_operator(v):
            raise ValueError(f"unknown operator: {v}")
        return v


class DelayParams(BaseNodeParams):
    """Parameters for delay node."""
    seconds: float = Field(default=1.0, ge=0.0, le=3600.0)


# =============================================================================
# API REQUEST MODELS
# =============================================================================

class WorkflowCreateRequest(BaseModel):
    """Request model for creating a workflow."""
    id: Optional[str] = None
    owner_id: str = Field(..., alias="ownerId", min_length=1)
    name: str = "Untitled workflow"
    description: Optional[str] = None
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class WorkflowUpdateRequest(BaseModel):
    """Request model for updating a workflow (fields left unset are kept)."""
    name: Optional[str] = None
    description: Optional[str] = None
    nodes: Optional[List[Dict[str, Any]]] = None
    edges: Optional[List[Dict[str, Any]]] = None


class ExecuteWorkflowRequest(BaseModel):
    """Request model for a manual or test run."""
    trigger_data: Dict[str, Any] = Field(default_factory=dict, alias="triggerData")
    test: bool = False

    model_config = {"populate_by_name": True}
