"""SQLModel database models and tables."""

import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import UniqueConstraint


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime read back from the store (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _timestamp(nullable: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class Tenant(SQLModel, table=True):
    """Workflow owner and the subscription plan that bounds its usage."""

    __tablename__ = "tenants"

    id: str = Field(primary_key=True, max_length=255)
    plan_id: str = Field(default="personal", max_length=50)
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class Workflow(SQLModel, table=True):
    """Workflow definitions (graph source of truth)."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    owner_id: str = Field(index=True, max_length=255)
    name: str = Field(default="Untitled workflow", max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    status: str = Field(default="draft", index=True, max_length=20)
    nodes: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    edges: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class WorkflowExecution(SQLModel, table=True):
    """One execution attempt of a workflow, keyed by a pre-generated id."""

    __tablename__ = "workflow_executions"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    owner_id: str = Field(index=True, max_length=255)
    status: str = Field(default="running", index=True, max_length=20)
    trigger_type: str = Field(default="manual", max_length=20)
    trigger_payload: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    job_payload: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    attempt: int = Field(default=1)
    started_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())
    completed_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(nullable=True))
    duration_ms: Optional[int] = Field(default=None)
    final_output: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=4000)
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class NodeExecutionResult(SQLModel, table=True):
    """Per-node outcome inside an execution (append-only)."""

    __tablename__ = "node_execution_results"
    __table_args__ = (UniqueConstraint("execution_id", "node_id", name="uq_node_result"),)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=64)
    execution_id: str = Field(index=True, max_length=255)
    node_id: str = Field(max_length=255)
    node_name: str = Field(max_length=255)
    status: str = Field(max_length=20)
    output_data: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=4000)
    duration_ms: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class ExecutionLog(SQLModel, table=True):
    """Diagnostic trail of an execution (append-only)."""

    __tablename__ = "execution_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: str = Field(index=True, max_length=255)
    node_result_id: Optional[str] = Field(default=None, max_length=64)
    level: str = Field(default="info", max_length=10)
    message: str = Field(max_length=4000)
    data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    timestamp: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class ExecutionStep(SQLModel, table=True):
    """Memoized output of a completed durable step."""

    __tablename__ = "execution_steps"
    __table_args__ = (UniqueConstraint("execution_id", "name", name="uq_execution_step"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: str = Field(index=True, max_length=255)
    name: str = Field(max_length=100)
    output: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    completed_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class BillingPeriod(SQLModel, table=True):
    """Usage accounting window for a tenant."""

    __tablename__ = "billing_periods"

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True, max_length=255)
    period_start: datetime = Field(sa_column=_timestamp())
    period_end: datetime = Field(sa_column=_timestamp())
    status: str = Field(default="active", max_length=20)


class UsageCounter(SQLModel, table=True):
    """Monotonic per-period usage counter."""

    __tablename__ = "usage_counters"
    __table_args__ = (UniqueConstraint("owner_id", "period_id", "metric", name="uq_usage_counter"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True, max_length=255)
    period_id: int = Field(index=True)
    metric: str = Field(max_length=50)
    value: int = Field(default=0)


class UsageEvent(SQLModel, table=True):
    """Ledger of increments; unique per execution and metric."""

    __tablename__ = "usage_events"
    __table_args__ = (UniqueConstraint("execution_id", "metric", name="uq_usage_event"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True, max_length=255)
    period_id: int = Field()
    metric: str = Field(max_length=50)
    amount: int = Field(default=1)
    workflow_id: Optional[str] = Field(default=None, max_length=255)
    execution_id: str = Field(max_length=255)
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class PollingState(SQLModel, table=True):
    """Last-seen cursor for a workflow's polling trigger."""

    __tablename__ = "workflow_polling_state"
    __table_args__ = (UniqueConstraint("workflow_id", "trigger_type", name="uq_polling_state"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(index=True, max_length=255)
    trigger_type: str = Field(max_length=100)
    cursor: Optional[str] = Field(default=None, max_length=1000)
    last_seen_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(nullable=True))
    last_polled_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(nullable=True))
    state: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
