"""Async database service with SQLModel and SQLAlchemy 2.0."""

from datetime import datetime
from typing import List, Optional
from contextlib import asynccontextmanager

from sqlmodel import SQLModel, select
from sqlalchemy import func
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from core.config import Settings
from core.logging import get_logger
from constants import DEFAULT_PLAN_ID, STEP_SAVE_RESULTS, STEP_INCREMENT_USAGE
from models.database import (
    Tenant,
    Workflow,
    WorkflowExecution,
    NodeExecutionResult,
    ExecutionLog,
    ExecutionStep,
    PollingState,
    utcnow,
)

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        engine_kwargs = {"echo": self.settings.database_echo, "future": True}
        # SQLite uses a single-connection pool that rejects sizing arguments
        if not self.settings.is_sqlite:
            engine_kwargs["pool_size"] = self.settings.database_pool_size
            engine_kwargs["max_overflow"] = self.settings.database_max_overflow

        try:
            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)
            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", sqlite=self.settings.is_sqlite)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    # ============================================================================
    # Tenants
    # ============================================================================

    async def get_plan_id(self, owner_id: str) -> str:
        """Plan of a tenant; unknown tenants are on the default plan."""
        async with self.get_session() as session:
            tenant = await session.get(Tenant, owner_id)
            return tenant.plan_id if tenant else DEFAULT_PLAN_ID

    async def set_tenant_plan(self, owner_id: str, plan_id: str) -> Tenant:
        async with self.get_session() as session:
            tenant = await session.get(Tenant, owner_id)
            if tenant:
                tenant.plan_id = plan_id
            else:
                tenant = Tenant(id=owner_id, plan_id=plan_id)
                session.add(tenant)
            await session.commit()
            return tenant

    # ============================================================================
    # Workflows
    # ============================================================================

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        """Insert or update a workflow row."""
        async with self.get_session() as session:
            existing = await session.get(Workflow, workflow.id)
            if existing:
                existing.name = workflow.name
                existing.description = workflow.description
                existing.status = workflow.status
                existing.nodes = workflow.nodes
                existing.edges = workflow.edges
                existing.updated_at = utcnow()
                workflow = existing
            else:
                session.add(workflow)
            await session.commit()
            return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        async with self.get_session() as session:
            return await session.get(Workflow, workflow_id)

    async def list_workflows(self, owner_id: Optional[str] = None,
                             status: Optional[str] = None) -> List[Workflow]:
        async with self.get_session() as session:
            stmt = select(Workflow)
            if owner_id:
                stmt = stmt.where(Workflow.owner_id == owner_id)
            if status:
                stmt = stmt.where(Workflow.status == status)
            result = await session.execute(stmt.order_by(Workflow.updated_at.desc()))
            return list(result.scalars().all())

    async def count_workflows(self, owner_id: str, status: str) -> int:
        async with self.get_session() as session:
            stmt = select(func.count()).select_from(Workflow).where(
                Workflow.owner_id == owner_id,
                Workflow.status == status,
            )
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def set_workflow_status(self, workflow_id: str, status: str) -> Optional[Workflow]:
        async with self.get_session() as session:
            workflow = await session.get(Workflow, workflow_id)
            if workflow is None:
                return None
            workflow.status = status
            workflow.updated_at = utcnow()
            await session.commit()
            return workflow

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with self.get_session() as session:
            workflow = await session.get(Workflow, workflow_id)
            if workflow is None:
                return False
            await session.delete(workflow)
            await session.commit()
            return True

    # ============================================================================
    # Executions (read side)
    # ============================================================================

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self.get_session() as session:
            return await session.get(WorkflowExecution, execution_id)

    async def list_executions(self, workflow_id: Optional[str] = None,
                              owner_id: Optional[str] = None,
                              limit: int = 50) -> List[WorkflowExecution]:
        async with self.get_session() as session:
            stmt = select(WorkflowExecution)
            if workflow_id:
                stmt = stmt.where(WorkflowExecution.workflow_id == workflow_id)
            if owner_id:
                stmt = stmt.where(WorkflowExecution.owner_id == owner_id)
            stmt = stmt.order_by(WorkflowExecution.started_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_node_results(self, execution_id: str) -> List[NodeExecutionResult]:
        async with self.get_session() as session:
            stmt = select(NodeExecutionResult).where(
                NodeExecutionResult.execution_id == execution_id
            ).order_by(NodeExecutionResult.created_at.asc())
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_execution_logs(self, execution_id: str) -> List[ExecutionLog]:
        async with self.get_session() as session:
            stmt = select(ExecutionLog).where(
                ExecutionLog.execution_id == execution_id
            ).order_by(ExecutionLog.id.asc())
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_stale_executions(self, older_than: datetime,
                                    limit: int = 100) -> List[WorkflowExecution]:
        """Running executions not touched since ``older_than``."""
        async with self.get_session() as session:
            stmt = select(WorkflowExecution).where(
                WorkflowExecution.status == "running",
                WorkflowExecution.updated_at < older_than,
            ).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_unaccounted_executions(self, older_than: datetime,
                                          limit: int = 100) -> List[WorkflowExecution]:
        """Finished executions whose results were saved but whose usage was never counted."""
        saved = select(ExecutionStep.execution_id).where(ExecutionStep.name == STEP_SAVE_RESULTS)
        counted = select(ExecutionStep.execution_id).where(ExecutionStep.name == STEP_INCREMENT_USAGE)
        async with self.get_session() as session:
            stmt = select(WorkflowExecution).where(
                WorkflowExecution.status.in_(["succeeded", "failed"]),
                WorkflowExecution.updated_at < older_than,
                WorkflowExecution.id.in_(saved),
                WorkflowExecution.id.not_in(counted),
            ).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ============================================================================
    # Polling state
    # ============================================================================

    async def get_polling_state(self, workflow_id: str, trigger_type: str) -> Optional[PollingState]:
        async with self.get_session() as session:
            stmt = select(PollingState).where(
                PollingState.workflow_id == workflow_id,
                PollingState.trigger_type == trigger_type,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def save_polling_state(self, workflow_id: str, trigger_type: str,
                                 cursor: Optional[str], state: Optional[dict] = None,
                                 seen_new: bool = False) -> PollingState:
        """Upsert the cursor row after a poll."""
        now = utcnow()
        async with self.get_session() as session:
            stmt = select(PollingState).where(
                PollingState.workflow_id == workflow_id,
                PollingState.trigger_type == trigger_type,
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = PollingState(workflow_id=workflow_id, trigger_type=trigger_type)
                session.add(row)
            row.cursor = cursor
            row.last_polled_at = now
            if state is not None:
                row.state = state
            if seen_new:
                row.last_seen_at = now
            await session.commit()
            return row
