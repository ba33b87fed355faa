"""Execution ledger - durable ExecutionRecord, NodeResult and log writes.

Every write is keyed by the pre-generated execution id so a redelivered job
never produces a second record, and status only moves out of ``running``.
"""

from typing import Dict, Optional

from sqlmodel import select

from core.database import Database
from core.logging import get_logger
from models.database import WorkflowExecution, NodeExecutionResult, ExecutionLog, as_utc, utcnow
from .models import ExecutionJob, ExecutionResult, ExecutionStatus

logger = get_logger(__name__)


class ExecutionLedger:
    """Writes the execution trail for the controller and the scheduler paths."""

    def __init__(self, database: Database):
        self.database = database

    async def create_record(self, job: ExecutionJob, attempt: int = 1) -> WorkflowExecution:
        """Insert the running record for ``job.id`` unless it already exists."""
        async with self.database.get_session() as session:
            record = await session.get(WorkflowExecution, job.id)
            if record is not None:
                return record

            record = WorkflowExecution(
                id=job.id,
                workflow_id=job.workflow_id,
                owner_id=job.owner_id,
                status=ExecutionStatus.RUNNING.value,
                trigger_type=job.trigger_type.value,
                trigger_payload=job.trigger_data,
                job_payload=job.to_dict(),
                attempt=attempt,
            )
            session.add(record)
            await session.commit()
            logger.info("Execution record created", execution_id=job.id,
                        workflow_id=job.workflow_id, trigger_type=job.trigger_type.value)
            return record

    async def write_skipped(self, job: ExecutionJob, reason: str) -> WorkflowExecution:
        """Write a terminal ``skipped`` record directly (never from running)."""
        return await self._write_terminal(job, ExecutionStatus.SKIPPED, reason)

    async def write_failed(self, job: ExecutionJob, error: str) -> WorkflowExecution:
        """Persist a ``failed`` record for a job that faulted before its record existed."""
        return await self._write_terminal(job, ExecutionStatus.FAILED, error)

    async def _write_terminal(self, job: ExecutionJob, status: ExecutionStatus,
                              reason: str) -> WorkflowExecution:
        now = utcnow()
        async with self.database.get_session() as session:
            record = await session.get(WorkflowExecution, job.id)
            if record is not None:
                return record

            record = WorkflowExecution(
                id=job.id,
                workflow_id=job.workflow_id,
                owner_id=job.owner_id,
                status=status.value,
                trigger_type=job.trigger_type.value,
                trigger_payload=job.trigger_data,
                job_payload=job.to_dict(),
                started_at=now,
                completed_at=now,
                duration_ms=0,
                error=reason,
                updated_at=now,
            )
            session.add(record)
            if status == ExecutionStatus.FAILED:
                session.add(ExecutionLog(execution_id=job.id, level="error", message=reason))
            await session.commit()
            logger.info("Execution written as terminal", execution_id=job.id,
                        workflow_id=job.workflow_id, status=status.value, reason=reason)
            return record

    async def touch(self, execution_id: str, attempt: Optional[int] = None) -> None:
        """Refresh ``updated_at`` so recovery does not treat the record as stale."""
        async with self.database.get_session() as session:
            record = await session.get(WorkflowExecution, execution_id)
            if record is None or record.status != ExecutionStatus.RUNNING.value:
                return
            record.updated_at = utcnow()
            if attempt is not None:
                record.attempt = attempt
            await session.commit()

    async def save_results(self, result: ExecutionResult) -> bool:
        """Persist node results, logs and the terminal status in one transaction.

        Returns False when the record was already terminal (nothing written).
        """
        async with self.database.get_session() as session:
            record = await session.get(WorkflowExecution, result.execution_id)
            if record is None:
                raise LookupError(f"Execution {result.execution_id} has no record")
            if record.status != ExecutionStatus.RUNNING.value:
                logger.debug("Results already saved", execution_id=result.execution_id)
                return False

            existing = await session.execute(
                select(NodeExecutionResult.id).where(
                    NodeExecutionResult.execution_id == result.execution_id
                ).limit(1)
            )
            if existing.first() is None:
                result_ids: Dict[str, str] = {}
                for node_result in result.node_results.values():
                    row = NodeExecutionResult(
                        execution_id=result.execution_id,
                        node_id=node_result.node_id,
                        node_name=node_result.node_name,
                        status=node_result.status.value,
                        output_data=node_result.output,
                        error=node_result.error,
                        duration_ms=node_result.duration_ms,
                    )
                    result_ids[node_result.node_id] = row.id
                    session.add(row)

                for entry in result.logs:
                    session.add(ExecutionLog(
                        execution_id=result.execution_id,
                        node_result_id=result_ids.get(entry.node_id) if entry.node_id else None,
                        level=entry.level,
                        message=entry.message,
                        data=entry.data,
                        timestamp=entry.timestamp,
                    ))

            record.status = result.status.value
            record.completed_at = result.completed_at
            record.duration_ms = result.duration_ms
            record.final_output = result.final_output
            record.error = result.error
            record.updated_at = utcnow()
            await session.commit()

        logger.info("Execution results saved", execution_id=result.execution_id,
                    status=result.status.value, nodes=len(result.node_results))
        return True

    async def mark_failed(self, execution_id: str, error: str) -> bool:
        """Move a running record to ``failed`` (infrastructure exhaustion)."""
        now = utcnow()
        async with self.database.get_session() as session:
            record = await session.get(WorkflowExecution, execution_id)
            if record is None or record.status != ExecutionStatus.RUNNING.value:
                return False
            record.status = ExecutionStatus.FAILED.value
            record.error = error
            record.completed_at = now
            record.duration_ms = int((now - as_utc(record.started_at)).total_seconds() * 1000)
            record.updated_at = now
            session.add(ExecutionLog(execution_id=execution_id, level="error", message=error))
            await session.commit()

        logger.error("Execution failed", execution_id=execution_id, error=error)
        return True
