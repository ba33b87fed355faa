"""Durable steps - memoized checkpoints keyed by (execution_id, step name).

A job that is redelivered after a crash replays its steps; completed steps
return their stored output instead of running again.
"""

from typing import Any, Awaitable, Callable, List

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from core.database import Database
from core.logging import get_logger
from models.database import ExecutionStep

logger = get_logger(__name__)

_MISSING = object()


class DurableSteps:
    """Step runner bound to one execution."""

    def __init__(self, database: Database, execution_id: str):
        self.database = database
        self.execution_id = execution_id

    async def _load(self, name: str) -> Any:
        async with self.database.get_session() as session:
            stmt = select(ExecutionStep).where(
                ExecutionStep.execution_id == self.execution_id,
                ExecutionStep.name == name,
            )
            step = (await session.execute(stmt)).scalar_one_or_none()
            return _MISSING if step is None else step.output

    async def run(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` once per execution; its JSON-serializable output is memoized."""
        stored = await self._load(name)
        if stored is not _MISSING:
            logger.debug("Step replayed from checkpoint", execution_id=self.execution_id, step=name)
            return stored

        output = await fn()

        try:
            async with self.database.get_session() as session:
                session.add(ExecutionStep(execution_id=self.execution_id, name=name, output=output))
                await session.commit()
        except IntegrityError:
            # Another worker finished the same step first; its output wins
            logger.warning("Step already checkpointed", execution_id=self.execution_id, step=name)
            return await self._load(name)

        logger.debug("Step completed", execution_id=self.execution_id, step=name)
        return output

    async def completed(self) -> List[str]:
        async with self.database.get_session() as session:
            stmt = select(ExecutionStep.name).where(
                ExecutionStep.execution_id == self.execution_id
            ).order_by(ExecutionStep.id.asc())
            return list((await session.execute(stmt)).scalars().all())
