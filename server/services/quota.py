"""Quota guard - plan limits and exactly-once usage accounting."""

import calendar
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from core.database import Database
from core.logging import get_logger
from constants import USAGE_METRICS
from models.database import BillingPeriod, UsageCounter, UsageEvent, as_utc, utcnow
from services.execution.errors import QuotaExceeded
from services.plans import PlanService

logger = get_logger(__name__)

RESOURCE_ACTIVE_WORKFLOWS = "active_workflows"
RESOURCE_STEPS = "steps_per_workflow"


def add_month(value: datetime) -> datetime:
    """Same day next month, clamped to the month's last day."""
    year = value.year + (value.month // 12)
    month = value.month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class QuotaGuard:
    """Checks plan limits before admission and counts usage after success."""

    def __init__(self, database: Database, plans: PlanService):
        self.database = database
        self.plans = plans

    async def get_or_create_period(self, owner_id: str,
                                   now: Optional[datetime] = None) -> BillingPeriod:
        """Active billing period covering ``now``; a one-month window is created lazily.

        Concurrent first calls may both insert a window; the oldest one always wins.
        """
        now = now or utcnow()
        period = await self._find_period(owner_id, now)
        if period is not None:
            return period

        async with self.database.get_session() as session:
            created = BillingPeriod(owner_id=owner_id, period_start=now,
                                    period_end=add_month(now), status="active")
            session.add(created)
            await session.commit()
        logger.info("Billing period created", owner_id=owner_id,
                    period_start=now.isoformat(), period_id=created.id)
        return await self._find_period(owner_id, max(now, utcnow())) or created

    async def _find_period(self, owner_id: str, now: datetime) -> Optional[BillingPeriod]:
        async with self.database.get_session() as session:
            stmt = select(BillingPeriod).where(
                BillingPeriod.owner_id == owner_id,
                BillingPeriod.status == "active",
            ).order_by(BillingPeriod.id.asc())
            for period in (await session.execute(stmt)).scalars().all():
                if as_utc(period.period_start) <= now <= as_utc(period.period_end):
                    return period
        return None

    async def get_usage(self, owner_id: str, metric: str) -> int:
        period = await self.get_or_create_period(owner_id)
        async with self.database.get_session() as session:
            stmt = select(UsageCounter.value).where(
                UsageCounter.owner_id == owner_id,
                UsageCounter.period_id == period.id,
                UsageCounter.metric == metric,
            )
            value = (await session.execute(stmt)).scalar_one_or_none()
            return value or 0

    async def assert_within_limit(self, owner_id: str, plan_id: Optional[str], metric: str) -> None:
        """Raise QuotaExceeded when ``used >= limit`` for the current period."""
        if metric not in USAGE_METRICS:
            raise ValueError(f"Unknown usage metric: {metric}")

        limit = self.plans.get(plan_id).for_metric(metric)
        if limit is None:
            return

        used = await self.get_usage(owner_id, metric)
        if used >= limit:
            logger.info("Quota exceeded", owner_id=owner_id, metric=metric, used=used, limit=limit)
            raise QuotaExceeded(owner_id, metric, used, limit)

    def assert_steps_limit(self, owner_id: str, plan_id: Optional[str], steps: int) -> None:
        limit = self.plans.get(plan_id).max_steps_per_workflow
        if limit is not None and steps > limit:
            raise QuotaExceeded(owner_id, RESOURCE_STEPS, steps, limit)

    async def assert_can_activate(self, owner_id: str, plan_id: Optional[str]) -> None:
        limit = self.plans.get(plan_id).max_active_workflows
        if limit is None:
            return
        active = await self.database.count_workflows(owner_id, "active")
        if active >= limit:
            raise QuotaExceeded(owner_id, RESOURCE_ACTIVE_WORKFLOWS, active, limit)

    async def increment_usage(self, owner_id: str, metric: str, amount: int = 1,
                              execution_id: Optional[str] = None,
                              workflow_id: Optional[str] = None) -> bool:
        """Count usage once per ``(execution_id, metric)``.

        Returns False when this execution was already counted.
        """
        if metric not in USAGE_METRICS:
            raise ValueError(f"Unknown usage metric: {metric}")
        if execution_id is None:
            raise ValueError("execution_id is required for idempotent usage accounting")

        period = await self.get_or_create_period(owner_id)

        # A concurrent first insert of the counter row may win the race once
        for attempt in range(2):
            try:
                return await self._apply_increment(owner_id, period.id, metric, amount,
                                                   execution_id, workflow_id)
            except IntegrityError:
                if await self._event_exists(execution_id, metric):
                    logger.debug("Usage already counted", execution_id=execution_id, metric=metric)
                    return False
                if attempt == 1:
                    raise
        return False

    async def _event_exists(self, execution_id: str, metric: str) -> bool:
        async with self.database.get_session() as session:
            stmt = select(UsageEvent.id).where(
                UsageEvent.execution_id == execution_id,
                UsageEvent.metric == metric,
            )
            return (await session.execute(stmt)).first() is not None

    async def _apply_increment(self, owner_id: str, period_id: int, metric: str, amount: int,
                               execution_id: str, workflow_id: Optional[str]) -> bool:
        async with self.database.get_session() as session:
            if (await session.execute(
                select(UsageEvent.id).where(
                    UsageEvent.execution_id == execution_id,
                    UsageEvent.metric == metric,
                )
            )).first() is not None:
                return False

            session.add(UsageEvent(owner_id=owner_id, period_id=period_id, metric=metric,
                                   amount=amount, workflow_id=workflow_id,
                                   execution_id=execution_id))
            await session.flush()

            result = await session.execute(
                update(UsageCounter).where(
                    UsageCounter.owner_id == owner_id,
                    UsageCounter.period_id == period_id,
                    UsageCounter.metric == metric,
                ).values(value=UsageCounter.value + amount)
            )
            if result.rowcount == 0:
                session.add(UsageCounter(owner_id=owner_id, period_id=period_id,
                                         metric=metric, value=amount))
            await session.commit()

        logger.info("Usage incremented", owner_id=owner_id, metric=metric,
                    amount=amount, execution_id=execution_id)
        return True
