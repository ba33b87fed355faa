"""Quota guard and plan configuration."""

import json
from datetime import datetime, timezone

import pytest

from constants import METRIC_CREDITS, METRIC_EXECUTIONS
from services.execution import QuotaExceeded
from services.plans import PlanService
from services.quota import RESOURCE_ACTIVE_WORKFLOWS, RESOURCE_STEPS, add_month


class TestPlans:

    def test_builtin_plans_loaded_from_config(self):
        plans = PlanService()
        assert plans.get("personal").max_executions_per_month == 100
        assert plans.get("professional").max_steps_per_workflow is None
        assert plans.get("custom").max_executions_per_month is None

    def test_unknown_plan_falls_back_to_default(self):
        plans = PlanService()
        assert plans.get("no-such-plan") == plans.get("personal")
        assert plans.get(None) == plans.get("personal")

    def test_file_overrides_merge_over_defaults(self, tmp_path):
        path = tmp_path / "plans.json"
        path.write_text(json.dumps({"plans": {"personal": {"max_concurrency": 1}}}))

        personal = PlanService(plans_file=str(path)).get("personal")
        assert personal.max_concurrency == 1
        assert personal.max_executions_per_month == 100

    def test_unreadable_file_keeps_builtin_plans(self, tmp_path):
        path = tmp_path / "plans.json"
        path.write_text("{not json")
        assert PlanService(plans_file=str(path)).get("personal").max_active_workflows == 3


class TestQuotaGuard:

    async def test_eleventh_execution_is_rejected(self, quota):
        for i in range(9):
            await quota.increment_usage("owner-1", METRIC_EXECUTIONS, execution_id=f"e{i}")
        await quota.assert_within_limit("owner-1", "personal", METRIC_EXECUTIONS)

        await quota.increment_usage("owner-1", METRIC_EXECUTIONS, execution_id="e9")
        with pytest.raises(QuotaExceeded) as exc_info:
            await quota.assert_within_limit("owner-1", "personal", METRIC_EXECUTIONS)

        assert exc_info.value.used == 10
        assert exc_info.value.limit == 10

    async def test_increment_is_idempotent_per_execution(self, quota):
        assert await quota.increment_usage("owner-1", METRIC_EXECUTIONS, execution_id="x") is True
        assert await quota.increment_usage("owner-1", METRIC_EXECUTIONS, execution_id="x") is False
        assert await quota.get_usage("owner-1", METRIC_EXECUTIONS) == 1

    async def test_metrics_are_counted_separately(self, quota):
        await quota.increment_usage("owner-1", METRIC_CREDITS, amount=5, execution_id="x")
        await quota.increment_usage("owner-1", METRIC_EXECUTIONS, execution_id="x")
        assert await quota.get_usage("owner-1", METRIC_CREDITS) == 5
        assert await quota.get_usage("owner-1", METRIC_EXECUTIONS) == 1

    async def test_owners_are_isolated(self, quota):
        await quota.increment_usage("owner-1", METRIC_EXECUTIONS, execution_id="a")
        assert await quota.get_usage("owner-2", METRIC_EXECUTIONS) == 0

    def test_steps_limit(self, quota):
        quota.assert_steps_limit("owner-1", "personal", 10)
        with pytest.raises(QuotaExceeded) as exc_info:
            quota.assert_steps_limit("owner-1", "personal", 11)
        assert exc_info.value.resource == RESOURCE_STEPS

    async def test_active_workflow_limit(self, quota, save_workflow):
        for i in range(3):
            await save_workflow([], workflow_id=f"wf-{i}")
        with pytest.raises(QuotaExceeded) as exc_info:
            await quota.assert_can_activate("owner-1", "personal")
        assert exc_info.value.resource == RESOURCE_ACTIVE_WORKFLOWS

    async def test_unknown_metric(self, quota):
        with pytest.raises(ValueError):
            await quota.assert_within_limit("owner-1", "personal", "tokens")


def test_add_month_clamps_to_month_end():
    start = datetime(2024, 1, 31, tzinfo=timezone.utc)
    assert add_month(start) == datetime(2024, 2, 29, tzinfo=timezone.utc)
    assert add_month(datetime(2024, 12, 15, tzinfo=timezone.utc)) == datetime(2025, 1, 15, tzinfo=timezone.utc)
