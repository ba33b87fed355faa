"""Cron path: next-fire computation, fire handler and re-arming."""

from datetime import datetime, timezone

import pytest

from services.execution import ExecutionStatus, TriggerType, WorkflowGraph
from services.scheduler import build_cron_trigger, next_fire_time, scheduled_job_id

UTC = timezone.utc


def scheduled_nodes(cron="0 9 * * *", tz="UTC"):
    return [
        {"id": "trigger", "type_id": "scheduled-time-trigger",
         "config": {"cronExpression": cron, "timezone": tz}},
        {"id": "step", "type_id": "echo", "config": {"tag": "step"}},
    ]


EDGES = [{"source": "trigger", "target": "step"}]


class TestNextFireTime:

    def test_daily_fire_rearms_for_next_day(self):
        fired_at = datetime(2024, 1, 1, 9, 0, 0, tzinfo=UTC)
        assert next_fire_time("0 9 * * *", "UTC", fired_at) == datetime(2024, 1, 2, 9, 0, 0, tzinfo=UTC)

    def test_strictly_after_now(self):
        now = datetime(2024, 1, 1, 8, 59, 59, tzinfo=UTC)
        assert next_fire_time("0 9 * * *", "UTC", now) == datetime(2024, 1, 1, 9, 0, 0, tzinfo=UTC)

    def test_six_field_expression_has_seconds(self):
        now = datetime(2024, 1, 1, 9, 0, 0, tzinfo=UTC)
        assert next_fire_time("30 0 9 * * *", "UTC", now) == datetime(2024, 1, 1, 9, 0, 30, tzinfo=UTC)

    def test_timezone_is_respected(self):
        now = datetime(2024, 1, 1, 0, 0, 0, tzinfo=UTC)
        # 09:00 in New York is 14:00 UTC in January
        assert next_fire_time("0 9 * * *", "America/New_York", now) == datetime(2024, 1, 1, 14, 0, tzinfo=UTC)

    def test_wrong_field_count_rejected(self):
        with pytest.raises(ValueError):
            build_cron_trigger("* * *")


class TestFireHandler:

    async def test_fire_enqueues_and_rearms(self, cron_scheduler, save_workflow, queue):
        await save_workflow(scheduled_nodes(), EDGES)
        fired_at = datetime(2024, 1, 1, 9, 0, 0, tzinfo=UTC)

        job = await cron_scheduler.fire("wf-1", scheduled_for=fired_at, now=fired_at)

        assert job.trigger_type == TriggerType.SCHEDULED
        assert job.trigger_data["cron"] == "0 9 * * *"
        assert job.id == scheduled_job_id("wf-1", fired_at)
        assert await queue.size() == 1
        assert cron_scheduler.is_armed("wf-1")
        assert cron_scheduler.armed_at("wf-1") == datetime(2024, 1, 2, 9, 0, 0, tzinfo=UTC)

    async def test_duplicate_fire_enqueues_once(self, cron_scheduler, save_workflow, queue):
        await save_workflow(scheduled_nodes(), EDGES)
        fired_at = datetime(2024, 1, 1, 9, 0, 0, tzinfo=UTC)

        await cron_scheduler.fire("wf-1", scheduled_for=fired_at, now=fired_at)
        await cron_scheduler.fire("wf-1", scheduled_for=fired_at, now=fired_at)

        assert await queue.size() == 1

    async def test_deactivated_before_fire_is_skipped_and_not_rearmed(
            self, cron_scheduler, save_workflow, database, queue):
        workflow = await save_workflow(scheduled_nodes(), EDGES)
        cron_scheduler.arm_trigger("wf-1", "0 9 * * *", "UTC", WorkflowGraph.from_record(workflow),
                                   now=datetime(2024, 1, 1, 8, 0, tzinfo=UTC))
        await database.set_workflow_status("wf-1", "inactive")

        fired_at = datetime(2024, 1, 1, 9, 0, 0, tzinfo=UTC)
        job = await cron_scheduler.fire("wf-1", scheduled_for=fired_at, now=fired_at)

        assert job is None
        assert await queue.size() == 0
        assert not cron_scheduler.is_armed("wf-1")

        record = await database.get_execution(scheduled_job_id("wf-1", fired_at))
        assert record.status == ExecutionStatus.SKIPPED.value
        assert record.trigger_type == "scheduled"
        assert await database.get_node_results(record.id) == []

    async def test_disarm_removes_job(self, cron_scheduler, save_workflow):
        workflow = await save_workflow(scheduled_nodes(), EDGES)
        cron_scheduler.arm_trigger("wf-1", "0 9 * * *", "UTC", WorkflowGraph.from_record(workflow))

        assert cron_scheduler.disarm("wf-1") is True
        assert cron_scheduler.get_job_info("wf-1") is None
        assert cron_scheduler.disarm("wf-1") is False


class TestRearmOrphans:

    async def test_rearms_only_active_scheduled_workflows(self, cron_scheduler, save_workflow):
        await save_workflow(scheduled_nodes(), EDGES, workflow_id="wf-active")
        await save_workflow(scheduled_nodes(), EDGES, workflow_id="wf-draft", status="draft")
        await save_workflow([{"id": "m", "type_id": "manual-trigger"}], workflow_id="wf-manual")

        now = datetime(2024, 1, 1, 10, 0, tzinfo=UTC)
        assert await cron_scheduler.rearm_orphans(now=now) == 1
        assert cron_scheduler.armed_at("wf-active") == datetime(2024, 1, 2, 9, 0, tzinfo=UTC)
        assert not cron_scheduler.is_armed("wf-draft")

        # Already armed workflows are left alone
        assert await cron_scheduler.rearm_orphans(now=now) == 0
