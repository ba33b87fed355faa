"""Workflow service: lifecycle, activation limits and run submission."""

import pytest

from services.execution import (
    ExecutionStatus,
    QuotaExceeded,
    ResourceNotFound,
    TriggerType,
    WorkflowValidationError,
)
from services.workflow import WorkflowService

SCHEDULED = [
    {"id": "trigger", "type_id": "scheduled-time-trigger", "config": {"cronExpression": "*/5 * * * *"}},
    {"id": "work", "type_id": "echo", "config": {"tag": "work"}},
]
MANUAL = [
    {"id": "start", "type_id": "manual-trigger"},
    {"id": "work", "type_id": "echo", "config": {"tag": "work"}},
]
EDGES_SCHEDULED = [{"source": "trigger", "target": "work"}]
EDGES_MANUAL = [{"source": "start", "target": "work"}]


@pytest.fixture
def service(database, executor, quota, queue, cron_scheduler) -> WorkflowService:
    return WorkflowService(database, executor, quota, queue, cron_scheduler)


async def test_create_starts_as_draft(service):
    workflow = await service.create_workflow("owner-1", "demo", MANUAL, EDGES_MANUAL)
    assert workflow.status == "draft"
    assert (await service.get_workflow(workflow.id)).name == "demo"


async def test_activate_arms_and_deactivate_disarms(service, cron_scheduler):
    workflow = await service.create_workflow("owner-1", "cron", SCHEDULED, EDGES_SCHEDULED)

    activated = await service.activate(workflow.id)
    assert activated.status == "active"
    assert cron_scheduler.is_armed(workflow.id)

    deactivated = await service.deactivate(workflow.id)
    assert deactivated.status == "inactive"
    assert not cron_scheduler.is_armed(workflow.id)


async def test_activate_rejects_invalid_graph(service):
    workflow = await service.create_workflow(
        "owner-1", "broken", MANUAL, [{"source": "start", "target": "nowhere"}]
    )
    with pytest.raises(WorkflowValidationError):
        await service.activate(workflow.id)
    assert (await service.get_workflow(workflow.id)).status == "draft"


async def test_active_workflow_limit(service):
    for i in range(3):
        workflow = await service.create_workflow("owner-1", f"wf{i}", MANUAL, EDGES_MANUAL)
        await service.activate(workflow.id)

    extra = await service.create_workflow("owner-1", "one too many", MANUAL, EDGES_MANUAL)
    with pytest.raises(QuotaExceeded):
        await service.activate(extra.id)


async def test_execute_enqueues_with_pregenerated_id(service, queue, controller, database):
    workflow = await service.create_workflow("owner-1", "manual", MANUAL, EDGES_MANUAL)

    execution_id = await service.execute(workflow.id, {"n": 1}, test=True)

    job = queue._queue.get_nowait()
    assert job.id == execution_id
    assert job.trigger_type == TriggerType.TEST
    assert job.trigger_data == {"n": 1}

    assert await controller.run_job(job) == ExecutionStatus.SUCCEEDED
    record = await service.get_execution(execution_id)
    assert record.status == "succeeded"
    assert len(await service.get_node_results(execution_id)) == 2
    assert await service.get_execution_logs(execution_id)


async def test_execute_validates_synchronously(service, queue):
    workflow = await service.create_workflow("owner-1", "bad", [{"id": "x", "type_id": "nope"}])

    with pytest.raises(WorkflowValidationError):
        await service.execute(workflow.id)
    assert await queue.size() == 0


async def test_update_of_active_workflow_rearms(service, cron_scheduler):
    workflow = await service.create_workflow("owner-1", "cron", SCHEDULED, EDGES_SCHEDULED)
    await service.activate(workflow.id)

    await service.update_workflow(workflow.id, nodes=MANUAL, edges=EDGES_MANUAL)
    assert not cron_scheduler.is_armed(workflow.id)


async def test_missing_resources(service):
    with pytest.raises(ResourceNotFound):
        await service.get_workflow("nope")
    with pytest.raises(ResourceNotFound):
        await service.get_execution("nope")
    with pytest.raises(ResourceNotFound):
        await service.delete_workflow("nope")


async def test_plan_upgrade_lifts_activation_limit(service, database):
    await database.set_tenant_plan("owner-1", "professional")

    for i in range(4):
        workflow = await service.create_workflow("owner-1", f"wf{i}", MANUAL, EDGES_MANUAL)
        assert (await service.activate(workflow.id)).status == "active"
