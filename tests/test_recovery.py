"""Recovery sweeper: stale running executions are re-submitted."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

from sqlalchemy import update

from constants import KIND_ACTION
from models.database import WorkflowExecution, utcnow
from models.nodes import BaseNodeParams
from services.execution import ExecutionJob, ExecutionStatus
from services.execution.controller import ExecutionController
from services.execution.recovery import RecoverySweeper


async def age_record(database, execution_id, seconds):
    async with database.get_session() as session:
        await session.execute(
            update(WorkflowExecution)
            .where(WorkflowExecution.id == execution_id)
            .values(updated_at=utcnow() - timedelta(seconds=seconds))
        )
        await session.commit()


async def test_stale_running_record_is_resubmitted(database, ledger):
    job = ExecutionJob(workflow_id="wf-1", owner_id="owner-1",
                       nodes=[{"id": "a", "type_id": "echo"}])
    await ledger.create_record(job)
    await age_record(database, job.id, 3600)

    enqueue = AsyncMock(return_value=True)
    rearm = AsyncMock(return_value=0)
    sweeper = RecoverySweeper(database, ledger, stale_seconds=600)
    sweeper.set_recovery_callback(enqueue)
    sweeper.set_rearm_callback(rearm)

    assert await sweeper.sweep_once() == [job.id]

    resubmitted = enqueue.await_args.args[0]
    assert resubmitted.id == job.id
    assert resubmitted.nodes == job.nodes
    rearm.assert_awaited_once()

    # Touched on re-submission, so the next sweep leaves it alone
    assert await sweeper.sweep_once() == []


async def test_fresh_and_finished_records_are_ignored(database, ledger):
    fresh = ExecutionJob(workflow_id="wf-1", owner_id="owner-1")
    await ledger.create_record(fresh)

    done = ExecutionJob(workflow_id="wf-1", owner_id="owner-1")
    await ledger.write_skipped(done, "inactive")
    await age_record(database, done.id, 3600)

    enqueue = AsyncMock(return_value=True)
    sweeper = RecoverySweeper(database, ledger, stale_seconds=600)
    sweeper.set_recovery_callback(enqueue)

    assert await sweeper.sweep_once() == []
    enqueue.assert_not_awaited()


async def test_record_without_payload_is_failed(database, ledger):
    async with database.get_session() as session:
        session.add(WorkflowExecution(id="orphan", workflow_id="wf-1", owner_id="owner-1",
                                      status="running", job_payload=None))
        await session.commit()
    await age_record(database, "orphan", 3600)

    sweeper = RecoverySweeper(database, ledger, stale_seconds=600)
    sweeper.set_recovery_callback(AsyncMock())
    await sweeper.sweep_once()

    record = await database.get_execution("orphan")
    assert record.status == ExecutionStatus.FAILED.value


async def test_resubmitted_job_resumes_in_controller(database, ledger, controller, quota):
    job = ExecutionJob(workflow_id="wf-1", owner_id="owner-1",
                       nodes=[{"id": "a", "type_id": "echo", "config": {"tag": "a"}}])
    # A worker created the record and died before executing
    await ledger.create_record(job)
    await age_record(database, job.id, 3600)

    sweeper = RecoverySweeper(database, ledger, stale_seconds=600)
    sweeper.set_recovery_callback(controller.run_job)
    await sweeper.sweep_once()

    record = await database.get_execution(job.id)
    assert record.status == ExecutionStatus.SUCCEEDED.value
    assert await quota.get_usage("owner-1", "executions") == 1


async def wait_for_record(database, execution_id):
    while await database.get_execution(execution_id) is None:
        await asyncio.sleep(0.01)


async def test_execution_holding_its_slot_is_not_resubmitted(database, ledger, controller,
                                                             limiter, registry):
    calls = []

    async def slow(node_input, config):
        calls.append("slow")
        await asyncio.sleep(0.3)
        return {}

    registry.register("slow", BaseNodeParams, slow, kind=KIND_ACTION)
    job = ExecutionJob(workflow_id="wf-1", owner_id="owner-1",
                       nodes=[{"id": "s", "type_id": "slow"}])

    # Every running record looks stale with a zero window
    sweeper = RecoverySweeper(database, ledger, stale_seconds=0, limiter=limiter)
    sweeper.set_recovery_callback(controller.run_job)

    running = asyncio.create_task(controller.run_job(job))
    await asyncio.wait_for(wait_for_record(database, job.id), 1.0)

    assert await sweeper.sweep_once() == []
    assert await running == ExecutionStatus.SUCCEEDED
    assert calls == ["slow"]


async def test_heartbeat_keeps_long_execution_fresh(settings, database, executor, ledger,
                                                    quota, plans, limiter):
    controller = ExecutionController(settings, database, executor, ledger, quota, plans,
                                     limiter, heartbeat_interval=0.05)
    job = ExecutionJob(workflow_id="wf-1", owner_id="owner-1",
                       nodes=[{"id": "s", "type_id": "sleep", "config": {"seconds": 0.4}}])

    running = asyncio.create_task(controller.run_job(job))
    await asyncio.wait_for(wait_for_record(database, job.id), 1.0)
    await asyncio.sleep(0.05)
    await age_record(database, job.id, 3600)
    await asyncio.sleep(0.15)

    assert await database.find_stale_executions(utcnow() - timedelta(seconds=60)) == []
    assert await running == ExecutionStatus.SUCCEEDED
