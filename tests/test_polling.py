"""Polling path: per-workflow isolation, cursor storage and dedupe."""

import asyncio

import pytest

from constants import KIND_POLLING_TRIGGER
from models.nodes import BaseNodeParams
from services.execution import TriggerType
from services.handlers import handle_polling_trigger
from services.polling import PollingSweeper, polling_job_id
from services.registry import PollResult


def polling_workflow(type_id):
    nodes = [
        {"id": "poll", "type_id": type_id, "config": {}},
        {"id": "work", "type_id": "echo", "config": {"tag": "work"}},
    ]
    return nodes, [{"source": "poll", "target": "work"}]


@pytest.fixture
def sweeper(database, registry, queue):
    return PollingSweeper(database, registry, queue, interval=60, check_timeout=0.2)


@pytest.fixture
def register_poll(registry):
    def _register(type_id, poll):
        registry.register(type_id, BaseNodeParams, handle_polling_trigger,
                          kind=KIND_POLLING_TRIGGER, poll=poll)
    return _register


async def test_new_data_enqueues_job_and_stores_cursor(sweeper, register_poll, save_workflow,
                                                      database, queue):
    seen_states = []

    async def poll(config, state):
        seen_states.append(state.cursor)
        return PollResult(items=[{"id": 7}], cursor="7")

    register_poll("fake-poll", poll)
    await save_workflow(*polling_workflow("fake-poll"))

    assert await sweeper.sweep_once() == 1

    job = queue._queue.get_nowait()
    assert job.trigger_type == TriggerType.POLLING
    assert job.trigger_data == {"items": [{"id": 7}], "trigger_type": "fake-poll", "cursor": "7"}
    assert job.id == polling_job_id("wf-1", "fake-poll", "7")

    state = await database.get_polling_state("wf-1", "fake-poll")
    assert state.cursor == "7"
    assert state.last_seen_at is not None
    assert seen_states == [None]


async def test_no_new_data_only_updates_poll_time(sweeper, register_poll, save_workflow, database, queue):
    async def poll(config, state):
        return PollResult(items=[], cursor="3")

    register_poll("quiet-poll", poll)
    await save_workflow(*polling_workflow("quiet-poll"))

    assert await sweeper.sweep_once() == 0
    assert await queue.size() == 0
    state = await database.get_polling_state("wf-1", "quiet-poll")
    assert state.last_polled_at is not None
    assert state.last_seen_at is None


async def test_failing_workflow_does_not_affect_others(sweeper, register_poll, save_workflow, database):
    async def broken(config, state):
        raise ConnectionError("source down")

    async def slow(config, state):
        await asyncio.sleep(5)
        return PollResult(items=[1], cursor="1")

    async def healthy(config, state):
        return PollResult(items=[{"id": 1}], cursor="1")

    register_poll("broken-poll", broken)
    register_poll("slow-poll", slow)
    register_poll("healthy-poll", healthy)
    await save_workflow(*polling_workflow("broken-poll"), workflow_id="wf-broken")
    await save_workflow(*polling_workflow("slow-poll"), workflow_id="wf-slow")
    await save_workflow(*polling_workflow("healthy-poll"), workflow_id="wf-healthy")

    assert await sweeper.sweep_once() == 1
    assert await database.get_polling_state("wf-broken", "broken-poll") is None
    assert await database.get_polling_state("wf-slow", "slow-poll") is None
    assert (await database.get_polling_state("wf-healthy", "healthy-poll")).cursor == "1"


async def test_inactive_workflows_are_not_polled(sweeper, register_poll, save_workflow):
    calls = []

    async def poll(config, state):
        calls.append(state)
        return PollResult()

    register_poll("fake-poll", poll)
    await save_workflow(*polling_workflow("fake-poll"), status="inactive")

    assert await sweeper.sweep_once() == 0
    assert calls == []


async def test_same_batch_is_enqueued_once(sweeper, register_poll, save_workflow, queue):
    async def poll(config, state):
        # Source keeps reporting the batch, e.g. the cursor write was lost
        return PollResult(items=[{"id": 5}], cursor="5")

    register_poll("sticky-poll", poll)
    await save_workflow(*polling_workflow("sticky-poll"))

    assert await sweeper.sweep_once() == 1
    assert await sweeper.sweep_once() == 0
    assert await queue.size() == 1


async def test_capability_state_is_handed_back_on_next_poll(sweeper, register_poll, save_workflow):
    seen = []

    async def paged(config, state):
        seen.append(dict(state.data))
        page = state.data.get("page", 0) + 1
        return PollResult(items=[], cursor=state.cursor, state={"page": page, "etag": f"v{page}"})

    register_poll("paged-poll", paged)
    await save_workflow(*polling_workflow("paged-poll"))

    await sweeper.sweep_once()
    await sweeper.sweep_once()

    assert seen == [{}, {"page": 1, "etag": "v1"}]
