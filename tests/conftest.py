"""Pytest configuration and shared fixtures for the workflow engine tests."""

import asyncio
import os
from typing import Any, Dict, List, Optional

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from constants import KIND_ACTION
from core.cache import CacheService
from core.config import Settings
from core.database import Database
from models.database import Workflow
from models.nodes import BaseNodeParams
from services.execution.concurrency import TenantConcurrencyLimiter
from services.execution.controller import ExecutionController
from services.execution.executor import GraphExecutor
from services.execution.ledger import ExecutionLedger
from services.execution.models import WorkflowGraph
from services.handlers import register_builtin_capabilities
from services.plans import PlanLimit, PlanService
from services.queue import JobQueue
from services.quota import QuotaGuard
from services.registry import NodeRegistry
from services.scheduler import CronScheduler


class SleepParams(BaseNodeParams):
    seconds: float = 0.1


class CallRecorder:
    """Records node invocations in the order they started."""

    def __init__(self):
        self.calls: List[str] = []
        self.inputs: Dict[str, Any] = {}

    def record(self, name: str, node_input: Any) -> None:
        self.calls.append(name)
        self.inputs[name] = node_input


@pytest.fixture
def recorder() -> CallRecorder:
    return CallRecorder()


@pytest.fixture
def registry(recorder) -> NodeRegistry:
    """Built-in capabilities plus test-only ``echo``, ``fail`` and ``sleep`` nodes."""
    registry = register_builtin_capabilities(NodeRegistry())

    async def echo(node_input, config):
        recorder.record(config.model_extra.get("tag", "echo"), node_input)
        return {"tag": config.model_extra.get("tag"), "input": node_input}

    async def fail(node_input, config):
        recorder.record("fail", node_input)
        raise RuntimeError("boom")

    async def sleep(node_input, config):
        await asyncio.sleep(config.seconds)
        return {"slept": config.seconds}

    registry.register("echo", BaseNodeParams, echo, kind=KIND_ACTION)
    registry.register("fail", BaseNodeParams, fail, kind=KIND_ACTION)
    registry.register("sleep", SleepParams, sleep, kind=KIND_ACTION)
    return registry


@pytest.fixture
def executor(registry) -> GraphExecutor:
    return GraphExecutor(registry, node_timeout=5.0)


def make_graph(nodes: List[Dict[str, Any]], edges: Optional[List[Dict[str, Any]]] = None,
               workflow_id: str = "wf-1", owner_id: str = "owner-1") -> WorkflowGraph:
    return WorkflowGraph.from_parts(workflow_id, owner_id, nodes, edges or [], "active")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        redis_enabled=False,
        log_format="console",
        execution_max_retries=2,
        execution_retry_initial_delay=0.0,
        execution_retry_max_delay=0.0,
    )


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
async def cache(settings):
    cache = CacheService(settings)
    await cache.startup()
    yield cache
    await cache.shutdown()


@pytest.fixture
async def redis_cache(settings):
    """Live Redis from TEST_REDIS_URL (db 15 by default); skipped when unreachable."""
    url = os.environ.get("TEST_REDIS_URL", "redis://localhost:6379/15")
    cache = CacheService(settings.model_copy(update={"redis_enabled": True, "redis_url": url}))
    await cache.startup()
    if not cache.is_redis_available():
        pytest.skip(f"Redis not reachable at {url}")
    await cache.redis.flushdb()
    yield cache
    await cache.redis.flushdb()
    await cache.shutdown()


@pytest.fixture
def plans() -> PlanService:
    return PlanService(plans={
        "personal": PlanLimit(
            max_active_workflows=3,
            max_executions_per_month=10,
            max_concurrency=2,
            max_credits_per_month=100,
            max_steps_per_workflow=10,
        ),
    })


@pytest.fixture
def quota(database, plans) -> QuotaGuard:
    return QuotaGuard(database, plans)


@pytest.fixture
def ledger(database) -> ExecutionLedger:
    return ExecutionLedger(database)


@pytest.fixture
def limiter(cache) -> TenantConcurrencyLimiter:
    return TenantConcurrencyLimiter(cache, lease_seconds=60, poll_interval=0.01)


@pytest.fixture
def controller(settings, database, executor, ledger, quota, plans, limiter) -> ExecutionController:
    return ExecutionController(settings, database, executor, ledger, quota, plans, limiter)


@pytest.fixture
def queue(cache) -> JobQueue:
    return JobQueue(cache, workers=2)


@pytest.fixture
def cron_scheduler(database, queue, ledger, registry) -> CronScheduler:
    # Never started: armed jobs stay pending so tests can inspect them
    return CronScheduler(database, queue, ledger, registry, scheduler=AsyncIOScheduler(timezone="UTC"))


@pytest.fixture
def save_workflow(database):
    async def _save(nodes, edges=None, status="active", workflow_id="wf-1", owner_id="owner-1"):
        workflow = Workflow(id=workflow_id, owner_id=owner_id, name=workflow_id,
                            status=status, nodes=nodes, edges=edges or [])
        return await database.save_workflow(workflow)
    return _save
