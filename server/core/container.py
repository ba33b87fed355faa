"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.registry import NodeRegistry
from services.handlers import register_builtin_capabilities
from services.plans import PlanService
from services.quota import QuotaGuard
from services.queue import JobQueue
from services.scheduler import CronScheduler
from services.polling import PollingSweeper
from services.workflow import WorkflowService
from services.execution.executor import GraphExecutor
from services.execution.ledger import ExecutionLedger
from services.execution.concurrency import TenantConcurrencyLimiter
from services.execution.controller import ExecutionController
from services.execution.recovery import RecoverySweeper


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Cache service (uses Redis when available, memory otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    # Capabilities
    registry = providers.Singleton(
        register_builtin_capabilities,
        registry=providers.Singleton(NodeRegistry)
    )

    plans = providers.Singleton(
        PlanService,
        plans_file=settings.provided.plans_file
    )

    quota = providers.Singleton(
        QuotaGuard,
        database=database,
        plans=plans
    )

    # Execution engine
    executor = providers.Singleton(
        GraphExecutor,
        registry=registry,
        node_timeout=settings.provided.node_timeout_seconds
    )

    ledger = providers.Singleton(
        ExecutionLedger,
        database=database
    )

    limiter = providers.Singleton(
        TenantConcurrencyLimiter,
        cache=cache,
        lease_seconds=settings.provided.concurrency_lease_seconds,
        poll_interval=settings.provided.concurrency_poll_interval
    )

    controller = providers.Singleton(
        ExecutionController,
        settings=settings,
        database=database,
        executor=executor,
        ledger=ledger,
        quota=quota,
        plans=plans,
        limiter=limiter
    )

    queue = providers.Singleton(
        JobQueue,
        cache=cache,
        workers=settings.provided.queue_workers
    )

    # Trigger subsystem
    scheduler = providers.Singleton(
        CronScheduler,
        database=database,
        queue=queue,
        ledger=ledger,
        registry=registry,
        timezone=settings.provided.scheduler_timezone
    )

    polling = providers.Singleton(
        PollingSweeper,
        database=database,
        registry=registry,
        queue=queue,
        interval=settings.provided.polling_interval_seconds,
        check_timeout=settings.provided.polling_check_timeout
    )

    recovery = providers.Singleton(
        RecoverySweeper,
        database=database,
        ledger=ledger,
        stale_seconds=settings.provided.recovery_stale_seconds,
        sweep_interval=settings.provided.recovery_sweep_interval,
        limiter=limiter
    )

    workflow_service = providers.Singleton(
        WorkflowService,
        database=database,
        executor=executor,
        quota=quota,
        queue=queue,
        scheduler=scheduler
    )


# Global container instance
container = Container()
