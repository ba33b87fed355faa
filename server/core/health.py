"""Health check utilities.

Provides uptime tracking and health status for the /health endpoint.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from core.cache import CacheService
    from services.queue import JobQueue
    from services.scheduler import CronScheduler

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


async def check_database(database: "Database") -> bool:
    """Check database connectivity."""
    try:
        async with database.get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False


async def get_health_status(
    database: "Database",
    cache: "CacheService",
    queue: "JobQueue",
    scheduler: "CronScheduler",
    settings: "Settings"
) -> Dict[str, Any]:
    """Get health status for /health endpoint.

    Returns:
        Dict containing status, uptime, backend checks and feature flags.
    """
    db_healthy = await check_database(database)
    redis_healthy = await cache.ping() if settings.redis_enabled else None

    overall_status = "healthy" if db_healthy and redis_healthy is not False else "degraded"

    return {
        "status": overall_status,
        "uptime_seconds": round(get_uptime(), 1),
        "checks": {
            "database": db_healthy,
            "redis": redis_healthy,
        },
        "queue": {
            "backend": "redis" if cache.is_redis_available() else "memory",
            "pending": await queue.size(),
        },
        "scheduler": {
            "running": scheduler.scheduler.running,
            "armed": len(scheduler.scheduler.get_jobs()),
        },
        "features": {
            "redis": settings.redis_enabled,
            "polling": settings.polling_enabled,
            "recovery": settings.recovery_enabled,
        },
    }
