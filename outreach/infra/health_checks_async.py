# outreach/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any, Optional
from enum import Enum

from outreach.config import settings
from outreach.core.run_state import RunStateRegistry
from outreach.infra.db_async import get_pool
from outreach.infra.logging_config import get_logger

logger = get_logger(__name__)

REQUIRED_TABLES = ("organizations", "campaigns", "runs", "run_rows", "calls")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    """Base class for async health checks"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        """
        Perform health check.
        Returns dict with 'status', 'details', and optionally 'error'
        """
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Database connectivity plus the tables the engine reads and writes"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.time()

        try:
            pool = get_pool()
            async with pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Unexpected query result",
                        "error": f"Expected 1, got {result}"
                    }

                missing_tables = []
                for table in REQUIRED_TABLES:
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None:
                        missing_tables.append(table)

                if missing_tables:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Missing required tables",
                        "error": f"Missing: {', '.join(missing_tables)}"
                    }

                duration = time.time() - start
                if duration > 1.0:
                    return {
                        "status": HealthStatus.DEGRADED,
                        "details": f"Slow database response: {duration:.3f}s",
                        "response_time": duration
                    }

                return {
                    "status": HealthStatus.HEALTHY,
                    "details": "Database operational",
                    "response_time": duration
                }

        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200]
            }


class AsyncDispatchHealthCheck(AsyncHealthCheck):
    """Active loops in this process and rows wedged in 'calling'"""

    def __init__(self, registry: Optional[RunStateRegistry] = None):
        super().__init__("dispatch", critical=False)
        self.registry = registry

    async def check(self) -> Dict[str, Any]:
        active_loops = 0
        if self.registry is not None:
            active_loops = sum(1 for state in self.registry.states() if state.processing)

        try:
            pool = get_pool()
            async with pool.acquire() as conn:
                stuck = await conn.fetchval(
                    """
                    SELECT count(*) FROM run_rows
                    WHERE status = 'calling'
                      AND updated_at < now() - make_interval(secs => $1)
                    """,
                    float(settings.dispatch_stuck_row_timeout_seconds),
                )
        except Exception as exc:
            logger.error("Dispatch health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Dispatch check failed",
                "active_loops": active_loops,
                "error": str(exc)[:200]
            }

        return {
            "status": HealthStatus.DEGRADED if stuck else HealthStatus.HEALTHY,
            "details": f"{stuck} stuck row(s)" if stuck else "Dispatch operational",
            "active_loops": active_loops,
            "stuck_rows": stuck,
        }


class IntegrationsHealthCheck(AsyncHealthCheck):
    """Configuration of the telephony vendor and the event publisher"""

    def __init__(self):
        super().__init__("integrations", critical=False)

    async def check(self) -> Dict[str, Any]:
        status = HealthStatus.HEALTHY
        if not settings.telephony_enabled:
            status = HealthStatus.DEGRADED
        return {
            "status": status,
            "details": "Integration configuration",
            "telephony": "configured" if settings.telephony_enabled else "missing",
            "events": "pusher" if settings.pusher_enabled else "log",
        }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, registry: Optional[RunStateRegistry] = None):
        self.checks: list[AsyncHealthCheck] = [
            AsyncDatabaseHealthCheck(),
            AsyncDispatchHealthCheck(registry),
            IntegrationsHealthCheck(),
        ]

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {
                "status": "healthy" | "degraded" | "unhealthy",
                "checks": {...},
                "processor_id": str,
                "timestamp": float
            }
        """
        results = {}
        overall_status = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall_status = HealthStatus.UNHEALTHY
            elif result["status"] != HealthStatus.HEALTHY and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        return {
            "status": overall_status.value,
            "checks": results,
            "processor_id": settings.processor_id,
            "timestamp": time.time()
        }
