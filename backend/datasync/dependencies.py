from __future__ import annotations

from functools import lru_cache

from datasync.config import settings
from datasync.services.connection_resolver import ConnectionResolver
from datasync.services.copy_orchestrator import CopyOrchestrator
from datasync.services.copy_scheduler import CopyScheduler
from datasync.services.gateway import ExecutionGateway, GatewayTimeouts
from datasync.services.job_supervisor import JobSupervisor


# === GATEWAY ===
@lru_cache()
def get_gateway() -> ExecutionGateway:
    timeouts = GatewayTimeouts(
        probe_seconds=settings.PROBE_TIMEOUT_SECONDS,
        bulk_seconds=settings.BULK_TIMEOUT_SECONDS,
    )
    if settings.COPY_BACKEND == "sqlite":
        from datasync.services.sqlite_gateway import SqliteGateway

        return SqliteGateway(timeouts)

    from datasync.services.postgres_gateway import PostgresGateway

    return PostgresGateway(timeouts)


@lru_cache()
def get_resolver() -> ConnectionResolver:
    return ConnectionResolver(settings.DATABASE_CREDENTIALS)


# === SERVICES (singletons) ===
_orchestrator_instance: CopyOrchestrator | None = None
_scheduler_instance: CopyScheduler | None = None


def get_orchestrator() -> CopyOrchestrator:
    global _orchestrator_instance
    if _orchestrator_instance is None:
        _orchestrator_instance = CopyOrchestrator(
            gateway=get_gateway(),
            resolver=get_resolver(),
            supervisor=JobSupervisor(),
        )
    return _orchestrator_instance


def get_scheduler() -> CopyScheduler:
    global _scheduler_instance
    if _scheduler_instance is None:
        _scheduler_instance = CopyScheduler(get_orchestrator())
    return _scheduler_instance


def reset_instances() -> None:
    """Drop cached singletons so the next lookup rebuilds them from settings."""
    global _orchestrator_instance, _scheduler_instance
    _orchestrator_instance = None
    _scheduler_instance = None
    get_gateway.cache_clear()
    get_resolver.cache_clear()
