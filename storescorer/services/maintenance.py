from __future__ import annotations

import logging
from typing import Literal

from storescorer.core.config import get_settings
from storescorer.core.errors import StoreError
from storescorer.persistence.store import EntityStore, get_store
from storescorer.providers.pipeline.factory import get_audit_pipeline
from storescorer.services.jobs import JobQueue, SweepResult
from storescorer.services.rate_limiter import AuditRateLimiter


logger = logging.getLogger(__name__)

MaintenanceTask = Literal["sweep_jobs", "cleanup_rate_limits"]


async def sweep_jobs(
    *,
    store: EntityStore | None = None,
    max_jobs: int | None = None,
    lock_timeout_minutes: int | None = None,
) -> SweepResult:
    # One discovery/claim/execute pass shared by the worker, cron route and CLI.
    store = store or get_store()
    queue = JobQueue(store)
    result = await queue.run_sweep(
        get_audit_pipeline(), max_jobs=max_jobs, lock_timeout_minutes=lock_timeout_minutes
    )
    if not result.success:
        raise StoreError(result.error or "Sweep failed")
    return result.data


async def cleanup_rate_limits(
    *, store: EntityStore | None = None, older_than_hours: int | None = None
) -> int:
    store = store or get_store()
    hours = older_than_hours if older_than_hours is not None else get_settings().rate_limit_retention_hours
    return await AuditRateLimiter(store).cleanup(hours)


async def run_task(task: MaintenanceTask, *, store: EntityStore | None = None) -> dict[str, int]:
    # Return flat counters so schedulers and scripts can log them uniformly.
    logger.info("maintenance_task_started task=%s", task)
    if task == "sweep_jobs":
        sweep = await sweep_jobs(store=store)
        return {
            "processed": sweep.processed,
            "failed": sweep.failed,
            "skipped": sweep.skipped,
            "retried": sweep.retried,
            "exhausted": sweep.exhausted,
        }
    if task == "cleanup_rate_limits":
        return {"deleted_count": await cleanup_rate_limits(store=store)}
    raise ValueError(f"Unknown maintenance task: {task}")
