from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from storescorer.core.config import get_settings
from storescorer.core.logging import configure_logging
from storescorer.persistence.db import dispose_engine
from storescorer.providers.payments.factory import close_payment_provider
from storescorer.services.maintenance import run_task


logger = logging.getLogger(__name__)


async def sweep_jobs(ctx) -> dict[str, int]:
    # A failed sweep is logged and retried on the next tick rather than crashing the worker.
    try:
        counts = await run_task("sweep_jobs")
    except Exception:  # noqa: BLE001 - keep the cron schedule alive while surfacing failures in worker logs.
        logger.exception("sweep_jobs_failed")
        return {}
    logger.info("sweep_jobs_finished %s", " ".join(f"{key}={value}" for key, value in counts.items()))
    return counts


async def cleanup_rate_limits(ctx) -> dict[str, int]:
    counts = await run_task("cleanup_rate_limits")
    logger.info("rate_limit_cleanup_finished deleted_count=%s", counts["deleted_count"])
    return counts


def sweep_minutes(every: int) -> set[int]:
    # Settings guarantees every divides 60, so ticks stay evenly spaced across the hour.
    return set(range(0, 60, every))


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("sweep_worker_started")


async def _shutdown(ctx) -> None:
    # Release pooled connections and provider clients before the process exits.
    await close_payment_provider()
    await dispose_engine()


class WorkerSettings:
    # arq reads these class attributes when started as `arq storescorer.workers.sweep_worker.WorkerSettings`.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sweep_queue_name
    cron_jobs = [
        cron(sweep_jobs, minute=sweep_minutes(settings.sweep_cron_minutes), run_at_startup=True),
        cron(cleanup_rate_limits, hour={3}, minute={0}),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
