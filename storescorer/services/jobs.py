from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from storescorer.core.config import Settings, get_settings
from storescorer.domain.records import AuditJobRecord, AuditRecord
from storescorer.domain.status import PAID_IN_PROGRESS_STATUSES, AuditStatus, is_terminal
from storescorer.persistence.store import EntityStore, StoreResult
from storescorer.providers.pipeline.base import AuditPipeline
from storescorer.services import audit_lifecycle


logger = logging.getLogger(__name__)


class JobExecutionError(Exception):
    """Raised inside job execution when a lifecycle write fails."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _error_message(exc: Exception) -> str:
    message = str(exc).strip()
    return f"{exc.__class__.__name__}: {message}" if message else exc.__class__.__name__


@dataclass(frozen=True)
class SweepResult:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    exhausted: int = 0
    processed_audits: list[str] = field(default_factory=list)
    failed_audits: list[str] = field(default_factory=list)


class JobQueue:
    """Lock-based job queue over the entity store.

    Coordination happens only through conditional store updates, so any
    number of sweepers in separate processes may run concurrently.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._now = time_provider or _utc_now

    async def enqueue(self, audit_id: str) -> StoreResult[tuple[AuditJobRecord, bool]]:
        # Get-or-create; concurrent callers converge on one active job.
        return await self._store.call("create_audit_job", audit_id, now=self._now())

    async def kick(self, audit: AuditRecord) -> AuditJobRecord | None:
        # Ensure a paid audit has a job; execution stays with the sweep.
        if audit.status not in PAID_IN_PROGRESS_STATUSES:
            return None
        result = await self.enqueue(audit.id)
        if not result.success:
            logger.warning("audit_kick_failed audit_id=%s error=%s", audit.id, result.error)
            return None
        job, created = result.data
        if created:
            logger.info("audit_job_created audit_id=%s job_id=%s source=kick", audit.id, job.id)
        return job

    async def discover(
        self, *, limit: int, lock_timeout_minutes: int
    ) -> StoreResult[list[AuditJobRecord]]:
        return await self._store.call(
            "get_pending_jobs",
            limit=limit,
            lock_timeout_minutes=lock_timeout_minutes,
            now=self._now(),
        )

    async def claim(self, job_id: str, *, lock_timeout_minutes: int) -> AuditJobRecord | None:
        # The claimed record's locked_at identifies this owner until the job ends.
        result = await self._store.call(
            "lock_job", job_id, lock_timeout_minutes=lock_timeout_minutes, now=self._now()
        )
        if not result.success:
            logger.warning("audit_job_claim_failed job_id=%s error=%s", job_id, result.error)
            return None
        return result.data

    async def execute(self, job: AuditJobRecord, pipeline: AuditPipeline) -> bool:
        """Run a claimed job to a terminal job status.

        ``job`` must be the record returned by ``claim``. Returns True when the
        audit completed. Every failure path, including the pipeline raising,
        records the job as failed before returning. The audit is left in its
        current stage for the supervising step to decide on. If the lock was
        reclaimed by another sweeper meanwhile, the job is left to its new owner.
        """
        try:
            audit = await audit_lifecycle.get_audit(self._store, job.audit_id)
            if audit.status is AuditStatus.FAILED:
                raise JobExecutionError("Audit is already failed")
            if is_terminal(audit.status):
                # Already completed; close the job so it is not rediscovered.
                await self._finish(job)
                return True
            crawling = await audit_lifecycle.advance(self._store, audit, AuditStatus.CRAWLING)
            if not crawling.success:
                raise JobExecutionError(crawling.error or "Audit transition failed")
            current = crawling.data

            async def _progress(status: AuditStatus) -> None:
                nonlocal current
                moved = await audit_lifecycle.advance(self._store, current, status)
                if not moved.success:
                    raise JobExecutionError(moved.error or "Audit transition failed")
                current = moved.data

            outcome = await pipeline.run(current, _progress)
            done = await audit_lifecycle.transition(
                self._store,
                audit.id,
                AuditStatus.COMPLETED,
                overall_score=outcome.overall_score,
                synthesis=outcome.synthesis,
                token_usage=outcome.token_usage,
                warning_message=outcome.warning_message,
                completed_at=self._now(),
            )
            if not done.success:
                raise JobExecutionError(done.error or "Audit completion failed")
            await self._finish(job)
        except Exception as exc:  # noqa: BLE001 - job failures are recorded, never propagated
            logger.warning(
                "audit_job_failed job_id=%s audit_id=%s", job.id, job.audit_id, exc_info=exc
            )
            failed = await self._store.call(
                "fail_job", job.id, _error_message(exc), locked_at=job.locked_at, now=self._now()
            )
            if not failed.success:
                # Lock expiry makes the job reclaimable even if this write was lost.
                logger.error("audit_job_fail_write_failed job_id=%s error=%s", job.id, failed.error)
            elif not failed.data[1]:
                logger.warning("audit_job_lock_lost job_id=%s action=fail", job.id)
            return False
        logger.info("audit_job_completed job_id=%s audit_id=%s", job.id, job.audit_id)
        return True

    async def _finish(self, job: AuditJobRecord) -> None:
        completed = await self._store.call(
            "complete_job", job.id, locked_at=job.locked_at, now=self._now()
        )
        if not completed.success:
            raise JobExecutionError(completed.error or "Job completion failed")
        if not completed.data[1]:
            logger.warning("audit_job_lock_lost job_id=%s action=complete", job.id)

    async def retry(self, job_id: str) -> StoreResult[AuditJobRecord]:
        # Failed -> pending with the lock cleared; attempts are kept.
        result = await self._store.call("retry_job", job_id, now=self._now())
        if result.success:
            logger.info("audit_job_retried job_id=%s attempts=%s", job_id, result.data.attempts)
        return result

    def _backoff_elapsed(self, job: AuditJobRecord) -> bool:
        delay_s = self._settings.job_retry_backoff_s * (2 ** max(job.attempts - 1, 0))
        return job.updated_at + timedelta(seconds=delay_s) <= self._now()

    async def supervise_failed(self) -> tuple[int, int]:
        """Decide the fate of failed jobs whose audit is still open.

        Jobs that used up ``job_max_attempts`` fail their audit. Others are
        re-queued once their exponential backoff has passed, when automatic
        retries are enabled. Returns ``(retried, exhausted)``.
        """
        listed = await self._store.call("list_failed_jobs")
        if not listed.success:
            logger.warning("audit_job_supervise_failed error=%s", listed.error)
            return 0, 0
        retried = 0
        exhausted = 0
        for job in listed.data:
            if job.attempts >= self._settings.job_max_attempts:
                failed = await audit_lifecycle.fail_audit(
                    self._store,
                    job.audit_id,
                    job.last_error or "Audit processing failed",
                )
                if failed.success:
                    exhausted += 1
                    logger.warning(
                        "audit_failed_after_retries audit_id=%s attempts=%s", job.audit_id, job.attempts
                    )
                continue
            if not self._settings.job_auto_retry_enabled or not self._backoff_elapsed(job):
                continue
            if (await self.retry(job.id)).success:
                retried += 1
        return retried, exhausted

    async def run_sweep(
        self,
        pipeline: AuditPipeline,
        *,
        max_jobs: int | None = None,
        lock_timeout_minutes: int | None = None,
    ) -> StoreResult[SweepResult]:
        """Discover, claim and execute up to ``max_jobs`` jobs.

        A job whose claim fails was taken by another sweeper and is skipped.
        One job's failure never stops the rest of the batch.
        """
        limit = max_jobs if max_jobs is not None else self._settings.job_batch_size
        timeout = (
            lock_timeout_minutes
            if lock_timeout_minutes is not None
            else self._settings.job_lock_timeout_minutes
        )
        discovered = await self.discover(limit=limit, lock_timeout_minutes=timeout)
        if not discovered.success:
            return StoreResult.fail(discovered.error or "Job discovery failed", discovered.code)

        processed_audits: list[str] = []
        failed_audits: list[str] = []
        skipped = 0
        for candidate in discovered.data:
            job = await self.claim(candidate.id, lock_timeout_minutes=timeout)
            if job is None:
                skipped += 1
                continue
            if await self.execute(job, pipeline):
                processed_audits.append(job.audit_id)
            else:
                failed_audits.append(job.audit_id)

        retried, exhausted = await self.supervise_failed()
        result = SweepResult(
            processed=len(processed_audits),
            failed=len(failed_audits),
            skipped=skipped,
            retried=retried,
            exhausted=exhausted,
            processed_audits=processed_audits,
            failed_audits=failed_audits,
        )
        logger.info(
            "audit_sweep_finished processed=%s failed=%s skipped=%s retried=%s exhausted=%s",
            result.processed,
            result.failed,
            result.skipped,
            result.retried,
            result.exhausted,
        )
        return StoreResult.ok(result)

