from __future__ import annotations

import asyncio

from storescorer.core.config import Settings
from storescorer.domain.status import AuditStatus, JobStatus
from storescorer.persistence.store import CODE_INVALID, EntityStore
from storescorer.providers.pipeline.fake import FakeAuditPipeline
from storescorer.services import audit_lifecycle
from storescorer.services.jobs import JobQueue
from storescorer.tests.utils.db import write_raw_status
from storescorer.tests.utils.fakes import CountingPipeline, FailingPipeline, FrozenClock


async def _paid_audit(store: EntityStore, domain: str = "shop.example.com"):
    created = await store.call(
        "create_audit", domain=domain, email="buyer@example.com", status=AuditStatus.PAYMENT_COMPLETE
    )
    assert created.success, created.error
    return created.data


def _queue(store: EntityStore, **overrides) -> JobQueue:
    values = {"job_retry_backoff_s": 60, "job_max_attempts": 3, "job_auto_retry_enabled": True}
    values.update(overrides)
    return JobQueue(store, settings=Settings(**values))


async def test_enqueue_is_get_or_create(store: EntityStore) -> None:
    audit = await _paid_audit(store)
    queue = _queue(store)

    first = await queue.enqueue(audit.id)
    second = await queue.enqueue(audit.id)

    assert first.data[1] is True
    assert second.data[1] is False
    assert first.data[0].id == second.data[0].id


async def test_concurrent_enqueue_creates_one_active_job(store: EntityStore) -> None:
    audit = await _paid_audit(store)
    queue = _queue(store)

    results = await asyncio.gather(*(queue.enqueue(audit.id) for _ in range(5)))

    assert all(result.success for result in results), [result.error for result in results]
    assert len({result.data[0].id for result in results}) == 1
    assert sum(result.data[1] for result in results) == 1


async def test_claim_is_exclusive(store: EntityStore) -> None:
    audit = await _paid_audit(store)
    queue = _queue(store)
    job, _ = (await queue.enqueue(audit.id)).data

    claims = await asyncio.gather(*(queue.claim(job.id, lock_timeout_minutes=5) for _ in range(5)))

    assert sum(claim is not None for claim in claims) == 1
    locked = (await store.call("get_job", job.id)).data
    assert locked.status is JobStatus.PROCESSING
    assert locked.attempts == 1
    assert locked.locked_at is not None


async def test_stale_lock_is_reclaimable(store: EntityStore) -> None:
    clock = FrozenClock()
    audit = await _paid_audit(store)
    queue = JobQueue(store, settings=Settings(), time_provider=clock)
    job, _ = (await queue.enqueue(audit.id)).data
    assert await queue.claim(job.id, lock_timeout_minutes=5)

    assert (await queue.discover(limit=5, lock_timeout_minutes=5)).data == []
    assert not await queue.claim(job.id, lock_timeout_minutes=5)

    clock.advance(minutes=6)
    rediscovered = (await queue.discover(limit=5, lock_timeout_minutes=5)).data
    assert [item.id for item in rediscovered] == [job.id]
    assert await queue.claim(job.id, lock_timeout_minutes=5)
    assert (await store.call("get_job", job.id)).data.attempts == 2


async def test_discover_orders_oldest_first_and_respects_limit(store: EntityStore) -> None:
    clock = FrozenClock()
    queue = JobQueue(store, settings=Settings(), time_provider=clock)
    audit_ids = []
    for index in range(3):
        audit = await _paid_audit(store, domain=f"shop{index}.example.com")
        await queue.enqueue(audit.id)
        audit_ids.append(audit.id)
        clock.advance(seconds=1)

    found = (await queue.discover(limit=2, lock_timeout_minutes=5)).data

    assert [job.audit_id for job in found] == audit_ids[:2]


async def test_sweep_runs_pipeline_to_completion(store: EntityStore) -> None:
    audit = await _paid_audit(store)
    queue = _queue(store)
    await queue.enqueue(audit.id)

    result = await queue.run_sweep(FakeAuditPipeline(score=64.0))

    assert result.success
    assert result.data.processed == 1
    assert result.data.processed_audits == [audit.id]
    stored = await audit_lifecycle.get_audit(store, audit.id)
    assert stored.status is AuditStatus.COMPLETED
    assert stored.overall_score == 64.0
    assert stored.synthesis["domain"] == "shop.example.com"
    assert stored.completed_at is not None
    job = (await store.call("get_job_by_audit_id", audit.id)).data
    assert job.status is JobStatus.COMPLETED
    assert job.locked_at is None


async def test_concurrent_sweeps_execute_each_job_once(store: EntityStore) -> None:
    pipeline = CountingPipeline()
    audits = [await _paid_audit(store, domain=f"store{index}.example.com") for index in range(3)]
    queue = _queue(store)
    for audit in audits:
        await queue.enqueue(audit.id)

    results = await asyncio.gather(
        _queue(store).run_sweep(pipeline, max_jobs=5),
        _queue(store).run_sweep(pipeline, max_jobs=5),
    )

    assert sorted(pipeline.audit_ids) == sorted(audit.id for audit in audits)
    assert sum(result.data.processed for result in results) == 3


async def test_failed_job_records_error_and_keeps_audit_open(store: EntityStore) -> None:
    audit = await _paid_audit(store)
    queue = _queue(store)
    await queue.enqueue(audit.id)

    result = await queue.run_sweep(FailingPipeline("crawler blocked"))

    assert result.data.failed == 1
    assert result.data.failed_audits == [audit.id]
    assert result.data.retried == 0
    job = (await store.call("get_job_by_audit_id", audit.id)).data
    assert job.status is JobStatus.FAILED
    assert job.attempts == 1
    assert job.locked_at is None
    assert "crawler blocked" in job.last_error
    assert (await audit_lifecycle.get_audit(store, audit.id)).status is AuditStatus.CRAWLING


async def test_manual_retry_preserves_attempts(store: EntityStore) -> None:
    audit = await _paid_audit(store)
    queue = _queue(store, job_auto_retry_enabled=False)
    job, _ = (await queue.enqueue(audit.id)).data

    not_failed = await queue.retry(job.id)
    assert not not_failed.success
    assert not_failed.code == CODE_INVALID

    await queue.run_sweep(FailingPipeline())
    retried = await queue.retry(job.id)

    assert retried.success
    assert retried.data.status is JobStatus.PENDING
    assert retried.data.attempts == 1
    assert retried.data.last_error is None


async def test_retries_back_off_then_exhaust(store: EntityStore) -> None:
    clock = FrozenClock()
    audit = await _paid_audit(store)
    settings = Settings(job_max_attempts=2, job_retry_backoff_s=60, job_auto_retry_enabled=True)
    queue = JobQueue(store, settings=settings, time_provider=clock)
    await queue.enqueue(audit.id)
    pipeline = FailingPipeline()

    first = (await queue.run_sweep(pipeline)).data
    assert first.failed == 1 and first.retried == 0

    # Backoff has not elapsed yet; nothing to run and nothing re-queued.
    clock.advance(seconds=30)
    waiting = (await queue.run_sweep(pipeline)).data
    assert waiting.processed == waiting.failed == waiting.retried == 0

    clock.advance(seconds=31)
    requeued = (await queue.run_sweep(pipeline)).data
    assert requeued.retried == 1

    second = (await queue.run_sweep(pipeline)).data
    assert second.failed == 1
    assert second.exhausted == 1
    stored = await audit_lifecycle.get_audit(store, audit.id)
    assert stored.status is AuditStatus.FAILED
    assert "crawl failed" in stored.error_message
    assert pipeline.calls == 2


async def test_completed_audit_closes_job_without_running(store: EntityStore) -> None:
    audit = await _paid_audit(store)
    queue = _queue(store)
    await queue.enqueue(audit.id)
    await audit_lifecycle.transition(store, audit.id, AuditStatus.COMPLETED, overall_score=50.0)
    pipeline = CountingPipeline()

    result = (await queue.run_sweep(pipeline)).data

    assert result.processed == 1
    assert pipeline.audit_ids == []
    assert (await store.call("get_job_by_audit_id", audit.id)).data.status is JobStatus.COMPLETED


async def test_kick_only_enqueues_paid_audits(store: EntityStore) -> None:
    queue = _queue(store)
    unpaid = (
        await store.call("create_audit", domain="unpaid.example.com", email=None, status=AuditStatus.PAYMENT_PENDING)
    ).data
    paid = await _paid_audit(store)

    assert await queue.kick(unpaid) is None
    job = await queue.kick(paid)

    assert job is not None
    assert job.status is JobStatus.PENDING
    assert (await store.call("get_job_by_audit_id", unpaid.id)).data is None


async def test_late_worker_cannot_end_a_reclaimed_job(store: EntityStore) -> None:
    clock = FrozenClock()
    audit = await _paid_audit(store)
    queue = JobQueue(store, settings=Settings(), time_provider=clock)
    job, _ = (await queue.enqueue(audit.id)).data
    first_owner = await queue.claim(job.id, lock_timeout_minutes=5)
    clock.advance(minutes=6)
    second_owner = await queue.claim(job.id, lock_timeout_minutes=5)
    assert first_owner is not None and second_owner is not None

    # The first worker reports its failure after losing the lock.
    assert await queue.execute(first_owner, FailingPipeline()) is False

    stored = (await store.call("get_job", job.id)).data
    assert stored.status is JobStatus.PROCESSING
    assert stored.locked_at == second_owner.locked_at
    assert stored.last_error is None
    assert not (await queue.retry(job.id)).success
    assert await queue.claim(job.id, lock_timeout_minutes=5) is None

    late_complete = await store.call("complete_job", job.id, locked_at=first_owner.locked_at)
    assert late_complete.data[1] is False
    assert late_complete.data[0].status is JobStatus.PROCESSING

    assert await queue.execute(second_owner, CountingPipeline()) is True
    finished = (await store.call("get_job", job.id)).data
    assert finished.status is JobStatus.COMPLETED
    assert finished.locked_at is None


async def test_upper_case_legacy_statuses_are_swept(store: EntityStore) -> None:
    audit = await _paid_audit(store)
    queue = _queue(store)
    job, _ = (await queue.enqueue(audit.id)).data
    await write_raw_status("audit_jobs", job.id, "PENDING")
    await write_raw_status("audits", audit.id, "PAYMENT_COMPLETE")

    discovered = (await queue.discover(limit=5, lock_timeout_minutes=5)).data
    assert [item.id for item in discovered] == [job.id]
    # The legacy row still counts as the audit's active job.
    existing, created = (await queue.enqueue(audit.id)).data
    assert (existing.id, created) == (job.id, False)

    result = await queue.run_sweep(FakeAuditPipeline())

    assert result.data.processed_audits == [audit.id]
    assert (await audit_lifecycle.get_audit(store, audit.id)).status is AuditStatus.COMPLETED
    assert (await store.call("get_job", job.id)).data.status is JobStatus.COMPLETED


async def test_upper_case_failed_job_is_retried(store: EntityStore) -> None:
    audit = await _paid_audit(store)
    queue = _queue(store)
    job, _ = (await queue.enqueue(audit.id)).data
    await write_raw_status("audit_jobs", job.id, "FAILED")

    retried = await queue.retry(job.id)

    assert retried.success
    assert retried.data.status is JobStatus.PENDING
