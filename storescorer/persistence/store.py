from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Mapping, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storescorer.core.errors import RecordNotFoundError, StoreError
from storescorer.domain.models import Audit, AuditJob, Payment
from storescorer.domain.records import AuditJobRecord, AuditRecord, PaymentRecord
from storescorer.persistence.db import get_sessionmaker
from storescorer.persistence.repos import audit_jobs, audits, payments, rate_limits


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failure codes let callers branch without parsing messages.
CODE_NOT_FOUND = "not_found"
CODE_CONFLICT = "conflict"
CODE_INVALID = "invalid"
CODE_UNAVAILABLE = "unavailable"

StoreOperation = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    success: bool
    data: T | None = None
    error: str | None = None
    code: str | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> StoreResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = CODE_UNAVAILABLE) -> StoreResult[T]:
        return cls(success=False, error=error, code=code)


DEFAULT_OPERATIONS: dict[str, StoreOperation] = {
    "create_audit": audits.create_audit,
    "get_audit": audits.get_audit,
    "get_audit_by_share_token": audits.get_audit_by_share_token,
    "transition_audit": audits.transition_audit,
    "update_audit": audits.update_audit,
    "delete_audit": audits.delete_audit,
    "purge_audit": audits.purge_audit,
    "list_audits": audits.list_audits,
    "claim_audits_by_email": audits.claim_audits_by_email,
    "create_payment": payments.create_payment,
    "get_payment_by_stripe_session": payments.get_payment_by_stripe_session,
    "get_payment_for_audit": payments.get_payment_for_audit,
    "complete_payment": payments.complete_payment,
    "create_audit_job": audit_jobs.create_audit_job,
    "get_job": audit_jobs.get_job,
    "get_job_by_audit_id": audit_jobs.get_job_by_audit_id,
    "get_pending_jobs": audit_jobs.get_pending_jobs,
    "lock_job": audit_jobs.lock_job,
    "complete_job": audit_jobs.complete_job,
    "fail_job": audit_jobs.fail_job,
    "retry_job": audit_jobs.retry_job,
    "list_failed_jobs": audit_jobs.list_failed_jobs,
    "check_rate_limit": rate_limits.check_rate_limit,
    "create_rate_limit_event": rate_limits.create_rate_limit_event,
    "cleanup_rate_limit_events": rate_limits.cleanup_rate_limit_events,
}

_RECORD_FACTORIES: dict[type, Callable[[Any], Any]] = {
    Audit: AuditRecord.from_model,
    Payment: PaymentRecord.from_model,
    AuditJob: AuditJobRecord.from_model,
}


def _to_record(value: Any) -> Any:
    # Detach ORM rows into frozen records so nothing outside the store holds a live session object.
    factory = _RECORD_FACTORIES.get(type(value))
    if factory is not None:
        return factory(value)
    if isinstance(value, list):
        return [_to_record(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_to_record(item) for item in value)
    return value


class EntityStore:
    """Uniform ``call(name, *args) -> StoreResult`` access to persisted entities.

    Every call runs in its own session and commits before returning, so each
    operation is one atomic unit at the database. Failures never raise past
    this boundary; they come back as ``StoreResult(success=False)``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        operations: Mapping[str, StoreOperation] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._operations = dict(operations or DEFAULT_OPERATIONS)

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_sessionmaker()

    async def call(self, name: str, *args: Any, **kwargs: Any) -> StoreResult[Any]:
        operation = self._operations.get(name)
        if operation is None:
            return StoreResult.fail(f"Unknown store operation: {name}", CODE_INVALID)
        async with self._sessions()() as session:
            try:
                data = await operation(session, *args, **kwargs)
                await session.commit()
            except RecordNotFoundError as exc:
                await session.rollback()
                return StoreResult.fail(str(exc), CODE_NOT_FOUND)
            except StoreError as exc:
                await session.rollback()
                return StoreResult.fail(str(exc), CODE_INVALID)
            except IntegrityError:
                await session.rollback()
                logger.info("store_call_conflict operation=%s", name)
                return StoreResult.fail(f"{name} conflicts with an existing record", CODE_CONFLICT)
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("store_call_failed operation=%s", name, exc_info=exc)
                return StoreResult.fail(f"{name} failed: {exc.__class__.__name__}")
            return StoreResult.ok(_to_record(data))


_default_store: EntityStore | None = None


def get_store() -> EntityStore:
    # Shared adapter bound to the process-wide session factory.
    global _default_store
    if _default_store is None:
        _default_store = EntityStore()
    return _default_store
