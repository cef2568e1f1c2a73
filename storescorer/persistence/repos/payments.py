from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storescorer.core.errors import RecordNotFoundError, StoreError
from storescorer.domain.models import Payment, status_not_in
from storescorer.domain.status import PaymentStatus


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_payment(
    session: AsyncSession,
    *,
    audit_id: str,
    stripe_session_id: str,
    amount: int,
    currency: str,
    status: PaymentStatus | str = PaymentStatus.PENDING,
    stripe_payment_id: str | None = None,
    paid_at: datetime | None = None,
    now: datetime | None = None,
) -> Payment:
    # Duplicate session ids raise IntegrityError; callers fall back to complete_payment.
    payment = Payment(
        audit_id=audit_id,
        stripe_session_id=stripe_session_id,
        stripe_payment_id=stripe_payment_id,
        amount=amount,
        currency=currency.lower(),
        status=PaymentStatus(status),
        created_at=now or _utc_now(),
        paid_at=paid_at,
    )
    session.add(payment)
    await session.flush()
    return payment


async def get_payment_by_stripe_session(
    session: AsyncSession, stripe_session_id: str
) -> Payment | None:
    result = await session.execute(
        select(Payment).where(Payment.stripe_session_id == stripe_session_id)
    )
    return result.scalar_one_or_none()


async def get_payment_for_audit(session: AsyncSession, audit_id: str) -> Payment | None:
    # Most recent payment wins when a customer restarted checkout.
    result = await session.execute(
        select(Payment)
        .where(Payment.audit_id == audit_id)
        .order_by(Payment.created_at.desc(), Payment.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def complete_payment(
    session: AsyncSession,
    stripe_session_id: str,
    *,
    stripe_payment_id: str | None = None,
    now: datetime | None = None,
) -> tuple[Payment, bool]:
    """Mark a payment completed at most once.

    Returns the payment and whether this call performed the completion. An
    already-completed payment is returned untouched, so the first recorded
    ``stripe_payment_id`` and ``paid_at`` are kept.
    """
    now = now or _utc_now()
    result = await session.execute(
        update(Payment)
        .where(
            Payment.stripe_session_id == stripe_session_id,
            status_not_in(Payment.status, [PaymentStatus.COMPLETED]),
        )
        .values(
            status=PaymentStatus.COMPLETED,
            stripe_payment_id=func.coalesce(Payment.stripe_payment_id, stripe_payment_id),
            paid_at=func.coalesce(Payment.paid_at, now),
        )
        .execution_options(synchronize_session=False)
    )
    payment = await get_payment_by_stripe_session(session, stripe_session_id)
    if payment is None:
        raise RecordNotFoundError("Payment not found")
    await session.refresh(payment)
    return payment, bool(result.rowcount)
