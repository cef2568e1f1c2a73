from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storescorer.domain.models import RateLimitEvent
from storescorer.domain.records import RateLimitCheck


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def check_rate_limit(
    session: AsyncSession,
    key: str,
    type: str,
    max_requests: int,
    window_minutes: int,
    *,
    now: datetime | None = None,
) -> RateLimitCheck:
    # Count admitted events in the trailing window; limited attempts do not consume budget.
    since = (now or _utc_now()) - timedelta(minutes=window_minutes)
    result = await session.execute(
        select(func.count(RateLimitEvent.id)).where(
            RateLimitEvent.key == key,
            RateLimitEvent.type == type,
            RateLimitEvent.limited.is_(False),
            RateLimitEvent.created_at > since,
        )
    )
    count = int(result.scalar_one() or 0)
    return RateLimitCheck(
        key=key,
        type=type,
        count=count,
        limit=max_requests,
        remaining=max(0, max_requests - count),
        is_limited=count >= max_requests,
        window_minutes=window_minutes,
    )


async def create_rate_limit_event(
    session: AsyncSession,
    key: str,
    type: str,
    *,
    limited: bool = False,
    now: datetime | None = None,
) -> None:
    session.add(
        RateLimitEvent(key=key, type=type, limited=limited, created_at=now or _utc_now())
    )
    await session.flush()


async def cleanup_rate_limit_events(
    session: AsyncSession, *, older_than_hours: int = 24, now: datetime | None = None
) -> int:
    # Storage hygiene only; limiting decisions never look past the window.
    cutoff = (now or _utc_now()) - timedelta(hours=older_than_hours)
    result = await session.execute(delete(RateLimitEvent).where(RateLimitEvent.created_at < cutoff))
    return result.rowcount or 0
