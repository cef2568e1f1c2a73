from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Callable

from storescorer.core.config import Settings, get_settings
from storescorer.core.errors import RateLimitExceededError, StoreError
from storescorer.domain.records import RateLimitCheck
from storescorer.persistence.store import EntityStore


logger = logging.getLogger(__name__)

LIMIT_TYPE_IP = "ip"
LIMIT_TYPE_DOMAIN = "domain"
IP_WINDOW_MINUTES = 60
DOMAIN_WINDOW_MINUTES = 1440
IP_LIMIT_MESSAGE = f"Too many requests. Please try again in {IP_WINDOW_MINUTES} minutes."
DOMAIN_LIMIT_MESSAGE = "This domain has been audited recently. Try again in 24 hours."


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hash_ip(ip: str) -> str:
    # Unsalted digest keeps raw addresses out of storage; it is not a security boundary.
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()


class AuditRateLimiter:
    """Sliding-window limits for the checkout entry point.

    Admitted attempts are stored as events and counted over a trailing
    window. Check and record are separate store calls, so concurrent
    requests can overshoot a budget by a small margin; this is a soft limit.
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

    async def check(
        self, key: str, type: str, max_requests: int, window_minutes: int
    ) -> RateLimitCheck:
        result = await self._store.call(
            "check_rate_limit", key, type, max_requests, window_minutes, now=self._now()
        )
        if not result.success:
            raise StoreError(result.error or "Rate limit check failed")
        return result.data

    async def record(self, key: str, type: str, *, limited: bool = False) -> None:
        result = await self._store.call(
            "create_rate_limit_event", key, type, limited=limited, now=self._now()
        )
        if not result.success:
            raise StoreError(result.error or "Rate limit event write failed")

    async def _reject(self, check: RateLimitCheck, message: str) -> None:
        # Limited attempts are recorded for observability only.
        await self.record(check.key, check.type, limited=True)
        logger.info(
            "rate_limited type=%s count=%s limit=%s window_minutes=%s",
            check.type,
            check.count,
            check.limit,
            check.window_minutes,
        )
        raise RateLimitExceededError(message, check)

    async def check_ip(self, ip: str) -> RateLimitCheck:
        return await self.check(
            hash_ip(ip), LIMIT_TYPE_IP, self._settings.rate_limit_ip_per_hour, IP_WINDOW_MINUTES
        )

    async def check_domain(self, domain: str) -> RateLimitCheck:
        return await self.check(
            domain.lower(),
            LIMIT_TYPE_DOMAIN,
            self._settings.rate_limit_domain_per_day,
            DOMAIN_WINDOW_MINUTES,
        )

    async def enforce_ip(self, ip: str) -> RateLimitCheck:
        check = await self.check_ip(ip)
        if check.is_limited:
            await self._reject(check, IP_LIMIT_MESSAGE)
        await self.record(check.key, check.type)
        return check

    async def enforce_domain(self, domain: str) -> RateLimitCheck:
        check = await self.check_domain(domain)
        if check.is_limited:
            await self._reject(check, DOMAIN_LIMIT_MESSAGE)
        await self.record(check.key, check.type)
        return check

    async def enforce_checkout(self, ip: str, domain: str) -> None:
        # Both budgets are checked before either admitted event is recorded.
        if not self._settings.rate_limit_enabled:
            return
        ip_check = await self.check_ip(ip)
        if ip_check.is_limited:
            await self._reject(ip_check, IP_LIMIT_MESSAGE)
        domain_check = await self.check_domain(domain)
        if domain_check.is_limited:
            await self._reject(domain_check, DOMAIN_LIMIT_MESSAGE)
        await self.record(ip_check.key, ip_check.type)
        await self.record(domain_check.key, domain_check.type)

    async def cleanup(self, older_than_hours: int | None = None) -> int:
        hours = older_than_hours if older_than_hours is not None else self._settings.rate_limit_retention_hours
        result = await self._store.call(
            "cleanup_rate_limit_events", older_than_hours=hours, now=self._now()
        )
        if not result.success:
            raise StoreError(result.error or "Rate limit cleanup failed")
        deleted = int(result.data or 0)
        logger.info("rate_limit_events_pruned deleted=%s older_than_hours=%s", deleted, hours)
        return deleted
