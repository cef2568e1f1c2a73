from __future__ import annotations

import pytest

from storescorer.core.config import Settings
from storescorer.core.errors import RateLimitExceededError
from storescorer.persistence.store import EntityStore
from storescorer.services.rate_limiter import (
    DOMAIN_WINDOW_MINUTES,
    LIMIT_TYPE_DOMAIN,
    LIMIT_TYPE_IP,
    AuditRateLimiter,
    hash_ip,
)
from storescorer.tests.utils.fakes import FrozenClock


def _limiter(store: EntityStore, clock: FrozenClock, **overrides) -> AuditRateLimiter:
    values = {"rate_limit_ip_per_hour": 2, "rate_limit_domain_per_day": 3, "rate_limit_enabled": True}
    values.update(overrides)
    return AuditRateLimiter(store, settings=Settings(**values), time_provider=clock)


async def test_ip_budget_is_enforced_within_window(store: EntityStore) -> None:
    clock = FrozenClock()
    limiter = _limiter(store, clock)

    await limiter.enforce_ip("203.0.113.7")
    await limiter.enforce_ip("203.0.113.7")
    with pytest.raises(RateLimitExceededError) as excinfo:
        await limiter.enforce_ip("203.0.113.7")

    check = excinfo.value.check
    assert check.type == LIMIT_TYPE_IP
    assert check.count == 2
    assert check.remaining == 0
    assert check.key == hash_ip("203.0.113.7")
    # A different caller has its own budget.
    assert (await limiter.check_ip("198.51.100.1")).count == 0


async def test_window_slides_forward(store: EntityStore) -> None:
    clock = FrozenClock()
    limiter = _limiter(store, clock)

    await limiter.enforce_ip("203.0.113.7")
    clock.advance(minutes=30)
    await limiter.enforce_ip("203.0.113.7")
    clock.advance(minutes=31)

    # The first event has aged out of the trailing hour.
    check = await limiter.check_ip("203.0.113.7")
    assert check.count == 1
    assert not check.is_limited


async def test_limited_attempts_do_not_consume_budget(store: EntityStore) -> None:
    clock = FrozenClock()
    limiter = _limiter(store, clock, rate_limit_ip_per_hour=1)

    await limiter.enforce_ip("203.0.113.7")
    for _ in range(3):
        with pytest.raises(RateLimitExceededError):
            await limiter.enforce_ip("203.0.113.7")

    clock.advance(minutes=61)
    check = await limiter.check_ip("203.0.113.7")
    assert check.count == 0
    assert check.remaining == 1


async def test_domain_budget_is_case_insensitive(store: EntityStore) -> None:
    clock = FrozenClock()
    limiter = _limiter(store, clock, rate_limit_domain_per_day=1)

    await limiter.enforce_domain("Shop.Example.com")
    with pytest.raises(RateLimitExceededError) as excinfo:
        await limiter.enforce_domain("shop.example.com")

    assert excinfo.value.check.type == LIMIT_TYPE_DOMAIN
    assert excinfo.value.check.window_minutes == DOMAIN_WINDOW_MINUTES


async def test_checkout_rejection_records_no_admitted_events(store: EntityStore) -> None:
    clock = FrozenClock()
    limiter = _limiter(store, clock, rate_limit_domain_per_day=1)

    await limiter.enforce_checkout("203.0.113.7", "shop.example.com")
    with pytest.raises(RateLimitExceededError):
        await limiter.enforce_checkout("203.0.113.8", "shop.example.com")

    # The domain rejection happened before the second caller's IP event was written.
    assert (await limiter.check_ip("203.0.113.8")).count == 0
    assert (await limiter.check_ip("203.0.113.7")).count == 1


async def test_disabled_limiter_admits_everything(store: EntityStore) -> None:
    clock = FrozenClock()
    limiter = _limiter(store, clock, rate_limit_enabled=False, rate_limit_domain_per_day=1)

    for _ in range(3):
        await limiter.enforce_checkout("203.0.113.7", "shop.example.com")

    assert (await limiter.check_domain("shop.example.com")).count == 0


async def test_cleanup_removes_only_aged_events(store: EntityStore) -> None:
    clock = FrozenClock()
    limiter = _limiter(store, clock, rate_limit_ip_per_hour=100)

    await limiter.enforce_ip("203.0.113.7")
    clock.advance(hours=30)
    await limiter.enforce_ip("203.0.113.7")

    deleted = await limiter.cleanup(24)

    assert deleted == 1
    assert (await limiter.check_ip("203.0.113.7")).count == 1


async def test_domain_boundary_over_a_day(store: EntityStore) -> None:
    clock = FrozenClock()
    limiter = _limiter(store, clock, rate_limit_domain_per_day=3)

    for _ in range(3):
        check = await limiter.enforce_domain("shop.example.com")
        assert not check.is_limited
    with pytest.raises(RateLimitExceededError) as excinfo:
        await limiter.enforce_domain("shop.example.com")
    assert excinfo.value.check.is_limited

    clock.advance(minutes=DOMAIN_WINDOW_MINUTES + 1)
    assert not (await limiter.enforce_domain("shop.example.com")).is_limited
