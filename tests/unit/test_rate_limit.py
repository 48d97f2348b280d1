import asyncio

import pytest

from supportdesk.core.rate_limit import InMemoryRateLimiter, RateLimitRule


@pytest.mark.asyncio
async def test_rate_limiter_blocks_after_limit() -> None:
    limiter = InMemoryRateLimiter()
    rule = RateLimitRule(limit=2, window_seconds=60)

    assert await limiter.allow("user-a", rule)
    assert await limiter.allow("user-a", rule)
    assert not await limiter.allow("user-a", rule)


@pytest.mark.asyncio
async def test_rate_limiter_keys_are_independent() -> None:
    limiter = InMemoryRateLimiter()
    rule = RateLimitRule(limit=1, window_seconds=60)

    assert await limiter.allow("user-a", rule)
    assert await limiter.allow("user-b", rule)
    assert not await limiter.allow("user-a", rule)


@pytest.mark.asyncio
async def test_rate_limiter_resets_after_window() -> None:
    limiter = InMemoryRateLimiter()
    rule = RateLimitRule(limit=1, window_seconds=1)

    assert await limiter.allow("user-b", rule)
    assert not await limiter.allow("user-b", rule)

    await asyncio.sleep(1.05)
    assert await limiter.allow("user-b", rule)


@pytest.mark.asyncio
async def test_forget_drops_history() -> None:
    limiter = InMemoryRateLimiter()
    rule = RateLimitRule(limit=1, window_seconds=60)

    assert await limiter.allow("user-c", rule)
    assert limiter.tracked_keys() == 1

    await limiter.forget("user-c")
    assert limiter.tracked_keys() == 0
    assert await limiter.allow("user-c", rule)


@pytest.mark.asyncio
async def test_blocked_decision_reports_retry_after() -> None:
    limiter = InMemoryRateLimiter()
    rule = RateLimitRule(limit=1, window_seconds=30)

    await limiter.allow("user-d", rule)
    decision = await limiter.allow("user-d", rule)

    assert not decision.allowed
    assert 0 < decision.retry_after_seconds <= 30
