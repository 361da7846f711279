"""Test suite for the sliding-window rate limiter."""

import pytest

from zeus_chat.api import rate_limiter as rate_limiter_module
from zeus_chat.api.rate_limiter import RateLimiter, RateLimitExceeded


@pytest.mark.asyncio
async def test_requests_over_the_limit_are_rejected():
    limiter = RateLimiter(rate_limit=3, time_window=60)

    for _ in range(3):
        await limiter.check_rate_limit("user-1:/conversations")
    assert await limiter.get_remaining_requests("user-1:/conversations") == 0

    with pytest.raises(RateLimitExceeded) as exc_info:
        await limiter.check_rate_limit("user-1:/conversations")
    assert exc_info.value.details == {"retry_after": 60}

    # Other keys have their own budget.
    await limiter.check_rate_limit("user-2:/conversations")
    assert await limiter.get_remaining_requests("user-2:/conversations") == 2


@pytest.mark.asyncio
async def test_window_slides(monkeypatch):
    clock = [1000.0]
    monkeypatch.setattr(rate_limiter_module.time, "time", lambda: clock[0])
    limiter = RateLimiter(rate_limit=2, time_window=10)

    await limiter.check_rate_limit("key")
    await limiter.check_rate_limit("key")
    with pytest.raises(RateLimitExceeded):
        await limiter.check_rate_limit("key")

    clock[0] += 11
    await limiter.check_rate_limit("key")
    assert await limiter.get_remaining_requests("key") == 1


@pytest.mark.asyncio
async def test_start_and_stop_cleanup_task():
    limiter = RateLimiter()
    await limiter.start()
    assert limiter._cleanup_task is not None
    await limiter.stop()
    assert limiter._cleanup_task is None
