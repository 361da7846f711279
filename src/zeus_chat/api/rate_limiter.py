"""Rate limiter implementation using a sliding window of request timestamps."""

import asyncio
import time
from typing import Dict, List, Optional

from fastapi import Request
from structlog import get_logger

from ..domain.errors import ChatError

logger = get_logger()


class RateLimitExceeded(ChatError):
    """Raised when a caller exceeds its request budget."""

    error_code = "RATE_LIMIT_EXCEEDED"


class RateLimiter:
    """Per-key sliding window rate limiter."""

    def __init__(self, rate_limit: int = 50, time_window: int = 60):
        self.rate_limit = rate_limit
        self.time_window = time_window  # in seconds
        self.requests: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        logger.info("rate_limiter_initialized", rate_limit=rate_limit, time_window=time_window)

    async def start(self) -> None:
        """Start the periodic cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    def _prune(self, key: str, now: float) -> List[float]:
        cutoff_time = now - self.time_window
        timestamps = [ts for ts in self.requests.get(key, []) if ts > cutoff_time]
        if timestamps:
            self.requests[key] = timestamps
        else:
            self.requests.pop(key, None)
        return timestamps

    async def _periodic_cleanup(self) -> None:
        """Drop keys whose timestamps all fell out of the window."""
        while True:
            await asyncio.sleep(self.time_window)
            async with self._lock:
                now = time.time()
                for key in list(self.requests):
                    self._prune(key, now)

    async def check_rate_limit(self, key: str) -> None:
        """Record a request for ``key`` or raise RateLimitExceeded."""
        now = time.time()
        async with self._lock:
            timestamps = self._prune(key, now)
            if len(timestamps) >= self.rate_limit:
                logger.warning(
                    "rate_limit_exceeded",
                    key=key,
                    current_requests=len(timestamps),
                    rate_limit=self.rate_limit,
                )
                raise RateLimitExceeded(
                    f"Rate limit of {self.rate_limit} requests per {self.time_window} seconds exceeded",
                    details={"retry_after": self.time_window},
                )
            self.requests[key] = [*timestamps, now]
            logger.debug("request_tracked", key=key, current_requests=len(timestamps) + 1)

    async def get_remaining_requests(self, key: str) -> int:
        async with self._lock:
            return max(0, self.rate_limit - len(self._prune(key, time.time())))


def rate_limit_key(request: Request) -> str:
    """Key requests by caller identity when present, else by client address."""
    caller = request.headers.get("x-user-id")
    if not caller:
        caller = request.client.host if request.client else "unknown"
    return f"{caller}:{request.url.path}"


async def rate_limit_middleware(request: Request, rate_limiter: Optional[RateLimiter] = None) -> None:
    if rate_limiter is None:
        return
    await rate_limiter.check_rate_limit(rate_limit_key(request))
