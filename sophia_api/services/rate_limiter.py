"""Fixed-window request caps keyed by identifier.

The in-memory limiter is process-local: several API instances do not share
counts. ``RedisRateLimiter`` keeps the same contract on a shared counter and
falls back to a local limiter when Redis is unreachable.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sophia_api.logging_config import get_logger

logger = get_logger("rate_limiter")

Clock = Callable[[], float]
SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds

    def retry_after(self, now: float) -> float:
        return max(0.0, self.reset_at - now)


@dataclass
class RateLimitWindow:
    count: int
    reset_at: float


class RateLimiter(ABC):
    """Contract shared by every limiter backend."""

    max_requests: int
    window_seconds: float

    @abstractmethod
    async def check_limit(self, identifier: str) -> RateLimitResult:
        """Count one request for identifier and report whether it is allowed."""

    @abstractmethod
    async def reset(self, identifier: str) -> None:
        """Forget the window of one identifier."""

    def purge_expired(self) -> int:
        """Drop expired windows. Backends with native expiry have nothing to do."""
        return 0


class InMemoryRateLimiter(RateLimiter):
    def __init__(self, max_requests: int, window_seconds: float, clock: Optional[Clock] = None):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock or time.time
        self._windows: dict[str, RateLimitWindow] = {}

    async def check_limit(self, identifier: str) -> RateLimitResult:
        return self.check(identifier)

    def check(self, identifier: str) -> RateLimitResult:
        now = self._clock()
        window = self._windows.get(identifier)

        if window is None or window.reset_at <= now:
            window = RateLimitWindow(count=1, reset_at=now + self.window_seconds)
            self._windows[identifier] = window
            return RateLimitResult(allowed=True, remaining=self.max_requests - 1, reset_at=window.reset_at)

        if window.count >= self.max_requests:
            return RateLimitResult(allowed=False, remaining=0, reset_at=window.reset_at)

        window.count += 1
        return RateLimitResult(
            allowed=True,
            remaining=self.max_requests - window.count,
            reset_at=window.reset_at,
        )

    async def reset(self, identifier: str) -> None:
        self._windows.pop(identifier, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            self._windows.pop(key, None)
        if expired:
            logger.debug("Purged expired rate limit windows", extra={"context": {"count": len(expired)}})
        return len(expired)

    def get_stats(self) -> dict:
        return {
            "tracked_identifiers": len(self._windows),
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
        }


class RedisRateLimiter(RateLimiter):
    """Fixed window on a shared Redis counter (INCR + PEXPIRE)."""

    def __init__(
        self,
        redis_client,
        max_requests: int,
        window_seconds: float,
        key_prefix: str = "sophia:rl",
        fallback: Optional[InMemoryRateLimiter] = None,
        clock: Optional[Clock] = None,
    ):
        self.redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self._clock = clock or time.time
        self.fallback = fallback or InMemoryRateLimiter(max_requests, window_seconds, clock=self._clock)

    def _key(self, identifier: str) -> str:
        return f"{self.key_prefix}:{identifier}"

    async def check_limit(self, identifier: str) -> RateLimitResult:
        key = self._key(identifier)
        window_ms = max(1, int(self.window_seconds * 1000))
        try:
            count = await self.redis.incr(key)
            if count == 1:
                await self.redis.pexpire(key, window_ms)
                ttl_ms = window_ms
            else:
                ttl_ms = await self.redis.pttl(key)
                if ttl_ms is None or ttl_ms < 0:
                    # Key lost its expiry; restart the window.
                    await self.redis.pexpire(key, window_ms)
                    ttl_ms = window_ms
        except Exception as exc:
            logger.warning("Redis rate limit check failed, using local window", extra={"context": {"error": str(exc)}})
            return self.fallback.check(identifier)

        reset_at = self._clock() + ttl_ms / 1000.0
        if count > self.max_requests:
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)
        return RateLimitResult(allowed=True, remaining=self.max_requests - count, reset_at=reset_at)

    async def reset(self, identifier: str) -> None:
        try:
            await self.redis.delete(self._key(identifier))
        except Exception as exc:
            logger.warning("Redis rate limit reset failed", extra={"context": {"error": str(exc)}})
        await self.fallback.reset(identifier)

    def purge_expired(self) -> int:
        return self.fallback.purge_expired()


async def acquire(
    limiter: RateLimiter,
    identifier: str,
    sleep: SleepFunc = asyncio.sleep,
    clock: Clock = time.time,
) -> RateLimitResult:
    """Check the limit; when capped, wait for the window to reset and check once more."""
    result = await limiter.check_limit(identifier)
    if result.allowed:
        return result

    wait_seconds = result.retry_after(clock())
    logger.info(
        "Outbound rate limit reached, waiting for window reset",
        extra={"context": {"identifier": identifier, "wait_seconds": round(wait_seconds, 3)}},
    )
    await sleep(wait_seconds)
    return await limiter.check_limit(identifier)
