"""
Rate Limiter Module
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional

from .store import CounterStore
from .records import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    """Rate limit configuration"""
    max_attempts: int
    window: timedelta


# login counts failed MFA codes on the admin login endpoint; password_reset is
# there for the identity service, which shares the same counter store
DEFAULT_LIMITS: Dict[str, RateLimit] = {
    "login": RateLimit(max_attempts=5, window=timedelta(minutes=15)),
    "password_reset": RateLimit(max_attempts=3, window=timedelta(hours=1)),
    "admin_access": RateLimit(max_attempts=10, window=timedelta(minutes=5)),
}


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check"""
    allowed: bool
    remaining: int
    reset_time: datetime
    error: Optional[str] = None


class RateLimiter:
    """Fixed-window attempt limiter keyed by action and identifier"""

    def __init__(self, store: CounterStore, limits: Optional[Dict[str, RateLimit]] = None,
                 fail_closed_actions: Iterable[str] = (), timeout: float = 2.0,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self.fail_closed_actions = set(fail_closed_actions)
        self.timeout = timeout
        self.clock = clock

    def _limit(self, action: str) -> RateLimit:
        limit = self.limits.get(action)
        if limit is None:
            raise ValueError(f"Unknown rate limit action: {action}")
        return limit

    @staticmethod
    def key(identifier: str, action: str) -> str:
        return f"{action}:{identifier}"

    def _on_store_error(self, action: str, limit: RateLimit, now: datetime,
                        error: Exception) -> RateLimitResult:
        """Storage is unavailable: admit unless the action is configured to fail closed"""
        fail_closed = action in self.fail_closed_actions
        logger.warning(
            f"Rate limit store unavailable for {action} "
            f"({'denying' if fail_closed else 'allowing'}): {error!r}"
        )
        return RateLimitResult(
            allowed=not fail_closed,
            remaining=0 if fail_closed else limit.max_attempts - 1,
            reset_time=now + limit.window,
            error=f"Rate limit store unavailable: {error}",
        )

    async def check(self, identifier: str, action: str) -> RateLimitResult:
        """Check the current window without consuming an attempt"""
        limit = self._limit(action)
        now = self.clock()

        try:
            record = await asyncio.wait_for(
                self.store.get_counter(self.key(identifier, action)), self.timeout
            )
        except Exception as e:
            return self._on_store_error(action, limit, now, e)

        # Absent or elapsed windows count as zero attempts
        if record is None or now - record.window_start > limit.window:
            attempts, reset_time = 0, now + limit.window
        else:
            attempts, reset_time = record.attempts, record.window_start + limit.window

        if attempts >= limit.max_attempts:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=reset_time,
                error=f"Rate limit exceeded. Try again after {reset_time.isoformat()}",
            )

        return RateLimitResult(
            allowed=True,
            remaining=limit.max_attempts - attempts - 1,
            reset_time=reset_time,
        )

    async def increment(self, identifier: str, action: str) -> Optional[int]:
        """Record a failed or consumed attempt; returns the new count, None on store failure"""
        limit = self._limit(action)
        try:
            record = await asyncio.wait_for(
                self.store.increment(self.key(identifier, action), limit.window, self.clock()),
                self.timeout,
            )
        except Exception as e:
            logger.warning(f"Rate limit increment failed for {action}: {e!r}")
            return None
        return record.attempts

    async def reset(self, identifier: str, action: str):
        """Clear the counter, e.g. after a successful login"""
        self._limit(action)
        try:
            await asyncio.wait_for(
                self.store.delete_counter(self.key(identifier, action)), self.timeout
            )
        except Exception as e:
            logger.warning(f"Rate limit reset failed for {action}: {e!r}")

    async def prune(self) -> int:
        """Drop counters older than the longest window"""
        if not self.limits:
            return 0
        longest = max(limit.window for limit in self.limits.values())
        return await self.store.prune_counters(self.clock() - longest)
