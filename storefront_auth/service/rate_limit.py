from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Protocol, Tuple

from storefront_auth.config import RouteLimit
from storefront_auth.logging import get_logger
from storefront_auth.service.errors import RateLimitedError
from storefront_auth.storage.models import utcnow

logger = get_logger(__name__)


class CounterStore(Protocol):
    async def hit(
        self, key: str, window_seconds: int, limit: int, now: datetime
    ) -> Tuple[bool, int, datetime]: ...

    async def reset(self, key: str) -> None: ...

    async def purge(self, now: datetime) -> int: ...


class InMemoryCounterStore:
    """Process-local fixed windows; state is lost on restart."""

    def __init__(self) -> None:
        self._windows: Dict[str, Tuple[int, datetime]] = {}
        self._lock = threading.Lock()

    async def hit(
        self, key: str, window_seconds: int, limit: int, now: datetime
    ) -> Tuple[bool, int, datetime]:
        with self._lock:
            entry = self._windows.get(key)
            if entry is None or now > entry[1]:
                reset_at = now + timedelta(seconds=window_seconds)
                self._windows[key] = (1, reset_at)
                return True, 1, reset_at
            count, reset_at = entry
            if count >= limit:
                return False, count, reset_at
            self._windows[key] = (count + 1, reset_at)
            return True, count + 1, reset_at

    async def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    async def purge(self, now: datetime) -> int:
        with self._lock:
            stale = [key for key, (_, reset_at) in self._windows.items() if now > reset_at]
            for key in stale:
                self._windows.pop(key, None)
        return len(stale)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    retry_after: int = 0

    def __bool__(self) -> bool:
        return self.allowed


class RateLimiter:
    """Fixed-window limiter keyed by client address and route.

    Advisory and client-scoped; identity-scoped protection is the lockout policy.
    """

    def __init__(
        self,
        counters: CounterStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.counters = counters
        self._clock = clock

    @staticmethod
    def key_for(client_address: str | None, route: str) -> str:
        return f"rate_limit:{route}:{client_address or 'unknown'}"

    async def allow(self, key: str, max_attempts: int, window_minutes: int) -> RateLimitDecision:
        now = self._clock()
        allowed, count, reset_at = await self.counters.hit(
            key, int(window_minutes * 60), max_attempts, now
        )
        if allowed:
            return RateLimitDecision(True, count)
        retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
        return RateLimitDecision(False, count, retry_after)

    async def check(self, client_address: str | None, route: str, limit: RouteLimit) -> None:
        decision = await self.allow(
            self.key_for(client_address, route), limit.max_attempts, limit.window_minutes
        )
        if not decision:
            logger.warning(
                "rate_limited",
                route=route,
                client_address=client_address,
                retry_after=decision.retry_after,
            )
            raise RateLimitedError(decision.retry_after)

    async def purge(self) -> int:
        return await self.counters.purge(self._clock())
