import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass
from time import monotonic


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: float = 0.0

    def __bool__(self) -> bool:
        return self.allowed


class InMemoryRateLimiter:
    """Sliding-window limiter keyed per sender; realtime sends use the user id."""

    def __init__(self) -> None:
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def allow(self, key: str, rule: RateLimitRule) -> RateLimitDecision:
        now = monotonic()
        window_start = now - rule.window_seconds

        async with self._lock:
            events = self._events[key]
            while events and events[0] <= window_start:
                events.popleft()

            if len(events) >= rule.limit:
                retry_after = events[0] + rule.window_seconds - now
                return RateLimitDecision(allowed=False, retry_after_seconds=max(retry_after, 0.0))

            events.append(now)
            return RateLimitDecision(allowed=True)

    async def forget(self, key: str) -> None:
        """Drop a sender's history once their last connection is gone."""
        async with self._lock:
            self._events.pop(key, None)

    def tracked_keys(self) -> int:
        return len(self._events)
