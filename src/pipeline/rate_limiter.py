import asyncio
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime


class RateLimiter:
    """Token bucket rate limiter for async HTTP clients."""

    def __init__(self, max_rps: float) -> None:
        self._min_interval = 1.0 / max_rps
        self._last_request = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            now = loop.time()
            wait = self._min_interval - (now - self._last_request)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = loop.time()


class ProviderThrottle(RateLimiter):
    """Rate limiter plus 429 backoff, shared by all workers calling one provider.

    A rate-limited response pushes every later call to this provider back by
    the current backoff delay. Exponential mode doubles the delay on each
    consecutive 429 (capped); fixed mode always waits ``base_delay``.
    A successful call clears the streak; ``reset()`` runs at cycle start.
    """

    def __init__(
        self,
        max_rps: float,
        *,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
        mode: str = "exponential",
    ) -> None:
        super().__init__(max_rps)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._exponential = mode != "fixed"
        self._strikes = 0
        self._blocked_until = 0.0

    @property
    def strikes(self) -> int:
        return self._strikes

    def next_delay(self) -> float:
        if not self._exponential:
            return self._base_delay
        return min(self._base_delay * (2 ** max(self._strikes - 1, 0)), self._max_delay)

    def record_rate_limited(self, retry_after: float | None = None) -> float:
        """Register a 429 and return the delay applied to subsequent calls."""
        self._strikes += 1
        delay = self.next_delay()
        if retry_after:
            delay = min(max(delay, retry_after), self._max_delay)
        now = asyncio.get_running_loop().time()
        self._blocked_until = max(self._blocked_until, now + delay)
        return delay

    def record_success(self) -> None:
        self._strikes = 0

    def reset(self) -> None:
        self._strikes = 0
        self._blocked_until = 0.0

    async def acquire(self) -> None:
        wait = self._blocked_until - asyncio.get_running_loop().time()
        if wait > 0:
            await asyncio.sleep(wait)
        await super().acquire()


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds to wait from a Retry-After header.

    Accepts delta-seconds or an HTTP-date. Unparseable values give None so
    the throttle falls back to its own backoff.
    """
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        seconds = (when - (now or datetime.now(UTC))).total_seconds()
    if seconds != seconds:  # NaN
        return None
    return max(seconds, 0.0)
