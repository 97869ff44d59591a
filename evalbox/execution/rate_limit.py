"""Rate limiting and backoff schedules."""

import asyncio
import random
import time
from collections.abc import Callable, Iterable, Iterator


class RateLimiter:
    """Async token bucket refilled at `requests_per_minute / 60` tokens per second.

    The bucket starts full and holds at most `requests_per_minute` tokens, so a
    burst of up to one minute's budget is allowed.
    """

    def __init__(self, requests_per_minute: int, clock: Callable[[], float] = time.monotonic):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.rate = requests_per_minute / 60.0
        self.burst = requests_per_minute
        self._clock = clock
        self._tokens = float(self.burst)
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._updated = now

    async def acquire(self) -> None:
        """Wait until a token is available and take it."""
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                await asyncio.sleep((1.0 - self._tokens) / self.rate)


def exponential_backoff(
    initial: float,
    max_retries: int,
    max_delay: float | None = None,
    jitter: float = 0.0,
    rand: Callable[[], float] = random.random,
) -> Iterator[float]:
    """Yield `max_retries` delays doubling from `initial`.

    With jitter, each delay is reduced by a random share of up to `jitter`.
    """
    for attempt in range(max_retries):
        delay = initial * (2**attempt)
        if max_delay is not None:
            delay = min(delay, max_delay)
        if jitter:
            delay -= delay * jitter * rand()
        yield delay


def backoff_with_callback(
    on_backoff: Callable[[int, float], None], delays: Iterable[float]
) -> Iterator[float]:
    """Call `on_backoff(retry_number, delay)` before yielding each delay."""
    for retry_number, delay in enumerate(delays, start=1):
        on_backoff(retry_number, delay)
        yield delay
