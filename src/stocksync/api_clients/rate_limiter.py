"""Request pacing and retry backoff for the commerce API."""

import asyncio
import random
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional

from ..utils.logging import get_logger


class RequestPacer:
    """Serializes requests and enforces a minimum spacing between them.

    Every call site shares one pacer, so the spacing holds across endpoints.
    The lock is held for the whole request, not only the wait.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """Initialize the pacer.

        Args:
            min_interval: Minimum seconds between the start of two requests
            clock: Monotonic clock
            sleep: Awaitable sleep, injectable for tests
        """
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_started: Optional[float] = None
        self.logger = get_logger(self.__class__.__name__)

    async def _wait_turn(self) -> None:
        if self._last_started is not None:
            wait_time = self._last_started + self.min_interval - self._clock()
            if wait_time > 0:
                self.logger.debug("Pacing request", wait_seconds=round(wait_time, 3))
                await self._sleep(wait_time)
        self._last_started = self._clock()

    @asynccontextmanager
    async def slot(self):
        """Hold the request slot for the duration of the block."""
        async with self._lock:
            await self._wait_turn()
            yield


def compute_backoff(
    attempt: int,
    base: float,
    max_delay: float,
    factor: float = 2.0,
    jitter_pct: float = 0.0
) -> float:
    """Exponential backoff ``base * factor**(attempt-1)`` capped at ``max_delay``."""
    if attempt < 1:
        attempt = 1
    delay = min(base * (factor ** (attempt - 1)), max_delay)
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = random.uniform(delay - jitter_amount, delay + jitter_amount)
    return max(delay, 0.0)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Interpret a Retry-After header given as seconds or as an HTTP date.

    Returns:
        Seconds to wait, or None when the header is absent or unusable
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds >= 0 else None

    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())
