"""
Waiting for eventually-consistent metrics.

Usage metrics appear only after the backend has processed ingested events,
and revenue lags further behind. Strategies here wait with ``asyncio.sleep``
so the wait can be cancelled, and report incomplete data as
``ConsistencyNotYetAvailable`` rather than as an empty result.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import ConsistencyNotYetAvailable, ValidationError
from .metrics import MetricsResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")

Fetch = Callable[[], Awaitable[T]]
Ready = Callable[[T], bool]


def metrics_ready(response: MetricsResponse) -> bool:
    """True once every query in the response has at least one time bucket.

    A bucket holding zero is a final answer; a query with no buckets at all
    has not been aggregated yet.
    """
    if not response.results:
        return False
    return all(not result.is_empty for result in response.results)


class WaitStrategy(ABC):
    """How long to wait before trusting a metrics query."""

    @abstractmethod
    async def wait_for(self, fetch: Fetch, is_ready: Ready, label: str = "metrics"):
        """Return the first ready result of ``fetch`` or raise ConsistencyNotYetAvailable."""


@dataclass(frozen=True)
class FixedDelay(WaitStrategy):
    """Sleep once, then query once."""
    delay: float

    def __post_init__(self):
        if self.delay < 0:
            raise ValidationError("delay must be >= 0")

    async def wait_for(self, fetch: Fetch, is_ready: Ready, label: str = "metrics"):
        if self.delay:
            logger.info("Waiting %.1fs before querying %s", self.delay, label)
            await asyncio.sleep(self.delay)
        result = await fetch()
        if not is_ready(result):
            raise ConsistencyNotYetAvailable(label, self.delay, result)
        return result


@dataclass(frozen=True)
class PollWithTimeout(WaitStrategy):
    """Query repeatedly every ``interval`` seconds until ready or ``timeout`` elapses."""
    interval: float
    timeout: float
    initial_delay: float = 0.0

    def __post_init__(self):
        if self.interval <= 0:
            raise ValidationError("interval must be > 0")
        if self.timeout < 0:
            raise ValidationError("timeout must be >= 0")
        if self.initial_delay < 0:
            raise ValidationError("initial_delay must be >= 0")

    async def wait_for(self, fetch: Fetch, is_ready: Ready, label: str = "metrics"):
        loop = asyncio.get_running_loop()
        started = loop.time()
        if self.initial_delay:
            await asyncio.sleep(self.initial_delay)

        attempt = 0
        while True:
            attempt += 1
            result = await fetch()
            if is_ready(result):
                logger.info("%s available after %d poll(s)", label, attempt)
                return result

            waited = loop.time() - started
            remaining = self.timeout - waited
            if remaining <= 0:
                raise ConsistencyNotYetAvailable(label, waited, result)
            logger.debug("%s not ready (poll %d), retrying in %.1fs", label, attempt, self.interval)
            await asyncio.sleep(min(self.interval, remaining))


def build_strategy(
    strategy: str,
    delay: float = 0.0,
    interval: Optional[float] = None,
    timeout: Optional[float] = None,
) -> WaitStrategy:
    """Create a strategy from its configured name.

    Raises:
        ValidationError: If the name is unknown or poll settings are missing
    """
    if strategy == "fixed":
        return FixedDelay(delay=delay)
    if strategy == "poll":
        if interval is None or timeout is None:
            raise ValidationError("poll strategy needs both 'interval' and 'timeout'")
        return PollWithTimeout(interval=interval, timeout=timeout, initial_delay=delay)
    raise ValidationError(f"strategy must be one of: ['fixed', 'poll'], got {strategy!r}")
