"""Fixed-interval gate for external generation calls."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from .config import settings
from .instrumentation import TelemetryEvent, emit_event, get_logger

logger = get_logger()


@dataclass
class ThrottleMetrics:
    """Usage counters for one generation phase."""
    calls: int = 0
    waits: int = 0
    total_wait_seconds: float = 0.0
    last_call_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "waits": self.waits,
            "total_wait_seconds": round(self.total_wait_seconds, 3),
            "last_call_at": self.last_call_at.isoformat() if self.last_call_at else None,
        }


class GenerationThrottle:
    """Enforces a minimum gap between consecutive generation calls.

    The first ``acquire()`` passes immediately. Each later acquire waits until
    ``min_interval`` seconds have elapsed since the previous one. Only real
    external calls acquire; cache hits and reused assets never do.
    """

    def __init__(
        self,
        min_interval: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "generation",
    ) -> None:
        self.min_interval = settings.generation.interval_seconds if min_interval is None else min_interval
        self.name = name
        self.metrics = ThrottleMetrics()
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """Wait for the next slot and return the seconds spent waiting."""
        async with self._lock:
            waited = 0.0
            if self._last is not None:
                remaining = self.min_interval - (self._clock() - self._last)
                if remaining > 0:
                    logger.debug("%s throttle: waiting %.2fs", self.name, remaining)
                    await self._sleep(remaining)
                    waited = remaining
                    self.metrics.waits += 1
                    self.metrics.total_wait_seconds += remaining
                    emit_event(
                        TelemetryEvent(
                            name="rate_limit_wait",
                            attributes={"throttle": self.name, "seconds": round(remaining, 3)},
                        )
                    )
            self._last = self._clock()
            self.metrics.calls += 1
            self.metrics.last_call_at = datetime.now(timezone.utc)
            return waited

    def reset(self) -> None:
        self._last = None
        self.metrics = ThrottleMetrics()
