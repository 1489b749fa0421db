"""Retry policy, feedback accumulation and timeout helpers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from .config import settings
from .errors import TransientServiceError
from .instrumentation import TelemetryEvent, emit_event, get_logger

logger = get_logger()

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]

FEEDBACK_HEADING = "## Quality Feedback (fix these issues from your previous attempt)"


@dataclass(slots=True)
class RetryPolicy:
    """Bounded attempts with exponential backoff."""

    max_attempts: int = 3
    backoff_base: float = 10.0
    backoff_factor: float = 2.0
    max_backoff: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.backoff_base * (self.backoff_factor ** max(attempt - 1, 0))
        if self.max_backoff is not None:
            delay = min(delay, self.max_backoff)
        return delay

    def attempts(self) -> range:
        return range(1, self.max_attempts + 1)

    @classmethod
    def transient_default(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry.transient_attempts,
            backoff_base=settings.retry.backoff_base_seconds,
            backoff_factor=settings.retry.backoff_factor,
            max_backoff=settings.retry.max_backoff_seconds,
        )

    @classmethod
    def director_default(cls) -> "RetryPolicy":
        # Planner retries are driven by QC feedback, not by waiting.
        return cls(max_attempts=settings.director.max_attempts, backoff_base=0.0)


@dataclass(slots=True)
class FeedbackEntry:
    attempt: int
    label: str
    feedback: str


@dataclass(slots=True)
class FeedbackAccumulator:
    """Collects labeled feedback across attempts without discarding earlier entries."""

    entries: list[FeedbackEntry] = field(default_factory=list)

    def add(self, attempt: int, label: str, feedback: str) -> None:
        self.entries.append(FeedbackEntry(attempt=attempt, label=label, feedback=feedback.strip()))

    def __bool__(self) -> bool:
        return bool(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def render(self) -> str:
        if not self.entries:
            return ""
        lines = [f"[QC FEEDBACK - {entry.label}]: {entry.feedback}" for entry in self.entries]
        return FEEDBACK_HEADING + "\n" + "\n".join(lines)

    def augment(self, direction: str | None) -> str:
        """Append the rendered guidance to a planning direction."""
        base = direction or ""
        guidance = self.render()
        if not guidance:
            return base
        return f"{base}\n\n{guidance}" if base else guidance

    def as_list(self) -> list[dict[str, object]]:
        return [
            {"attempt": entry.attempt, "label": entry.label, "feedback": entry.feedback}
            for entry in self.entries
        ]


async def with_timeout(awaitable: Awaitable[T], seconds: float | None, label: str) -> T:
    """Await with a bound; a timeout becomes a retryable service error."""
    if seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise TransientServiceError(f"{label} timed out after {seconds:g}s") from exc


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    label: str = "call",
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Run ``fn`` retrying only on :class:`TransientServiceError`.

    Permanent failures propagate on the first occurrence. After the last
    attempt the final transient error is re-raised unchanged.
    """
    policy = policy or RetryPolicy.transient_default()
    for attempt in policy.attempts():
        try:
            return await fn()
        except TransientServiceError as exc:
            if attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %s/%s): %s; retrying in %.1fs",
                label,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            emit_event(
                TelemetryEvent(
                    name="transient_retry",
                    attributes={"label": label, "attempt": attempt, "delay": delay, "error": str(exc)},
                )
            )
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
