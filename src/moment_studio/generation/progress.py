"""Stage-weighted progress reporting."""

from __future__ import annotations

import math

from ..sessions.models import Session

PLANNING_DONE_PERCENT = 50
GENERATION_DONE_PERCENT = 100


class ProgressTracker:
    """Maps completed units onto ``[start, end]`` and never moves backwards."""

    def __init__(
        self,
        session: Session,
        total_units: int,
        *,
        start: int = PLANNING_DONE_PERCENT,
        end: int = GENERATION_DONE_PERCENT,
    ) -> None:
        self.session = session
        self.total_units = max(total_units, 1)
        self.start = start
        self.end = end
        self.completed = 0

    @property
    def percent(self) -> int:
        span = self.end - self.start
        return self.start + math.floor(min(self.completed, self.total_units) / self.total_units * span)

    def begin(self, message: str) -> None:
        self.session.set_progress(message, self.percent)

    def note(self, message: str) -> None:
        self.session.set_progress(message, self.percent)

    def advance(self, message: str, units: int = 1) -> int:
        self.completed += units
        self.session.set_progress(message, self.percent)
        return self.session.progress.percent
