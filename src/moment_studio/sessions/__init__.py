"""Session models and the session store."""
from __future__ import annotations

from .models import (
    Moment,
    MomentInput,
    MomentStatus,
    Plan,
    Session,
    SessionStage,
    SequenceStatus,
)
from .repository import BaseSessionStore, SessionLease, SessionStore

__all__ = [
    "BaseSessionStore",
    "Moment",
    "MomentInput",
    "MomentStatus",
    "Plan",
    "Session",
    "SessionLease",
    "SessionStage",
    "SessionStore",
    "SequenceStatus",
]
