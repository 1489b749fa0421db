"""Session store with snapshot persistence and per-session leases."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import AsyncIterator

from ..errors import SessionBusyError
from ..instrumentation import get_logger
from ..serialization import loads
from ..storage import ArtifactStorage
from .models import MomentInput, Moment, Session, SessionStage, StageTransition

logger = get_logger()


@dataclass(slots=True)
class SessionLease:
    session_id: str
    holder: str
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BaseSessionStore(ABC):
    @abstractmethod
    async def create(self, moments: list[MomentInput]) -> Session:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    async def upsert(self, session: Session) -> Session:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    async def get(self, session_id: str) -> Session:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    async def list_sessions(self, limit: int = 50) -> list[Session]:  # pragma: no cover - interface
        raise NotImplementedError


class SessionStore(BaseSessionStore):
    """In-memory session registry that snapshots every mutation to disk.

    Snapshots are best effort: a failed write is logged and never interrupts
    the task that produced the mutation. A lease per session guarantees a
    single active mutating task; a second claimant gets ``SessionBusyError``.
    """

    def __init__(self, storage: ArtifactStorage | None = None, *, persist: bool = True) -> None:
        self.storage = storage or ArtifactStorage()
        self.persist = persist
        self._sessions: dict[str, Session] = {}
        self._leases: dict[str, SessionLease] = {}
        self._lock = Lock()

    async def create(self, moments: list[MomentInput]) -> Session:
        session = Session(
            id=uuid.uuid4().hex[:12],
            moments=[
                Moment(
                    index=idx,
                    highlight=item.highlight,
                    direction=item.direction,
                    cues=list(item.cues),
                )
                for idx, item in enumerate(moments, start=1)
            ],
        )
        session.stage_history.append(StageTransition(source=None, target=SessionStage.UPLOADED))
        session.set_progress("Session created", 0)
        return await self.upsert(session)

    async def upsert(self, session: Session) -> Session:
        with self._lock:
            self._sessions[session.id] = session
        self.snapshot(session)
        return session

    async def get(self, session_id: str) -> Session:
        return self.lookup(session_id)

    def lookup(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if not session:
            raise KeyError(f"Session {session_id} not found")
        return session

    async def list_sessions(self, limit: int = 50) -> list[Session]:
        sessions = sorted(self._sessions.values(), key=lambda s: s.created_at, reverse=True)
        return sessions[:limit]

    def snapshot(self, session: Session) -> str | None:
        if not self.persist:
            return None
        try:
            return self.storage.save_json(
                self.storage.snapshot_path(session.id),
                session.model_dump(mode="json", by_alias=True),
            )
        except OSError as exc:
            logger.warning("Snapshot for session %s failed: %s", session.id, exc)
            return None

    def load_snapshot(self, session_id: str) -> Session:
        """Rebuild a session from its last persisted snapshot."""
        relative = self.storage.snapshot_path(session_id)
        if not self.storage.exists(relative):
            raise KeyError(f"No snapshot for session {session_id}")
        payload = loads(self.storage.resolve(relative).read_text(encoding="utf-8"))
        return Session.model_validate(payload)

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    def claim(self, session_id: str, holder: str) -> SessionLease:
        """Synchronously take the session's lease or raise ``SessionBusyError``."""
        self.lookup(session_id)
        with self._lock:
            current = self._leases.get(session_id)
            if current is not None:
                raise SessionBusyError(session_id, current.holder)
            lease = SessionLease(session_id=session_id, holder=holder)
            self._leases[session_id] = lease
        logger.debug("Lease on %s claimed by %s", session_id, holder)
        return lease

    def release(self, lease: SessionLease) -> None:
        with self._lock:
            current = self._leases.get(lease.session_id)
            if current is not None and current.token == lease.token:
                del self._leases[lease.session_id]

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._leases

    def active_lease(self, session_id: str) -> SessionLease | None:
        return self._leases.get(session_id)

    @asynccontextmanager
    async def guard(self, session_id: str, holder: str) -> AsyncIterator[SessionLease]:
        lease = self.claim(session_id, holder)
        try:
            yield lease
        finally:
            self.release(lease)


session_store = SessionStore()
