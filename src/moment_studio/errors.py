"""Error taxonomy shared by the director and the generation orchestrator."""

from __future__ import annotations


class MomentStudioError(RuntimeError):
    """Base class for all domain errors."""


class PlanValidationError(MomentStudioError):
    """Raised when a plan is structurally invalid.

    Fatal to a single director attempt; the retry loop consumes it and only
    re-raises once every attempt has produced an invalid plan.
    """

    def __init__(self, message: str, *, attempts: int | None = None) -> None:
        self.attempts = attempts
        super().__init__(message)


class ServiceError(MomentStudioError):
    """Failure reported by an external collaborator."""

    retryable: bool = False

    @property
    def kind(self) -> str:
        return "transient" if self.retryable else "permanent"


class TransientServiceError(ServiceError):
    """Timeout, rate limit or 5xx-class failure. Safe to retry later."""

    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class PermanentServiceError(ServiceError):
    """Explicit rejection or content-policy failure. Never retried."""


class GenerationCancelled(MomentStudioError):
    """Raised when the cooperative cancellation predicate fires between units."""

    def __init__(self, session_id: str, detail: str | None = None) -> None:
        self.session_id = session_id
        super().__init__(detail or f"Generation cancelled for session {session_id}")


class SessionBusyError(MomentStudioError):
    """Raised when a second task tries to mutate a session that is in flight."""

    def __init__(self, session_id: str, holder: str | None = None) -> None:
        self.session_id = session_id
        self.holder = holder
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"Session {session_id} already has an active task{detail}")


class InvalidStageTransition(MomentStudioError):
    """Raised when a stage change falls outside the documented graph."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move session from '{current}' to '{target}'")
