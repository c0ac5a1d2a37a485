"""Error codes surfaced by the session engine."""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Tag carried by every engine error; callers branch on it, not on types."""

    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SESSION_COMPLETE = "session_complete"
    SESSION_NOT_FOUND = "session_not_found"
    INTERACTION_NOT_FOUND = "interaction_not_found"
    INTERACTION_ALREADY_COMPLETE = "interaction_already_complete"
    INVALID_INTERACTION = "invalid_interaction"
    INVALID_STATE = "invalid_state"
    INVALID_EVENT = "invalid_event"
    UNKNOWN_SESSION_TYPE = "unknown_session_type"
    SPAWN_FAILED = "spawn_failed"
    STEP_FAILED = "step_failed"
    EXECUTION_IN_PROGRESS = "execution_in_progress"


_TERMINAL_CODES = frozenset(
    {
        ErrorCode.COMPLETE,
        ErrorCode.FAILED,
        ErrorCode.CANCELLED,
        ErrorCode.SESSION_COMPLETE,
    },
)


class SessionError(RuntimeError):
    """Engine error tagged with an error code."""

    def __init__(self, message: str, *, code: ErrorCode) -> None:
        super().__init__(message)
        self.code = code

    @property
    def terminal(self) -> bool:
        """Session reached a state where no further automatic action happens."""

        return self.code in _TERMINAL_CODES

    @property
    def retryable(self) -> bool:
        """The same call may succeed later without operator action."""

        return self.code is ErrorCode.EXECUTION_IN_PROGRESS
