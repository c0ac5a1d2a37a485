"""Domain models for sessions, interactions and their audit trail."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from agent_sessions.storage.common import utc_now


class SessionStatus(str, Enum):
    """Durable session lifecycle states."""

    ACTIVE = "active"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


class ExecutionMode(str, Enum):
    """Whether the guard continues a session on its own after each step."""

    MANUAL = "manual"
    AUTO = "auto"


class ResultStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


class StepKind(str, Enum):
    """Closed set of step implementations a workflow can reference."""

    INITIALIZE = "initialize"
    GENERATE_SPEC = "generate_spec"
    GENERATE_TESTS = "generate_tests"
    GENERATE_IMPLEMENTATION = "generate_implementation"
    VALIDATE_SPEC = "validate_spec"
    REVISE_SPEC = "revise_spec"
    RUN_CHECKS = "run_checks"
    REVISE_IMPLEMENTATION = "revise_implementation"
    SPAWN_CHILD_SESSIONS = "spawn_child_sessions"
    SPAWN_REVIEW_SESSION = "spawn_review_session"
    EXECUTE_REVIEW = "execute_review"
    FINALIZE = "finalize"


class ExecutionStrategy(str, Enum):
    """How the guard obtains a raw result for a command."""

    SYNC = "sync"
    ASYNC = "async"


class EventType(str, Enum):
    """Closed vocabulary of progress events reported during an interaction."""

    CONVERSATION_STARTED = "conversation_started"
    CONVERSATION_MESSAGE_SENT = "conversation_message_sent"
    CONVERSATION_MESSAGE_RECEIVED = "conversation_message_received"
    CONVERSATION_ENDED = "conversation_ended"
    TOOL_CALLED = "tool_called"
    TOOL_RESULT = "tool_result"
    FILE_CREATED = "file_created"
    FILE_MODIFIED = "file_modified"
    FILE_DELETED = "file_deleted"
    COMMAND_STARTED = "command_started"
    COMMAND_OUTPUT = "command_output"
    COMMAND_COMPLETED = "command_completed"
    HOOK_TRIGGERED = "hook_triggered"
    HOOK_COMPLETED = "hook_completed"
    SESSION_STATUS_CHANGED = "session_status_changed"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    ERROR_OCCURRED = "error_occurred"
    NOTIFICATION = "notification"


@dataclass(frozen=True, slots=True)
class Scope:
    """Tenancy scope every engine operation runs under."""

    account_id: str
    project_id: str
    user_id: str


@dataclass(frozen=True, slots=True)
class Command:
    """Immutable description of one unit of external work."""

    step: StepKind
    invocation: str
    metadata: dict[str, Any] = field(default_factory=dict)
    payload: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def execution_strategy(self) -> ExecutionStrategy:
        raw = self.metadata.get("execution_strategy", ExecutionStrategy.SYNC.value)
        return ExecutionStrategy(raw)

    @property
    def child_session_ids(self) -> list[str]:
        value = self.metadata.get("child_session_ids") or []
        return [str(item) for item in value]


@dataclass(frozen=True, slots=True)
class Result:
    """Outcome of executing a command."""

    status: ResultStatus
    data: dict[str, Any] = field(default_factory=dict)
    exit_code: int | None = None
    stdout: str | None = None
    stderr: str | None = None
    error_message: str | None = None
    duration_ms: int | None = None
    completed_at: datetime = field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.OK

    def with_status(self, status: ResultStatus, error_message: str | None = None) -> Result:
        """Copy with re-classified status; reserved for the owning step's result handling."""

        return replace(self, status=status, error_message=error_message)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Result:
        """Build a result from an external JSON report."""

        status = ResultStatus(payload.get("status", ResultStatus.OK.value))
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("Result data must be a JSON object.")
        exit_code = payload.get("exit_code")
        duration_ms = payload.get("duration_ms")
        return cls(
            status=status,
            data=data,
            exit_code=int(exit_code) if exit_code is not None else None,
            stdout=payload.get("stdout"),
            stderr=payload.get("stderr"),
            error_message=payload.get("error_message"),
            duration_ms=int(duration_ms) if duration_ms is not None else None,
        )


@dataclass(slots=True)
class Interaction:
    """One step execution: a command and, once completed, its result."""

    interaction_id: str
    session_id: str
    sequence: int
    command: Command
    result: Result | None
    created_at: datetime
    completed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.result is None


@dataclass(slots=True)
class SessionCreate:
    """Input payload for creating a session."""

    session_type: str
    execution_mode: ExecutionMode = ExecutionMode.MANUAL
    state: dict[str, Any] = field(default_factory=dict)
    parent_session_id: str | None = None
    component_id: str | None = None
    session_id: str | None = None


@dataclass(slots=True)
class SessionView:
    """Readable session snapshot with its ordered interaction history."""

    session_id: str
    session_type: str
    status: SessionStatus
    execution_mode: ExecutionMode
    state: dict[str, Any]
    account_id: str
    project_id: str
    user_id: str
    component_id: str | None
    parent_session_id: str | None
    external_conversation_id: str | None
    created_at: datetime
    updated_at: datetime
    interactions: list[Interaction] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.session_type.replace("_", " ").title()

    @property
    def open_interaction(self) -> Interaction | None:
        for interaction in reversed(self.interactions):
            if interaction.is_open:
                return interaction
        return None

    @property
    def last_completed_interaction(self) -> Interaction | None:
        for interaction in reversed(self.interactions):
            if not interaction.is_open:
                return interaction
        return None

    def last_error_interaction(self) -> Interaction | None:
        """Most recent completed interaction whose result carries an error."""

        for interaction in reversed(self.interactions):
            if interaction.result is not None and interaction.result.error_message:
                return interaction
        return None


@dataclass(slots=True)
class SessionEventWrite:
    """Validated progress event ready for persistence."""

    event_type: EventType
    sent_at: datetime
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SessionEventView:
    """Stored audit-log entry."""

    event_id: int
    session_id: str
    interaction_id: str | None
    event_type: EventType
    sent_at: datetime
    created_at: datetime
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StepOutcome:
    """What a step's result handling asks the engine to commit."""

    result: Result
    state_patch: dict[str, Any] = field(default_factory=dict)
    status: SessionStatus | None = None
