"""Controllers for session CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_sessions.config import Settings
from agent_sessions.sessions.broadcaster import (
    Notification,
    NotificationKind,
    SessionBroadcaster,
    user_channel,
)
from agent_sessions.sessions.events import EventHandler
from agent_sessions.sessions.executor import CommandExecutor
from agent_sessions.sessions.guard import ExecutionGuard
from agent_sessions.sessions.models import (
    ExecutionMode,
    Interaction,
    Result,
    ResultStatus,
    Scope,
    SessionStatus,
)
from agent_sessions.sessions.orchestrator import SessionOrchestrator
from agent_sessions.sessions.repository import SessionRepository
from agent_sessions.sessions.retry import RetryPolicy
from agent_sessions.sessions.services import CreateSession, SessionService


@dataclass(slots=True)
class SessionCreateCommand:
    """CLI input for session creation."""

    db_path: Path | None
    session_type: str
    execution_mode: str
    state_json: str | None
    state_file: Path | None
    parent_session_id: str | None
    component_id: str | None


@dataclass(slots=True)
class SessionListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class SessionRefCommand:
    """CLI input for commands addressing one session."""

    db_path: Path | None
    session_id: str


@dataclass(slots=True)
class SessionSubmitCommand:
    """CLI input for reporting the result of the open interaction."""

    db_path: Path | None
    session_id: str
    interaction_id: str | None
    result_file: Path | None
    status: str
    exit_code: int | None
    error_message: str | None


@dataclass(slots=True)
class SessionRunCommand:
    """CLI input for executing a session through the execution guard."""

    db_path: Path | None
    session_id: str
    working_dir: Path | None
    timeout_seconds: float | None


@dataclass(slots=True)
class SessionModeCommand:
    db_path: Path | None
    session_id: str
    execution_mode: str


@dataclass(slots=True)
class SessionEventsCommand:
    """CLI input for ingesting progress events from a JSON file."""

    db_path: Path | None
    interaction_id: str
    events_file: Path


@dataclass(slots=True)
class SessionLogCommand:
    db_path: Path | None
    session_id: str
    limit: int


class SessionCliController:
    """Coordinates session lifecycle, execution and inspection CLI operations."""

    def create(self, command: SessionCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        state = _load_state(state_json=command.state_json, state_file=command.state_file)
        with _repository(settings) as repository:
            session = _service(repository, settings).create_session(
                _scope(settings),
                CreateSession(
                    session_type=command.session_type,
                    execution_mode=ExecutionMode(command.execution_mode),
                    state=state,
                    parent_session_id=command.parent_session_id,
                    component_id=command.component_id,
                ),
            )
        return [
            "Session created: "
            f"session_id={session.session_id} type={session.session_type} "
            f"mode={session.execution_mode.value}",
        ]

    def list_sessions(self, command: SessionListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        statuses = (SessionStatus(command.status),) if command.status else ()
        with _repository(settings) as repository:
            sessions = repository.list_sessions(_scope(settings), statuses=statuses, limit=command.limit)

        lines = [f"Sessions: {len(sessions)}"]
        for session in sessions:
            lines.append(
                f"  {session.session_id} type={session.session_type} "
                f"status={session.status.value} mode={session.execution_mode.value} "
                f"interactions={len(session.interactions)} "
                f"parent={session.parent_session_id or '-'}",
            )
        return lines

    def show(self, command: SessionRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        scope = _scope(settings)
        with _repository(settings) as repository:
            session = repository.require_session(scope, command.session_id)
            children = repository.list_child_sessions(scope, command.session_id)

        lines = [
            f"Session: {session.session_id} ({session.display_name})",
            f"Type: {session.session_type}",
            f"Status: {session.status.value}",
            f"Mode: {session.execution_mode.value}",
            f"Parent: {session.parent_session_id or '-'}",
            f"Conversation: {session.external_conversation_id or '-'}",
            f"State: {json.dumps(session.state, sort_keys=True, default=str)}",
            f"Interactions: {len(session.interactions)}",
        ]
        for interaction in session.interactions:
            lines.append(f"  {_interaction_line(interaction)}")
        if children:
            lines.append(f"Children: {len(children)}")
            for child in children:
                lines.append(
                    f"  {child.session_id} type={child.session_type} status={child.status.value}",
                )
        return lines

    def next_command(self, command: SessionRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            _, interaction = _service(repository, settings).next_command(
                _scope(settings),
                command.session_id,
            )

        lines = [
            f"Interaction: {interaction.interaction_id} (#{interaction.sequence})",
            f"Step: {interaction.command.step.value}",
            f"Invocation: {interaction.command.invocation}",
            f"Metadata: {json.dumps(interaction.command.metadata, sort_keys=True, default=str)}",
        ]
        if interaction.command.payload:
            lines.append("Payload:")
            lines.extend(f"  {line}" for line in interaction.command.payload.splitlines())
        return lines

    def submit(self, command: SessionSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        scope = _scope(settings)
        if command.result_file is not None:
            result = Result.from_dict(json.loads(command.result_file.read_text("utf-8")))
        else:
            result = Result(
                status=ResultStatus(command.status),
                exit_code=command.exit_code,
                error_message=command.error_message,
            )
        with _repository(settings) as repository:
            interaction_id = command.interaction_id
            if interaction_id is None:
                open_interaction = repository.require_session(scope, command.session_id).open_interaction
                if open_interaction is None:
                    return [f"Session {command.session_id} has no open interaction."]
                interaction_id = open_interaction.interaction_id
            session = _service(repository, settings).handle_result(
                scope,
                command.session_id,
                interaction_id,
                result,
            )
        completed = session.last_completed_interaction
        lines = [f"Result recorded: interaction={interaction_id} session_status={session.status.value}"]
        if completed is not None and completed.result is not None:
            lines.append(f"Step outcome: {completed.result.status.value}")
            if completed.result.error_message:
                lines.append(f"Error: {completed.result.error_message}")
        return lines

    def run(self, command: SessionRunCommand) -> list[str]:
        """Execute the session through the guard; auto sessions continue until they settle."""

        settings = Settings.from_env(db_path=command.db_path)
        scope = _scope(settings)
        lines: list[str] = []

        def _record(notification: Notification) -> None:
            if notification.kind is NotificationKind.STEP_COMPLETED:
                lines.append(
                    f"  {notification.session_id} {notification.payload.get('step')} "
                    f"-> {notification.payload.get('status')}",
                )

        with _repository(settings) as repository:
            broadcaster = SessionBroadcaster()
            unsubscribe = broadcaster.subscribe(user_channel(scope.user_id), _record)
            executor = CommandExecutor(
                timeout_seconds=settings.execution.command_timeout_seconds,
                working_dir=command.working_dir,
                graceful_shutdown_seconds=settings.execution.graceful_shutdown_seconds,
            )
            guard = ExecutionGuard(
                _service(repository, settings, broadcaster),
                executor,
                retry_policy=RetryPolicy.from_settings(settings.execution),
                async_result_timeout_seconds=settings.execution.async_result_timeout_seconds,
            )
            try:
                handle = guard.run(scope, command.session_id)
                handle.future.result(timeout=command.timeout_seconds)
                settled = guard.wait_idle(command.timeout_seconds)
            except FutureTimeoutError:
                settled = False
            finally:
                guard.shutdown(timeout=settings.execution.graceful_shutdown_seconds)
                unsubscribe()
            session = repository.require_session(scope, command.session_id)

        summary = [f"Steps executed: {len(lines)}", *lines]
        if not settled:
            summary.append(f"Stopped waiting after {command.timeout_seconds}s; work may still be pending.")
        summary.append(f"Session {session.session_id} status={session.status.value}")
        return summary

    def cancel(self, command: SessionRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            session = _service(repository, settings).cancel_session(_scope(settings), command.session_id)
        return [f"Session {session.session_id} status={session.status.value}"]

    def set_mode(self, command: SessionModeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            session = _service(repository, settings).update_execution_mode(
                _scope(settings),
                command.session_id,
                ExecutionMode(command.execution_mode),
            )
        return [f"Session {session.session_id} mode={session.execution_mode.value}"]

    def ingest_events(self, command: SessionEventsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = json.loads(command.events_file.read_text("utf-8"))
        batch = payload if isinstance(payload, list) else [payload]
        with _repository(settings) as repository:
            handler = EventHandler(repository, SessionBroadcaster())
            session = handler.ingest_batch(_scope(settings), command.interaction_id, batch)
        return [
            f"Events recorded: {len(batch)}",
            f"Session {session.session_id} status={session.status.value} "
            f"conversation={session.external_conversation_id or '-'}",
        ]

    def log(self, command: SessionLogCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            events = repository.list_events(_scope(settings), command.session_id, limit=command.limit)
        lines = [f"Events: {len(events)}"]
        for event in events:
            lines.append(
                f"  {event.sent_at.isoformat()} {event.event_type.value} "
                f"interaction={event.interaction_id or '-'} "
                f"{json.dumps(event.data, sort_keys=True, default=str)}",
            )
        return lines


def _interaction_line(interaction: Interaction) -> str:
    result = interaction.result
    outcome = "open" if result is None else result.status.value
    line = f"#{interaction.sequence} {interaction.interaction_id} {interaction.command.step.value} {outcome}"
    if result is not None and result.error_message:
        line += f" error={result.error_message.splitlines()[0]}"
    return line


def _load_state(*, state_json: str | None, state_file: Path | None) -> dict[str, Any]:
    raw = state_file.read_text("utf-8") if state_file is not None else state_json
    if not raw:
        return {}
    state = json.loads(raw)
    if not isinstance(state, dict):
        raise ValueError("Session state must be a JSON object.")
    return state


def _scope(settings: Settings) -> Scope:
    return Scope(
        account_id=settings.scope.account_id,
        project_id=settings.scope.project_id,
        user_id=settings.scope.user_id,
    )


def _service(
    repository: SessionRepository,
    settings: Settings,
    broadcaster: SessionBroadcaster | None = None,
) -> SessionService:
    return SessionService(
        repository=repository,
        orchestrator=SessionOrchestrator(
            repository,
            agent=settings.agent,
            retry_policy=RetryPolicy.from_settings(settings.execution),
        ),
        broadcaster=broadcaster or SessionBroadcaster(),
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[SessionRepository]:
    settings.validate()
    repository = SessionRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
