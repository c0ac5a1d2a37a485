"""Use-case services for sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from agent_sessions.sessions.broadcaster import Notification, NotificationKind, SessionBroadcaster
from agent_sessions.sessions.errors import ErrorCode, SessionError
from agent_sessions.sessions.models import (
    ExecutionMode,
    Interaction,
    Result,
    Scope,
    SessionCreate,
    SessionStatus,
    SessionView,
)
from agent_sessions.sessions.orchestrator import SessionOrchestrator
from agent_sessions.sessions.repository import SessionRepository
from agent_sessions.sessions.runtime import InteractionRegistry
from agent_sessions.sessions.workflows import get_workflow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CreateSession:
    """High-level command to start a new session."""

    session_type: str
    execution_mode: ExecutionMode = ExecutionMode.MANUAL
    state: dict[str, Any] = field(default_factory=dict)
    parent_session_id: str | None = None
    component_id: str | None = None


class SessionService:
    """Session lifecycle operations with live notifications."""

    def __init__(
        self,
        *,
        repository: SessionRepository,
        orchestrator: SessionOrchestrator,
        broadcaster: SessionBroadcaster,
        registry: InteractionRegistry | None = None,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator
        self.broadcaster = broadcaster
        self.registry = registry or InteractionRegistry()

    def create_session(self, scope: Scope, command: CreateSession) -> SessionView:
        get_workflow(self.orchestrator.workflows, command.session_type)
        session = self.repository.create_session(
            scope,
            SessionCreate(
                session_type=command.session_type,
                execution_mode=command.execution_mode,
                state=command.state,
                parent_session_id=command.parent_session_id,
                component_id=command.component_id,
            ),
        )
        logger.info("Created %s session %s", session.session_type, session.session_id)
        self._notify(session, NotificationKind.SESSION_CREATED, {"session_type": session.session_type})
        return session

    def get_session(self, scope: Scope, session_id: str) -> SessionView:
        return self.repository.require_session(scope, session_id)

    def list_sessions(
        self,
        scope: Scope,
        *,
        statuses: tuple[SessionStatus, ...] = (),
        limit: int = 50,
    ) -> list[SessionView]:
        return self.repository.list_sessions(scope, statuses=statuses, limit=limit)

    def next_command(
        self,
        scope: Scope,
        session_id: str,
        values: dict[str, Any] | None = None,
    ) -> tuple[SessionView, Interaction]:
        try:
            return self.orchestrator.next_command(scope, session_id, values)
        except SessionError as error:
            if error.code is ErrorCode.FAILED:
                # the retry cap may have just failed the session
                self._notify_status(scope, session_id)
            raise

    def handle_result(
        self,
        scope: Scope,
        session_id: str,
        interaction_id: str,
        result: Result,
        values: dict[str, Any] | None = None,
    ) -> SessionView:
        before = self.repository.require_session(scope, session_id)
        session = self.orchestrator.handle_result(scope, session_id, interaction_id, result, values)
        self.registry.clear(interaction_id)
        completed = next(
            (item for item in session.interactions if item.interaction_id == interaction_id),
            None,
        )
        self._notify(
            session,
            NotificationKind.STEP_COMPLETED,
            {
                "interaction_id": interaction_id,
                "step": completed.command.step.value if completed else None,
                "status": (
                    completed.result.status.value if completed and completed.result else None
                ),
            },
        )
        if session.status is not before.status:
            self._notify(session, NotificationKind.SESSION_STATUS_CHANGED, {"status": session.status.value})
        return session

    def cancel_session(self, scope: Scope, session_id: str) -> SessionView:
        """Cancel an active session; terminal sessions are returned unchanged."""

        changed = self.repository.update_status(scope, session_id, SessionStatus.CANCELLED)
        session = self.repository.require_session(scope, session_id)
        if changed:
            logger.info("Cancelled session %s", session_id)
            self._notify(session, NotificationKind.SESSION_STATUS_CHANGED, {"status": session.status.value})
        return session

    def update_execution_mode(
        self,
        scope: Scope,
        session_id: str,
        mode: ExecutionMode,
        values: dict[str, Any] | None = None,
    ) -> SessionView:
        session = self.orchestrator.update_execution_mode(scope, session_id, mode, values)
        self._notify(session, NotificationKind.SESSION_UPDATED, {"execution_mode": mode.value})
        return session

    def _notify_status(self, scope: Scope, session_id: str) -> None:
        session = self.repository.get_session(scope, session_id)
        if session is not None:
            self._notify(session, NotificationKind.SESSION_STATUS_CHANGED, {"status": session.status.value})

    def _notify(self, session: SessionView, kind: NotificationKind, payload: dict[str, Any]) -> None:
        self.broadcaster.broadcast(session, Notification(kind, session.session_id, payload))
