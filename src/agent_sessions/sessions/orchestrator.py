"""Transition engine: compute the next command and record step results."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from agent_sessions.config import AgentSettings
from agent_sessions.sessions.errors import ErrorCode, SessionError
from agent_sessions.sessions.models import (
    Command,
    ExecutionMode,
    Interaction,
    Result,
    Scope,
    SessionStatus,
    SessionView,
    StepKind,
)
from agent_sessions.sessions.repository import SessionRepository
from agent_sessions.sessions.retry import RetryPolicy
from agent_sessions.sessions.steps import StepOptions
from agent_sessions.sessions.workflows import WorkflowDefinition, default_workflows, get_workflow

logger = logging.getLogger(__name__)


class SessionOrchestrator:
    """Drives sessions through their workflow using persisted state only.

    Every call re-reads the session, so any number of orchestrators (or
    process restarts) can resume a session from storage.
    """

    def __init__(
        self,
        repository: SessionRepository,
        *,
        workflows: dict[str, WorkflowDefinition] | None = None,
        agent: AgentSettings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.repository = repository
        self.workflows = workflows if workflows is not None else default_workflows()
        self.agent = agent or AgentSettings()
        self.retry_policy = retry_policy or RetryPolicy()

    def workflow_for(self, session: SessionView) -> WorkflowDefinition:
        return get_workflow(self.workflows, session.session_type)

    def next_command(
        self,
        scope: Scope,
        session_id: str,
        values: dict[str, Any] | None = None,
    ) -> tuple[SessionView, Interaction]:
        """Return the open interaction, creating it from the workflow when there is none.

        Repeated calls without a result in between return the same interaction.
        """

        session = self.repository.require_session(scope, session_id)
        if session.status is SessionStatus.COMPLETE and self.workflow_for(session).is_complete(session):
            raise SessionError(
                f"Session {session_id} is already complete.",
                code=ErrorCode.SESSION_COMPLETE,
            )
        _ensure_active(session)
        open_interaction = session.open_interaction
        if open_interaction is not None:
            return session, open_interaction

        workflow = self.workflow_for(session)
        next_kind = workflow.next_step(session)
        if self.retry_policy.exceeded(session):
            attempts = self.retry_policy.consecutive_failures(session)
            self.repository.update_status(scope, session_id, SessionStatus.FAILED)
            logger.warning(
                "Session %s failed after %d consecutive unsuccessful attempts",
                session_id,
                attempts,
            )
            raise SessionError(
                f"Session {session_id} exceeded {self.retry_policy.max_validation_attempts} "
                f"attempts without success.",
                code=ErrorCode.FAILED,
            )

        command = self._produce(scope, session, workflow, next_kind, values)
        try:
            interaction = self.repository.create_interaction(scope, session_id, command)
        except SessionError as error:
            if error.code is not ErrorCode.INVALID_STATE:
                raise
            # another caller opened the interaction first
            session = self.repository.require_session(scope, session_id)
            if session.open_interaction is None:
                raise
            return session, session.open_interaction

        logger.info(
            "Session %s: opened interaction %s (#%d, %s)",
            session_id,
            interaction.interaction_id,
            interaction.sequence,
            interaction.command.step.value,
        )
        return self.repository.require_session(scope, session_id), interaction

    def handle_result(
        self,
        scope: Scope,
        session_id: str,
        interaction_id: str,
        result: Result,
        values: dict[str, Any] | None = None,
    ) -> SessionView:
        """Let the owning step interpret ``result`` and commit the outcome atomically."""

        session = self.repository.require_session(scope, session_id)
        interaction = self.repository.get_interaction(scope, interaction_id)
        if interaction is None or interaction.session_id != session_id:
            raise SessionError(
                f"Interaction {interaction_id} not found in session {session_id}.",
                code=ErrorCode.INTERACTION_NOT_FOUND,
            )
        if not interaction.is_open:
            raise SessionError(
                f"Interaction {interaction_id} already has a result.",
                code=ErrorCode.INTERACTION_ALREADY_COMPLETE,
            )

        step = self.workflow_for(session).step(interaction.command.step)
        outcome = step.handle_result(scope, session, result, self._options(values))
        updated = self.repository.complete_interaction(
            scope,
            session_id=session_id,
            interaction_id=interaction_id,
            outcome=outcome,
        )
        logger.info(
            "Session %s: %s finished with %s (session %s)",
            session_id,
            interaction.command.step.value,
            outcome.result.status.value,
            updated.status.value,
        )
        return updated

    def update_execution_mode(
        self,
        scope: Scope,
        session_id: str,
        mode: ExecutionMode,
        values: dict[str, Any] | None = None,
    ) -> SessionView:
        """Switch the mode and regenerate a pending command so it reflects the new mode."""

        session = self.repository.update_execution_mode(scope, session_id, mode)
        open_interaction = session.open_interaction
        if open_interaction is None or session.status.terminal:
            return session
        workflow = self.workflow_for(session)
        command = self._produce(scope, session, workflow, open_interaction.command.step, values)
        self.repository.replace_open_interaction(scope, session_id, command)
        return self.repository.require_session(scope, session_id)

    def _produce(
        self,
        scope: Scope,
        session: SessionView,
        workflow: WorkflowDefinition,
        kind: StepKind,
        values: dict[str, Any] | None,
    ) -> Command:
        command = workflow.step(kind).produce_command(scope, session, self._options(values))
        return replace(
            command,
            metadata={**command.metadata, "execution_mode": session.execution_mode.value},
        )

    def _options(self, values: dict[str, Any] | None) -> StepOptions:
        return StepOptions(repository=self.repository, agent=self.agent, values=dict(values or {}))


def _ensure_active(session: SessionView) -> None:
    if session.status is SessionStatus.ACTIVE:
        return
    raise SessionError(
        f"Session {session.session_id} is {session.status.value}.",
        code=ErrorCode(session.status.value),
    )
