"""Child spawning and barrier steps.

A spawn step creates (or reuses) child sessions and returns a
``spawn_sessions`` command naming them. The execution guard starts each child
and records an ``ok`` raw result right away; the barrier lives in
``handle_result``, which re-reads the children from storage and reports an
``error`` result until every child reached a terminal status. The workflow
routes that error back to the same step, which turns the step into a poll
loop.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from agent_sessions.sessions.errors import ErrorCode, SessionError
from agent_sessions.sessions.models import (
    Command,
    ExecutionMode,
    ExecutionStrategy,
    Result,
    ResultStatus,
    Scope,
    SessionCreate,
    SessionStatus,
    SessionView,
    StepKind,
    StepOutcome,
)
from agent_sessions.sessions.steps.base import SPAWN_INVOCATION, StepOptions, build_builtin_command

logger = logging.getLogger(__name__)


class SpawnChildSessions:
    """Create one child session per work unit listed in ``state["work_units"]``."""

    kind = StepKind.SPAWN_CHILD_SESSIONS

    def __init__(self, child_type: str) -> None:
        self.child_type = child_type

    def produce_command(self, scope: Scope, session: SessionView, options: StepOptions) -> Command:
        children = options.repository.list_child_sessions(scope, session.session_id)
        if children:
            unexpected = [child for child in children if child.session_type != self.child_type]
            if unexpected:
                raise SessionError(
                    f"Invalid child session type: expected {self.child_type}, "
                    f"got {unexpected[0].session_type}",
                    code=ErrorCode.INVALID_STATE,
                )
        else:
            children = self._create_children(scope, session, options)

        return build_builtin_command(
            self.kind,
            SPAWN_INVOCATION,
            {
                "child_session_ids": [child.session_id for child in children],
                "session_type": self.child_type,
                "execution_strategy": ExecutionStrategy.ASYNC.value,
            },
        )

    def handle_result(
        self,
        scope: Scope,
        session: SessionView,
        result: Result,
        options: StepOptions,
    ) -> StepOutcome:
        expected_ids = _open_command_child_ids(session)
        children = [
            child
            for child in options.repository.list_child_sessions(scope, session.session_id)
            if child.session_type == self.child_type
            and (not expected_ids or child.session_id in expected_ids)
        ]
        if not children:
            raise SessionError(
                f"Session {session.session_id} has no child sessions to wait for.",
                code=ErrorCode.INVALID_STATE,
            )
        problem = barrier_error(children)
        if problem is not None:
            return StepOutcome(result=result.with_status(ResultStatus.ERROR, problem))
        return StepOutcome(
            result=result.with_status(ResultStatus.OK),
            state_patch={"child_sessions_completed": len(children)},
        )

    def _create_children(
        self,
        scope: Scope,
        session: SessionView,
        options: StepOptions,
    ) -> list[SessionView]:
        units = [_normalize_unit(unit) for unit in session.state.get("work_units") or []]
        if not units:
            raise SessionError(
                f"No work units found for session {session.session_id}.",
                code=ErrorCode.SPAWN_FAILED,
            )

        inherited = dict(session.state.get("child_state") or {})
        created: list[SessionView] = []
        failed: list[str] = []
        for unit in units:
            payload = SessionCreate(
                session_type=self.child_type,
                execution_mode=ExecutionMode.AUTO,
                parent_session_id=session.session_id,
                component_id=unit["component_id"],
                state={
                    **inherited,
                    **unit["state"],
                    "name": unit["name"],
                    "parent_session_type": session.session_type,
                },
            )
            try:
                created.append(options.repository.create_session(scope, payload))
            except (SessionError, SQLAlchemyError):
                logger.exception("Failed to create child session for work unit %s", unit["name"])
                failed.append(unit["name"])

        if not created:
            raise SessionError("Failed to spawn any child sessions", code=ErrorCode.SPAWN_FAILED)
        if failed:
            logger.warning(
                "Partial session creation failure for %s. Failed work units: %s",
                session.session_id,
                ", ".join(failed),
            )
        logger.info(
            "Spawned %d %s child session(s) for %s",
            len(created),
            self.child_type,
            session.session_id,
        )
        return created


class SpawnReviewSession:
    """Create a single review child and wait for it."""

    kind = StepKind.SPAWN_REVIEW_SESSION

    def __init__(self, review_type: str) -> None:
        self.review_type = review_type

    def produce_command(self, scope: Scope, session: SessionView, options: StepOptions) -> Command:
        children = options.repository.list_child_sessions(scope, session.session_id)
        review = next((child for child in children if child.session_type == self.review_type), None)
        if review is None:
            review = self._create_review(scope, session, children, options)
        return build_builtin_command(
            self.kind,
            SPAWN_INVOCATION,
            {
                "child_session_ids": [review.session_id],
                "session_type": self.review_type,
                "execution_strategy": ExecutionStrategy.ASYNC.value,
            },
        )

    def handle_result(
        self,
        scope: Scope,
        session: SessionView,
        result: Result,
        options: StepOptions,
    ) -> StepOutcome:
        review_ids = _open_command_child_ids(session)
        if not review_ids:
            raise SessionError(
                "Missing child_session_ids in command metadata",
                code=ErrorCode.INVALID_STATE,
            )
        review = options.repository.get_session(scope, review_ids[0])
        if review is None:
            raise SessionError("Review session not found", code=ErrorCode.SESSION_NOT_FOUND)

        if review.status is SessionStatus.COMPLETE:
            return StepOutcome(
                result=result.with_status(ResultStatus.OK),
                state_patch={"review_session_id": review.session_id},
            )
        message = {
            SessionStatus.ACTIVE: "Review session still running",
            SessionStatus.FAILED: "Review session failed",
            SessionStatus.CANCELLED: "Review session cancelled",
        }[review.status]
        return StepOutcome(result=result.with_status(ResultStatus.ERROR, message))

    def _create_review(
        self,
        scope: Scope,
        session: SessionView,
        children: list[SessionView],
        options: StepOptions,
    ) -> SessionView:
        targets = [
            str(child.state["document_path"])
            for child in children
            if child.state.get("document_path")
        ]
        name = session.state.get("name") or session.component_id or session.session_id
        try:
            return options.repository.create_session(
                scope,
                SessionCreate(
                    session_type=self.review_type,
                    execution_mode=ExecutionMode.AUTO,
                    parent_session_id=session.session_id,
                    component_id=session.component_id,
                    state={
                        **dict(session.state.get("child_state") or {}),
                        "name": f"{name} review",
                        "parent_session_type": session.session_type,
                        "review_targets": targets,
                    },
                ),
            )
        except SQLAlchemyError as error:
            logger.exception("Failed to create review session for %s", session.session_id)
            raise SessionError(
                "Failed to create review session",
                code=ErrorCode.SPAWN_FAILED,
            ) from error


def barrier_error(children: list[SessionView]) -> str | None:
    """Describe why the barrier is not satisfied yet, or ``None`` when all children completed."""

    active = [child for child in children if child.status is SessionStatus.ACTIVE]
    if active:
        return "Child sessions still running: " + ", ".join(_child_name(child) for child in active)

    failed = [child for child in children if child.status is SessionStatus.FAILED]
    if failed:
        details = ", ".join(
            f"{_child_name(child)} (reason: {_failure_reason(child)})" for child in failed
        )
        return f"Child sessions failed: {details}"

    cancelled = [child for child in children if child.status is SessionStatus.CANCELLED]
    if cancelled:
        return "Child sessions cancelled: " + ", ".join(_child_name(child) for child in cancelled)
    return None


def _open_command_child_ids(session: SessionView) -> list[str]:
    interaction = session.open_interaction
    if interaction is None:
        return []
    return interaction.command.child_session_ids


def _normalize_unit(unit: Any) -> dict[str, Any]:
    if isinstance(unit, str):
        return {"name": unit, "component_id": None, "state": {}}
    if isinstance(unit, dict) and unit.get("name"):
        state = unit.get("state") or {}
        if not isinstance(state, dict):
            raise SessionError(
                f"Work unit {unit['name']} has a non-object state.",
                code=ErrorCode.SPAWN_FAILED,
            )
        component_id = unit.get("component_id")
        return {
            "name": str(unit["name"]),
            "component_id": str(component_id) if component_id is not None else None,
            "state": state,
        }
    raise SessionError(f"Invalid work unit: {unit!r}", code=ErrorCode.SPAWN_FAILED)


def _child_name(child: SessionView) -> str:
    return str(child.state.get("name") or child.component_id or child.session_id)


def _failure_reason(child: SessionView) -> str:
    failed = child.last_error_interaction()
    if failed is not None and failed.result is not None and failed.result.error_message:
        return failed.result.error_message
    return "unknown"
