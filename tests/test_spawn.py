from __future__ import annotations

import allure
import pytest

from agent_sessions.sessions.errors import ErrorCode, SessionError
from agent_sessions.sessions.models import (
    Command,
    ExecutionMode,
    Result,
    ResultStatus,
    Scope,
    SessionCreate,
    SessionStatus,
    StepKind,
    StepOutcome,
)
from agent_sessions.sessions.orchestrator import SessionOrchestrator
from agent_sessions.sessions.repository import SessionRepository
from agent_sessions.sessions.steps.spawn import barrier_error
from agent_sessions.sessions.workflows import (
    BASIC,
    COMPONENT_SPEC,
    CONTEXT_COMPONENTS_DESIGN,
    DESIGN_REVIEW,
)

pytestmark = [
    allure.epic("Sessions"),
    allure.feature("Child Sessions"),
]

SPAWNED = Result(status=ResultStatus.OK)


def _design_session(orchestrator: SessionOrchestrator, scope: Scope, **state) -> str:
    base = {
        "name": "checkout",
        "work_units": [
            "auth",
            {"name": "billing", "component_id": "comp-billing", "state": {"document_path": "billing.md"}},
        ],
        "child_state": {"required_sections": ["Purpose"]},
    }
    base.update(state)
    session = orchestrator.repository.create_session(
        scope,
        SessionCreate(session_type=CONTEXT_COMPONENTS_DESIGN, state=base),
    )
    _, initialize = orchestrator.next_command(scope, session.session_id)
    orchestrator.handle_result(scope, session.session_id, initialize.interaction_id, SPAWNED)
    return session.session_id


def _last_result(orchestrator: SessionOrchestrator, scope: Scope, session_id: str) -> Result:
    session = orchestrator.repository.require_session(scope, session_id)
    last = session.last_completed_interaction
    assert last is not None and last.result is not None
    return last.result


def _fail_with_error(repository: SessionRepository, scope: Scope, session_id: str, message: str) -> None:
    interaction = repository.create_interaction(
        scope,
        session_id,
        Command(step=StepKind.VALIDATE_SPEC, invocation="read_file"),
    )
    repository.complete_interaction(
        scope,
        session_id=session_id,
        interaction_id=interaction.interaction_id,
        outcome=StepOutcome(
            result=Result(status=ResultStatus.ERROR, error_message=message),
            status=SessionStatus.FAILED,
        ),
    )


def test_spawn_creates_one_child_per_work_unit(orchestrator: SessionOrchestrator, scope: Scope) -> None:
    parent_id = _design_session(orchestrator, scope)

    _, spawn = orchestrator.next_command(scope, parent_id)

    assert spawn.command.step is StepKind.SPAWN_CHILD_SESSIONS
    assert spawn.command.invocation == "spawn_sessions"
    assert spawn.command.metadata["session_type"] == COMPONENT_SPEC
    assert spawn.command.metadata["execution_strategy"] == "async"
    children = orchestrator.repository.list_child_sessions(scope, parent_id)
    assert [child.session_id for child in children] == spawn.command.child_session_ids
    assert [child.state["name"] for child in children] == ["auth", "billing"]
    assert {child.execution_mode for child in children} == {ExecutionMode.AUTO}
    assert children[1].component_id == "comp-billing"
    assert children[1].state == {
        "required_sections": ["Purpose"],
        "document_path": "billing.md",
        "name": "billing",
        "parent_session_type": CONTEXT_COMPONENTS_DESIGN,
    }


def test_barrier_polls_until_children_complete(orchestrator: SessionOrchestrator, scope: Scope) -> None:
    repository = orchestrator.repository
    parent_id = _design_session(orchestrator, scope)
    _, spawn = orchestrator.next_command(scope, parent_id)
    auth_id, billing_id = spawn.command.child_session_ids

    orchestrator.handle_result(scope, parent_id, spawn.interaction_id, SPAWNED)
    assert _last_result(orchestrator, scope, parent_id).error_message == (
        "Child sessions still running: auth, billing"
    )

    repository.update_status(scope, auth_id, SessionStatus.COMPLETE)
    _, poll = orchestrator.next_command(scope, parent_id)
    assert poll.command.step is StepKind.SPAWN_CHILD_SESSIONS
    assert poll.command.child_session_ids == [auth_id, billing_id]
    orchestrator.handle_result(scope, parent_id, poll.interaction_id, SPAWNED)
    assert _last_result(orchestrator, scope, parent_id).error_message == (
        "Child sessions still running: billing"
    )

    repository.update_status(scope, billing_id, SessionStatus.COMPLETE)
    _, last_poll = orchestrator.next_command(scope, parent_id)
    updated = orchestrator.handle_result(scope, parent_id, last_poll.interaction_id, SPAWNED)

    assert _last_result(orchestrator, scope, parent_id).status is ResultStatus.OK
    assert updated.state["child_sessions_completed"] == 2
    assert len(repository.list_child_sessions(scope, parent_id)) == 2


def test_failed_child_is_reported_with_its_reason(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    repository = orchestrator.repository
    parent_id = _design_session(orchestrator, scope)
    _, spawn = orchestrator.next_command(scope, parent_id)
    auth_id, billing_id = spawn.command.child_session_ids
    repository.update_status(scope, auth_id, SessionStatus.COMPLETE)
    _fail_with_error(repository, scope, billing_id, "Missing required section: Purpose")

    orchestrator.handle_result(scope, parent_id, spawn.interaction_id, SPAWNED)

    assert _last_result(orchestrator, scope, parent_id).error_message == (
        "Child sessions failed: billing (reason: Missing required section: Purpose)"
    )


def test_barrier_error_classification(repository: SessionRepository, scope: Scope) -> None:
    parent = repository.create_session(scope, SessionCreate(session_type=CONTEXT_COMPONENTS_DESIGN))

    def child(name: str, status: SessionStatus):
        created = repository.create_session(
            scope,
            SessionCreate(
                session_type=COMPONENT_SPEC,
                parent_session_id=parent.session_id,
                state={"name": name},
            ),
        )
        repository.update_status(scope, created.session_id, status)
        return repository.require_session(scope, created.session_id)

    done = child("done", SessionStatus.COMPLETE)
    broken = child("broken", SessionStatus.FAILED)
    dropped = child("dropped", SessionStatus.CANCELLED)
    running = child("running", SessionStatus.ACTIVE)

    assert barrier_error([done]) is None
    assert barrier_error([done, broken, dropped, running]) == "Child sessions still running: running"
    assert barrier_error([done, broken, dropped]) == "Child sessions failed: broken (reason: unknown)"
    assert barrier_error([done, dropped]) == "Child sessions cancelled: dropped"


def test_spawn_without_work_units_fails(orchestrator: SessionOrchestrator, scope: Scope) -> None:
    parent_id = _design_session(orchestrator, scope, work_units=[])

    with pytest.raises(SessionError) as error:
        orchestrator.next_command(scope, parent_id)

    assert error.value.code is ErrorCode.SPAWN_FAILED
    assert orchestrator.repository.list_child_sessions(scope, parent_id) == []


def test_children_of_unexpected_type_are_rejected(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    parent_id = _design_session(orchestrator, scope)
    orchestrator.repository.create_session(
        scope,
        SessionCreate(session_type=BASIC, parent_session_id=parent_id),
    )

    with pytest.raises(SessionError) as error:
        orchestrator.next_command(scope, parent_id)

    assert error.value.code is ErrorCode.INVALID_STATE
    assert str(error.value) == f"Invalid child session type: expected {COMPONENT_SPEC}, got {BASIC}"


def test_review_session_is_spawned_once_and_awaited(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    repository = orchestrator.repository
    parent_id = _design_session(orchestrator, scope)
    _, spawn = orchestrator.next_command(scope, parent_id)
    for child_id in spawn.command.child_session_ids:
        repository.update_status(scope, child_id, SessionStatus.COMPLETE)
    orchestrator.handle_result(scope, parent_id, spawn.interaction_id, SPAWNED)

    _, review_spawn = orchestrator.next_command(scope, parent_id)
    assert review_spawn.command.step is StepKind.SPAWN_REVIEW_SESSION
    [review_id] = review_spawn.command.child_session_ids
    review = repository.require_session(scope, review_id)
    assert review.session_type == DESIGN_REVIEW
    assert review.parent_session_id == parent_id
    assert review.state["review_targets"] == ["billing.md"]
    assert review.state["name"] == "checkout review"

    orchestrator.handle_result(scope, parent_id, review_spawn.interaction_id, SPAWNED)
    assert _last_result(orchestrator, scope, parent_id).error_message == "Review session still running"

    _, review_poll = orchestrator.next_command(scope, parent_id)
    assert review_poll.command.child_session_ids == [review_id]
    repository.update_status(scope, review_id, SessionStatus.COMPLETE)
    updated = orchestrator.handle_result(scope, parent_id, review_poll.interaction_id, SPAWNED)
    assert updated.state["review_session_id"] == review_id

    design_reviews = [
        child
        for child in repository.list_child_sessions(scope, parent_id)
        if child.session_type == DESIGN_REVIEW
    ]
    assert len(design_reviews) == 1

    _, finalize = orchestrator.next_command(scope, parent_id)
    assert finalize.command.step is StepKind.FINALIZE
    final = orchestrator.handle_result(scope, parent_id, finalize.interaction_id, SPAWNED)
    assert final.status is SessionStatus.COMPLETE
