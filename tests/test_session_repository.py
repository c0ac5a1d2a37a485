from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from agent_sessions.sessions.errors import ErrorCode, SessionError
from agent_sessions.sessions.models import (
    Command,
    EventType,
    ExecutionMode,
    Result,
    ResultStatus,
    Scope,
    SessionCreate,
    SessionEventWrite,
    SessionStatus,
    StepKind,
    StepOutcome,
)
from agent_sessions.sessions.repository import SessionRepository

pytestmark = [
    allure.epic("Sessions"),
    allure.feature("Persistence"),
]


def _noop(step: StepKind = StepKind.INITIALIZE) -> Command:
    return Command(step=step, invocation="noop", metadata={"runner": "builtin"})


def test_create_and_get_session_round_trips_state(repository: SessionRepository, scope: Scope) -> None:
    created = repository.create_session(
        scope,
        SessionCreate(
            session_type="basic",
            execution_mode=ExecutionMode.AUTO,
            state={"document_path": "spec.md", "required_sections": ["Purpose"]},
            component_id="comp-1",
        ),
    )

    loaded = repository.require_session(scope, created.session_id)

    assert loaded.status is SessionStatus.ACTIVE
    assert loaded.execution_mode is ExecutionMode.AUTO
    assert loaded.state == {"document_path": "spec.md", "required_sections": ["Purpose"]}
    assert loaded.user_id == "user-1"
    assert loaded.component_id == "comp-1"
    assert loaded.interactions == []
    assert loaded.display_name == "Basic"


def test_sessions_are_invisible_outside_their_scope(repository: SessionRepository, scope: Scope) -> None:
    created = repository.create_session(scope, SessionCreate(session_type="basic"))
    other = Scope(account_id="acct-2", project_id="proj-1", user_id="user-1")

    assert repository.get_session(other, created.session_id) is None
    with pytest.raises(SessionError) as error:
        repository.require_session(other, created.session_id)
    assert error.value.code is ErrorCode.SESSION_NOT_FOUND

    with pytest.raises(SessionError) as child_error:
        repository.create_session(
            other,
            SessionCreate(session_type="basic", parent_session_id=created.session_id),
        )
    assert child_error.value.code is ErrorCode.SESSION_NOT_FOUND


def test_only_one_open_interaction_per_session(repository: SessionRepository, scope: Scope) -> None:
    session = repository.create_session(scope, SessionCreate(session_type="basic"))
    first = repository.create_interaction(scope, session.session_id, _noop())

    with pytest.raises(SessionError) as error:
        repository.create_interaction(scope, session.session_id, _noop())
    assert error.value.code is ErrorCode.INVALID_STATE

    repository.complete_interaction(
        scope,
        session_id=session.session_id,
        interaction_id=first.interaction_id,
        outcome=StepOutcome(result=Result(status=ResultStatus.OK)),
    )
    second = repository.create_interaction(scope, session.session_id, _noop(StepKind.GENERATE_SPEC))

    assert first.sequence == 1
    assert second.sequence == 2
    loaded = repository.require_session(scope, session.session_id)
    assert [item.sequence for item in loaded.interactions] == [1, 2]
    assert loaded.open_interaction is not None
    assert loaded.open_interaction.interaction_id == second.interaction_id


def test_complete_interaction_merges_patch_and_rejects_second_result(
    repository: SessionRepository,
    scope: Scope,
) -> None:
    session = repository.create_session(
        scope,
        SessionCreate(session_type="basic", state={"keep": 1, "replace": "old"}),
    )
    interaction = repository.create_interaction(scope, session.session_id, _noop(StepKind.FINALIZE))

    updated = repository.complete_interaction(
        scope,
        session_id=session.session_id,
        interaction_id=interaction.interaction_id,
        outcome=StepOutcome(
            result=Result(status=ResultStatus.OK, stdout="done", exit_code=0, duration_ms=5),
            state_patch={"replace": "new", "added": True},
            status=SessionStatus.COMPLETE,
        ),
    )

    assert updated.status is SessionStatus.COMPLETE
    assert updated.state == {"keep": 1, "replace": "new", "added": True}
    completed = updated.interactions[0]
    assert completed.result is not None
    assert completed.result.stdout == "done"
    assert completed.result.duration_ms == 5

    with pytest.raises(SessionError) as error:
        repository.complete_interaction(
            scope,
            session_id=session.session_id,
            interaction_id=interaction.interaction_id,
            outcome=StepOutcome(result=Result(status=ResultStatus.ERROR)),
        )
    assert error.value.code is ErrorCode.INTERACTION_ALREADY_COMPLETE


def test_status_transitions_are_monotonic(repository: SessionRepository, scope: Scope) -> None:
    session = repository.create_session(scope, SessionCreate(session_type="basic"))

    assert repository.update_status(scope, session.session_id, SessionStatus.CANCELLED) is True
    assert repository.update_status(scope, session.session_id, SessionStatus.COMPLETE) is False
    assert repository.update_status(scope, session.session_id, SessionStatus.ACTIVE) is False

    assert repository.require_session(scope, session.session_id).status is SessionStatus.CANCELLED


def test_list_sessions_filters_by_status_and_lists_children(
    repository: SessionRepository,
    scope: Scope,
) -> None:
    parent = repository.create_session(scope, SessionCreate(session_type="context_components_design"))
    child_a = repository.create_session(
        scope,
        SessionCreate(session_type="component_spec", parent_session_id=parent.session_id),
    )
    repository.create_session(
        scope,
        SessionCreate(session_type="component_spec", parent_session_id=parent.session_id),
    )
    repository.update_status(scope, child_a.session_id, SessionStatus.FAILED)

    failed = repository.list_sessions(scope, statuses=(SessionStatus.FAILED,))
    children = repository.list_child_sessions(scope, parent.session_id)

    assert [item.session_id for item in failed] == [child_a.session_id]
    assert len(repository.list_sessions(scope)) == 3
    assert len(children) == 2
    assert {child.parent_session_id for child in children} == {parent.session_id}


def test_record_events_sets_conversation_id_only_once(repository: SessionRepository, scope: Scope) -> None:
    session = repository.create_session(scope, SessionCreate(session_type="basic"))
    interaction = repository.create_interaction(scope, session.session_id, _noop())
    event = SessionEventWrite(
        event_type=EventType.CONVERSATION_STARTED,
        sent_at=datetime(2026, 1, 1, tzinfo=UTC),
        data={"conversation_id": "conv-1"},
    )

    first = repository.record_events(
        scope,
        session_id=session.session_id,
        interaction_id=interaction.interaction_id,
        events=[event],
        conversation_id="conv-1",
    )
    second = repository.record_events(
        scope,
        session_id=session.session_id,
        interaction_id=interaction.interaction_id,
        events=[event],
        conversation_id="conv-2",
    )

    assert first.conversation_id_set is True
    assert second.conversation_id_set is False
    assert repository.require_session(scope, session.session_id).external_conversation_id == "conv-1"
    events = repository.list_events(scope, session.session_id)
    assert [item.event_type for item in events] == [EventType.CONVERSATION_STARTED] * 2
    assert events[0].sent_at == datetime(2026, 1, 1, tzinfo=UTC)
    assert events[0].interaction_id == interaction.interaction_id
