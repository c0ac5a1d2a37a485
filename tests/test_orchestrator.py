from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_sessions.config import AgentSettings
from agent_sessions.sessions.errors import ErrorCode, SessionError
from agent_sessions.sessions.models import (
    ExecutionMode,
    ExecutionStrategy,
    Result,
    ResultStatus,
    Scope,
    SessionCreate,
    SessionStatus,
    SessionView,
    StepKind,
)
from agent_sessions.sessions.orchestrator import SessionOrchestrator
from agent_sessions.sessions.repository import SessionRepository
from agent_sessions.sessions.retry import RetryPolicy
from agent_sessions.sessions.workflows import BASIC, COMPONENT_SPEC, CONTEXT_COMPONENTS_DESIGN

pytestmark = [
    allure.epic("Sessions"),
    allure.feature("Orchestration"),
]

OK = Result(status=ResultStatus.OK, exit_code=0)


def _advance(
    orchestrator: SessionOrchestrator,
    scope: Scope,
    session_id: str,
    result: Result = OK,
) -> SessionView:
    _, interaction = orchestrator.next_command(scope, session_id)
    return orchestrator.handle_result(scope, session_id, interaction.interaction_id, result)


def _create(orchestrator: SessionOrchestrator, scope: Scope, session_type: str = BASIC, **state) -> str:
    payload = SessionCreate(session_type=session_type, state=dict(state))
    return orchestrator.repository.create_session(scope, payload).session_id


def test_next_command_is_idempotent_while_interaction_is_open(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    sid = _create(orchestrator, scope)

    _, first = orchestrator.next_command(scope, sid)
    session, second = orchestrator.next_command(scope, sid)

    assert first.interaction_id == second.interaction_id
    assert first.command.step is StepKind.INITIALIZE
    assert first.command.invocation == "noop"
    assert first.command.metadata["execution_mode"] == "manual"
    assert len(session.interactions) == 1


def test_session_resumes_from_storage_with_a_fresh_orchestrator(
    orchestrator: SessionOrchestrator,
    scope: Scope,
    db_path: Path,
) -> None:
    sid = _create(orchestrator, scope)
    _advance(orchestrator, scope, sid)
    _, pending = orchestrator.next_command(scope, sid)

    restarted_repository = SessionRepository(db_path)
    try:
        restarted = SessionOrchestrator(restarted_repository, agent=orchestrator.agent)
        _, resumed = restarted.next_command(scope, sid)
        assert resumed.interaction_id == pending.interaction_id
        assert resumed.command.step is StepKind.GENERATE_SPEC

        updated = restarted.handle_result(scope, sid, resumed.interaction_id, OK)
        assert "generate_spec_at" in updated.state
    finally:
        restarted_repository.close()


def test_handle_result_rejects_unknown_and_completed_interactions(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    sid = _create(orchestrator, scope)
    _, interaction = orchestrator.next_command(scope, sid)

    with pytest.raises(SessionError) as missing:
        orchestrator.handle_result(scope, sid, "no-such-interaction", OK)
    assert missing.value.code is ErrorCode.INTERACTION_NOT_FOUND

    orchestrator.handle_result(scope, sid, interaction.interaction_id, OK)
    with pytest.raises(SessionError) as repeated:
        orchestrator.handle_result(scope, sid, interaction.interaction_id, OK)
    assert repeated.value.code is ErrorCode.INTERACTION_ALREADY_COMPLETE


def test_interaction_of_another_session_is_not_found(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    first = _create(orchestrator, scope)
    second = _create(orchestrator, scope)
    _, interaction = orchestrator.next_command(scope, first)

    with pytest.raises(SessionError) as error:
        orchestrator.handle_result(scope, second, interaction.interaction_id, OK)

    assert error.value.code is ErrorCode.INTERACTION_NOT_FOUND


def test_terminal_sessions_refuse_new_commands(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    sid = _create(orchestrator, scope)
    orchestrator.repository.update_status(scope, sid, SessionStatus.CANCELLED)

    with pytest.raises(SessionError) as error:
        orchestrator.next_command(scope, sid)

    assert error.value.code is ErrorCode.CANCELLED
    assert error.value.terminal is True


def test_session_completed_without_finalize_reports_its_status(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    sid = _create(orchestrator, scope)
    orchestrator.repository.update_status(scope, sid, SessionStatus.COMPLETE)

    with pytest.raises(SessionError) as error:
        orchestrator.next_command(scope, sid)

    assert error.value.code is ErrorCode.COMPLETE
    assert error.value.terminal is True


def test_generate_command_carries_prompt_and_agent_settings(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    sid = _create(
        orchestrator,
        scope,
        name="billing",
        document_path="docs/billing.md",
        required_sections=["Purpose", "Interfaces"],
    )
    _advance(orchestrator, scope, sid)

    _, interaction = orchestrator.next_command(
        scope,
        sid,
        values={"execution_strategy": "async"},
    )

    command = interaction.command
    assert command.step is StepKind.GENERATE_SPEC
    assert command.invocation == orchestrator.agent.command_template
    assert command.metadata["runner"] == "agent"
    assert command.metadata["model"] == "test-model"
    assert command.execution_strategy is ExecutionStrategy.ASYNC
    assert command.payload is not None
    assert "Write a specification for billing." in command.payload
    assert "- Purpose\n- Interfaces" in command.payload
    assert "Write the document to: docs/billing.md" in command.payload


def test_agent_nonzero_exit_is_reclassified_as_error(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    sid = _create(orchestrator, scope)
    _advance(orchestrator, scope, sid)

    updated = _advance(
        orchestrator,
        scope,
        sid,
        Result(status=ResultStatus.OK, exit_code=2, stderr="model unavailable"),
    )

    last = updated.last_completed_interaction
    assert last is not None and last.result is not None
    assert last.result.status is ResultStatus.ERROR
    assert last.result.error_message == "Agent exited with 2: model unavailable"
    _, retry = orchestrator.next_command(scope, sid)
    assert retry.command.step is StepKind.GENERATE_SPEC


def test_failed_validation_feeds_a_revision_prompt(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    sid = _create(
        orchestrator,
        scope,
        session_type=COMPONENT_SPEC,
        document_path="spec.md",
        required_sections=["Purpose", "Scope"],
    )
    _advance(orchestrator, scope, sid)
    _advance(orchestrator, scope, sid)
    _advance(
        orchestrator,
        scope,
        sid,
        Result(status=ResultStatus.OK, data={"content": "# Doc\n\n## Purpose\n\nText.\n"}),
    )

    _, revise = orchestrator.next_command(scope, sid)
    assert revise.command.step is StepKind.REVISE_SPEC
    assert revise.command.payload is not None
    assert "The document at spec.md did not pass the validate_spec step." in revise.command.payload
    assert "Missing required section: Scope" in revise.command.payload

    updated = orchestrator.handle_result(scope, sid, revise.interaction_id, OK)
    assert updated.state["revision_count"] == 1
    assert updated.state["last_revision_error"] == (
        "Document validation failed:\n- Missing required section: Scope"
    )
    _, validate = orchestrator.next_command(scope, sid)
    assert validate.command.step is StepKind.VALIDATE_SPEC
    assert validate.command.metadata["path"] == "spec.md"


def test_retry_cap_fails_the_session(scope: Scope, repository: SessionRepository) -> None:
    orchestrator = SessionOrchestrator(
        repository,
        agent=AgentSettings(command_template="agent {prompt_file}"),
        retry_policy=RetryPolicy(max_validation_attempts=2),
    )
    sid = _create(orchestrator, scope, required_sections=["Purpose"])
    setup_failure = Result(status=ResultStatus.ERROR, error_message="setup failed")
    for _ in range(3):
        _advance(orchestrator, scope, sid, setup_failure)
    _advance(orchestrator, scope, sid)
    _advance(orchestrator, scope, sid)
    incomplete = Result(status=ResultStatus.OK, data={"content": "# Doc\n"})
    _advance(orchestrator, scope, sid, incomplete)
    _advance(orchestrator, scope, sid, incomplete)

    with pytest.raises(SessionError) as error:
        orchestrator.next_command(scope, sid)

    assert error.value.code is ErrorCode.FAILED
    assert repository.require_session(scope, sid).status is SessionStatus.FAILED


def test_update_execution_mode_regenerates_pending_command(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    sid = _create(orchestrator, scope)
    _, pending = orchestrator.next_command(scope, sid)
    assert pending.command.metadata["execution_mode"] == "manual"

    updated = orchestrator.update_execution_mode(scope, sid, ExecutionMode.AUTO)

    assert updated.execution_mode is ExecutionMode.AUTO
    assert updated.open_interaction is not None
    assert updated.open_interaction.interaction_id == pending.interaction_id
    assert updated.open_interaction.command.metadata["execution_mode"] == "auto"


def test_finalize_records_pr_url_and_completes(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    sid = _create(orchestrator, scope, finalize_command="gh pr create --fill")
    _advance(orchestrator, scope, sid)
    _advance(orchestrator, scope, sid)
    _advance(orchestrator, scope, sid, Result(status=ResultStatus.OK, data={"content": "# Doc\n"}))

    _, finalize = orchestrator.next_command(scope, sid)
    assert finalize.command.step is StepKind.FINALIZE
    assert finalize.command.invocation == "gh pr create --fill"
    assert finalize.command.metadata["runner"] == "shell"

    updated = orchestrator.handle_result(
        scope,
        sid,
        finalize.interaction_id,
        Result(
            status=ResultStatus.OK,
            exit_code=0,
            stdout="Created https://github.com/acme/repo/pull/42\n",
        ),
    )

    assert updated.status is SessionStatus.COMPLETE
    assert updated.state["pr_url"] == "https://github.com/acme/repo/pull/42"


def test_finalize_error_fails_the_session(orchestrator: SessionOrchestrator, scope: Scope) -> None:
    sid = _create(orchestrator, scope, finalize_command="false")
    _advance(orchestrator, scope, sid)
    _advance(orchestrator, scope, sid)
    _advance(orchestrator, scope, sid, Result(status=ResultStatus.OK, data={"content": "# Doc\n"}))

    updated = _advance(orchestrator, scope, sid, Result(status=ResultStatus.OK, exit_code=1))

    assert updated.status is SessionStatus.FAILED
    last = updated.last_completed_interaction
    assert last is not None and last.result is not None
    assert last.result.status is ResultStatus.ERROR
    with pytest.raises(SessionError) as error:
        orchestrator.next_command(scope, sid)
    assert error.value.code is ErrorCode.FAILED


def test_parent_session_reissues_initialize_after_a_warning(
    orchestrator: SessionOrchestrator,
    scope: Scope,
) -> None:
    sid = _create(orchestrator, scope, session_type=CONTEXT_COMPONENTS_DESIGN)
    warned = _advance(orchestrator, scope, sid, Result(status=ResultStatus.WARNING, exit_code=0))
    assert warned.status is SessionStatus.ACTIVE

    _, retry = orchestrator.next_command(scope, sid)

    assert retry.command.step is StepKind.INITIALIZE
    assert retry.sequence == 2
