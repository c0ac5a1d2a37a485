"""Revision steps: fold the latest failure back into an agent prompt."""

from __future__ import annotations

from agent_sessions.sessions.errors import ErrorCode, SessionError
from agent_sessions.sessions.models import (
    Command,
    Result,
    ResultStatus,
    Scope,
    SessionView,
    StepKind,
    StepOutcome,
)
from agent_sessions.sessions.steps.base import StepOptions, build_agent_command, output_tail


class _ReviseStep:
    kind: StepKind
    subject: str
    path_key: str
    default_path: str

    def produce_command(self, scope: Scope, session: SessionView, options: StepOptions) -> Command:
        failed = session.last_error_interaction()
        if failed is None or failed.result is None:
            raise SessionError(
                f"Nothing to revise in session {session.session_id}: no failed interaction.",
                code=ErrorCode.INVALID_STATE,
            )
        error_text = failed.result.error_message or output_tail(failed.result)
        path = session.state.get(self.path_key, self.default_path)
        prompt = (
            f"The {self.subject} at {path} did not pass the {failed.command.step.value} step.\n"
            f"\n"
            f"Errors:\n"
            f"{error_text}\n"
            f"\n"
            f"Fix the {self.subject} in place so that it passes. Do not change anything else.\n"
        )
        return build_agent_command(
            self.kind,
            prompt,
            options,
            metadata={
                "revises_interaction_id": failed.interaction_id,
                "revision_error": error_text,
            },
        )

    def handle_result(
        self,
        scope: Scope,
        session: SessionView,
        result: Result,
        options: StepOptions,
    ) -> StepOutcome:
        if result.exit_code not in (None, 0):
            return StepOutcome(
                result=result.with_status(
                    ResultStatus.ERROR,
                    f"Agent exited with {result.exit_code}: {output_tail(result)}",
                ),
            )
        if result.status is ResultStatus.ERROR:
            return StepOutcome(result=result)
        revision_error = None
        open_interaction = session.open_interaction
        if open_interaction is not None:
            revision_error = open_interaction.command.metadata.get("revision_error")
        return StepOutcome(
            result=result,
            state_patch={
                "revision_count": int(session.state.get("revision_count", 0)) + 1,
                "last_revision_error": revision_error,
            },
        )


class ReviseSpec(_ReviseStep):
    kind = StepKind.REVISE_SPEC
    subject = "document"
    path_key = "document_path"
    default_path = "spec.md"


class ReviseImplementation(_ReviseStep):
    kind = StepKind.REVISE_IMPLEMENTATION
    subject = "implementation"
    path_key = "code_path"
    default_path = "src/"
