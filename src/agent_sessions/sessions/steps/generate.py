"""Agent-backed generation steps.

Each step renders a prompt from session state and hands it to the configured
agent CLI. What the agent writes is not inspected here; validating steps read
the produced artifacts back.
"""

from __future__ import annotations

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
from agent_sessions.storage.common import utc_now


class _AgentGenerationStep:
    kind: StepKind

    def produce_command(self, scope: Scope, session: SessionView, options: StepOptions) -> Command:
        return build_agent_command(
            self.kind,
            self.build_prompt(session),
            options,
            metadata={"document_path": session.state.get("document_path")},
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
        return StepOutcome(
            result=result,
            state_patch={f"{self.kind.value}_at": utc_now().isoformat()},
        )

    def build_prompt(self, session: SessionView) -> str:
        raise NotImplementedError


class GenerateSpec(_AgentGenerationStep):
    kind = StepKind.GENERATE_SPEC

    def build_prompt(self, session: SessionView) -> str:
        state = session.state
        sections = state.get("required_sections") or []
        sections_text = "\n".join(f"- {section}" for section in sections) or "- Purpose"
        return (
            f"Write a specification for {_target_name(session)}.\n"
            f"\n"
            f"Description: {state.get('description') or 'No description provided'}\n"
            f"\n"
            f"The document must contain these sections as markdown headings:\n"
            f"{sections_text}\n"
            f"\n"
            f"Write the document to: {state.get('document_path', 'spec.md')}\n"
        )


class GenerateTests(_AgentGenerationStep):
    kind = StepKind.GENERATE_TESTS

    def build_prompt(self, session: SessionView) -> str:
        state = session.state
        return (
            f"Write tests for {_target_name(session)} following its specification "
            f"at {state.get('document_path', 'spec.md')}.\n"
            f"Write the tests to: {state.get('test_path', 'tests/')}\n"
        )


class GenerateImplementation(_AgentGenerationStep):
    kind = StepKind.GENERATE_IMPLEMENTATION

    def build_prompt(self, session: SessionView) -> str:
        state = session.state
        return (
            f"Implement {_target_name(session)} so that the tests in "
            f"{state.get('test_path', 'tests/')} pass.\n"
            f"Specification: {state.get('document_path', 'spec.md')}\n"
            f"Write the implementation to: {state.get('code_path', 'src/')}\n"
        )


class ExecuteReview(_AgentGenerationStep):
    kind = StepKind.EXECUTE_REVIEW

    def build_prompt(self, session: SessionView) -> str:
        state = session.state
        targets = state.get("review_targets") or []
        targets_text = "\n".join(f"- {target}" for target in targets) or "- all generated documents"
        return (
            f"Review the documents generated for {_target_name(session)} for consistency, "
            f"missing dependencies and integration issues.\n"
            f"\n"
            f"Documents to review:\n"
            f"{targets_text}\n"
            f"\n"
            f"Write the review to: {state.get('review_path', 'review.md')}\n"
        )


def _target_name(session: SessionView) -> str:
    return str(session.state.get("name") or session.component_id or session.session_id)
