"""Run the project's check command (tests, linters) after code generation."""

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
from agent_sessions.sessions.steps.base import StepOptions, build_shell_command, output_tail
from agent_sessions.storage.common import utc_now


class RunChecks:
    kind = StepKind.RUN_CHECKS

    def produce_command(self, scope: Scope, session: SessionView, options: StepOptions) -> Command:
        check_command = session.state.get("check_command") or options.agent.check_command
        return build_shell_command(self.kind, str(check_command))

    def handle_result(
        self,
        scope: Scope,
        session: SessionView,
        result: Result,
        options: StepOptions,
    ) -> StepOutcome:
        if result.exit_code == 0:
            return StepOutcome(
                result=result.with_status(ResultStatus.OK),
                state_patch={"checks_passed_at": utc_now().isoformat()},
            )
        if result.exit_code is None:
            # externally reported results without an exit code keep their status
            return StepOutcome(result=result)
        return StepOutcome(
            result=result.with_status(
                ResultStatus.ERROR,
                f"Checks failed with exit code {result.exit_code}:\n{output_tail(result)}",
            ),
        )
