"""Initialize step: optional setup command before any generation runs."""

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
from agent_sessions.sessions.steps.base import (
    NOOP_INVOCATION,
    StepOptions,
    build_builtin_command,
    build_shell_command,
    output_tail,
)
from agent_sessions.storage.common import utc_now


class Initialize:
    kind = StepKind.INITIALIZE

    def produce_command(self, scope: Scope, session: SessionView, options: StepOptions) -> Command:
        setup_command = session.state.get("setup_command")
        if setup_command:
            return build_shell_command(self.kind, str(setup_command))
        return build_builtin_command(self.kind, NOOP_INVOCATION)

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
                    f"Setup command exited with {result.exit_code}: {output_tail(result)}",
                ),
            )
        if result.status is ResultStatus.ERROR:
            return StepOutcome(result=result)
        return StepOutcome(
            result=result,
            state_patch={"initialized_at": utc_now().isoformat()},
        )
