"""Finalize step: publish the work and settle the session's terminal status."""

from __future__ import annotations

import re

from agent_sessions.sessions.models import (
    Command,
    Result,
    ResultStatus,
    Scope,
    SessionStatus,
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

_PR_URL_PATTERN = re.compile(r"https://github\.com/\S+/pull/\d+")


class Finalize:
    kind = StepKind.FINALIZE

    def produce_command(self, scope: Scope, session: SessionView, options: StepOptions) -> Command:
        finalize_command = session.state.get("finalize_command")
        if finalize_command:
            return build_shell_command(self.kind, str(finalize_command))
        return build_builtin_command(self.kind, NOOP_INVOCATION)

    def handle_result(
        self,
        scope: Scope,
        session: SessionView,
        result: Result,
        options: StepOptions,
    ) -> StepOutcome:
        finalized_at = utc_now().isoformat()
        if result.exit_code not in (None, 0) and result.status is not ResultStatus.ERROR:
            result = result.with_status(
                ResultStatus.ERROR,
                f"Finalize command exited with {result.exit_code}: {output_tail(result)}",
            )
        if result.status is ResultStatus.ERROR:
            return StepOutcome(
                result=result,
                state_patch={"finalized_at": finalized_at},
                status=SessionStatus.FAILED,
            )
        return StepOutcome(
            result=result,
            state_patch={"finalized_at": finalized_at, "pr_url": extract_pr_url(result.stdout)},
            status=SessionStatus.COMPLETE,
        )


def extract_pr_url(stdout: str | None) -> str | None:
    if not stdout:
        return None
    match = _PR_URL_PATTERN.search(stdout)
    return match.group(0) if match else None
