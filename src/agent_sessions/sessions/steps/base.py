"""Step interface and command-building helpers shared by step implementations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from agent_sessions.config import AgentSettings
from agent_sessions.sessions.models import (
    Command,
    ExecutionStrategy,
    Result,
    Scope,
    SessionView,
    StepKind,
    StepOutcome,
)

if TYPE_CHECKING:
    from agent_sessions.sessions.repository import SessionRepository

NOOP_INVOCATION = "noop"
READ_FILE_INVOCATION = "read_file"
SPAWN_INVOCATION = "spawn_sessions"


@dataclass(slots=True)
class StepOptions:
    """Collaborators and caller-supplied values available to every step."""

    repository: SessionRepository
    agent: AgentSettings = field(default_factory=AgentSettings)
    values: dict[str, Any] = field(default_factory=dict)


class Step(Protocol):
    """Protocol implemented by workflow steps."""

    kind: StepKind

    def produce_command(self, scope: Scope, session: SessionView, options: StepOptions) -> Command:
        """Build the command for this step from the current session state."""

    def handle_result(
        self,
        scope: Scope,
        session: SessionView,
        result: Result,
        options: StepOptions,
    ) -> StepOutcome:
        """Interpret a raw result into a state patch and a possibly re-classified result."""


def build_agent_command(
    kind: StepKind,
    prompt: str,
    options: StepOptions,
    *,
    metadata: dict[str, Any] | None = None,
) -> Command:
    """Command that runs the configured agent CLI with ``prompt`` as payload.

    Callers that run the agent themselves pass ``execution_strategy="async"`` in
    the step option values and report the result back later.
    """

    base: dict[str, Any] = {"runner": "agent", "model": options.agent.model}
    strategy = options.values.get("execution_strategy")
    if strategy:
        base["execution_strategy"] = ExecutionStrategy(strategy).value
    return Command(
        step=kind,
        invocation=options.agent.command_template,
        payload=prompt,
        metadata={**base, **(metadata or {})},
    )


def build_shell_command(kind: StepKind, command_string: str) -> Command:
    """Plain shell command, for example a test run or a git invocation."""

    return Command(step=kind, invocation=command_string, metadata={"runner": "shell"})


def build_builtin_command(
    kind: StepKind,
    invocation: str,
    metadata: dict[str, Any] | None = None,
) -> Command:
    return Command(step=kind, invocation=invocation, metadata={"runner": "builtin", **(metadata or {})})


def output_tail(result: Result, *, limit: int = 2_000) -> str:
    """Last part of captured output, stderr first."""

    text = (result.stderr or "").strip() or (result.stdout or "").strip()
    if len(text) <= limit:
        return text
    return text[-limit:]
