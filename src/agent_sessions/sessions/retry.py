"""Retry cap and backoff for failing step loops."""

from __future__ import annotations

from dataclasses import dataclass

from agent_sessions.config import ExecutionSettings
from agent_sessions.sessions.models import ResultStatus, SessionView, StepKind

_SPAWN_STEPS = frozenset({StepKind.SPAWN_CHILD_SESSIONS, StepKind.SPAWN_REVIEW_SESSION})
_REVISE_STEPS = frozenset({StepKind.REVISE_SPEC, StepKind.REVISE_IMPLEMENTATION})
_CAPPED_STEPS = _REVISE_STEPS | {StepKind.VALIDATE_SPEC, StepKind.RUN_CHECKS}


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Caps validate/revise loops and spaces out automatic continuations.

    Barrier polls are never capped: a parent waits for its children as long as
    they are running.
    """

    max_validation_attempts: int = 10
    base_seconds: float = 0.0
    max_seconds: float = 300.0
    poll_interval_seconds: float = 2.0

    @classmethod
    def from_settings(cls, settings: ExecutionSettings) -> RetryPolicy:
        return cls(
            max_validation_attempts=settings.max_validation_attempts,
            base_seconds=settings.retry_base_seconds,
            max_seconds=settings.retry_max_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
        )

    def consecutive_failures(self, session: SessionView) -> int:
        """Non-ok validate, check and revise completions since the loop was last left.

        Failures of other steps are retried without counting towards the cap.
        """

        return _failure_streak(session, capped_only=True)

    def exceeded(self, session: SessionView) -> bool:
        if self.max_validation_attempts <= 0:
            return False
        return self.consecutive_failures(session) >= self.max_validation_attempts

    def backoff_seconds(self, session: SessionView) -> float:
        """Delay before the next automatic step of ``session``."""

        last = session.last_completed_interaction
        if last is None or last.result is None or last.result.ok:
            return 0.0
        if last.command.step in _SPAWN_STEPS:
            return self.poll_interval_seconds
        failures = _failure_streak(session, capped_only=False)
        if failures <= 0:
            return 0.0
        return min(self.max_seconds, self.base_seconds * (2 ** (failures - 1)))


def _failure_streak(session: SessionView, *, capped_only: bool) -> int:
    failures = 0
    for interaction in reversed(session.interactions):
        result = interaction.result
        if result is None:
            continue
        step = interaction.command.step
        if step in _SPAWN_STEPS:
            break
        if result.status is ResultStatus.OK:
            if step in _REVISE_STEPS:
                # a successful revision only feeds the next validation attempt
                continue
            break
        if capped_only and step not in _CAPPED_STEPS:
            continue
        failures += 1
    return failures
