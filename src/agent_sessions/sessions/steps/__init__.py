"""Step implementations referenced by workflow definitions."""

from agent_sessions.sessions.steps.base import Step, StepOptions
from agent_sessions.sessions.steps.checks import RunChecks
from agent_sessions.sessions.steps.finalize import Finalize
from agent_sessions.sessions.steps.generate import (
    ExecuteReview,
    GenerateImplementation,
    GenerateSpec,
    GenerateTests,
)
from agent_sessions.sessions.steps.initialize import Initialize
from agent_sessions.sessions.steps.revise import ReviseImplementation, ReviseSpec
from agent_sessions.sessions.steps.spawn import SpawnChildSessions, SpawnReviewSession
from agent_sessions.sessions.steps.validate import ValidateSpec

__all__ = [
    "ExecuteReview",
    "Finalize",
    "GenerateImplementation",
    "GenerateSpec",
    "GenerateTests",
    "Initialize",
    "ReviseImplementation",
    "ReviseSpec",
    "RunChecks",
    "SpawnChildSessions",
    "SpawnReviewSession",
    "Step",
    "StepOptions",
    "ValidateSpec",
]
