"""Workflow definitions: ordered steps plus a transition table per session type.

The next step is a pure function of the last completed ``(result status,
step kind)`` pair. Pairs missing from the table are an invalid state rather
than a silent default.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from agent_sessions.sessions.errors import ErrorCode, SessionError
from agent_sessions.sessions.models import ResultStatus, SessionView, StepKind
from agent_sessions.sessions.steps import (
    ExecuteReview,
    Finalize,
    GenerateImplementation,
    GenerateSpec,
    GenerateTests,
    Initialize,
    ReviseImplementation,
    ReviseSpec,
    RunChecks,
    SpawnChildSessions,
    SpawnReviewSession,
    Step,
    ValidateSpec,
)

BASIC = "basic"
CONTEXT_SPEC = "context_spec"
COMPONENT_SPEC = "component_spec"
COMPONENT_CODING = "component_coding"
CONTEXT_COMPONENTS_DESIGN = "context_components_design"
DESIGN_REVIEW = "design_review"

OK = ResultStatus.OK
WARNING = ResultStatus.WARNING
ERROR = ResultStatus.ERROR

TransitionTable = dict[tuple[ResultStatus, StepKind], StepKind]


@dataclass(slots=True)
class WorkflowDefinition:
    """Ordered steps of one session type and the rules that move between them."""

    session_type: str
    steps: tuple[Step, ...]
    transitions: TransitionTable = field(default_factory=dict)

    def ordered_steps(self) -> list[StepKind]:
        return [step.kind for step in self.steps]

    def step(self, kind: StepKind) -> Step:
        for step in self.steps:
            if step.kind is kind:
                return step
        raise SessionError(
            f"Step {kind.value} is not part of the {self.session_type} workflow.",
            code=ErrorCode.INVALID_INTERACTION,
        )

    def is_complete(self, session: SessionView) -> bool:
        last = session.last_completed_interaction
        return (
            last is not None
            and last.result is not None
            and last.command.step is StepKind.FINALIZE
            and last.result.status is ResultStatus.OK
        )

    def next_step(self, session: SessionView) -> StepKind:
        """Pick the step to run after the most recently completed interaction."""

        last = session.last_completed_interaction
        if last is None or last.result is None:
            return self.steps[0].kind

        step_kind = last.command.step
        status = last.result.status
        if step_kind is StepKind.FINALIZE and status is ResultStatus.OK:
            raise SessionError(
                f"Session {session.session_id} is complete.",
                code=ErrorCode.SESSION_COMPLETE,
            )
        if step_kind not in self.ordered_steps():
            raise SessionError(
                f"Interaction from step {step_kind.value} does not belong to the "
                f"{self.session_type} workflow.",
                code=ErrorCode.INVALID_INTERACTION,
            )
        target = self.transitions.get((status, step_kind))
        if target is None:
            raise SessionError(
                f"No transition from {step_kind.value} with status {status.value} "
                f"in the {self.session_type} workflow.",
                code=ErrorCode.INVALID_STATE,
            )
        return target


def linear_transitions(
    kinds: list[StepKind],
    *,
    retry_in_place: tuple[StepKind, ...] = (),
    allow_warning: tuple[StepKind, ...] = (),
    retry_on: tuple[ResultStatus, ...] = (ERROR,),
) -> TransitionTable:
    """``ok`` advances to the following step; ``retry_in_place`` kinds repeat on ``retry_on``.

    Kinds in ``allow_warning`` treat ``warning`` like ``ok``. Other warning pairs are
    left out of the table unless ``retry_on`` names ``warning``.
    """

    table: TransitionTable = {}
    for current, following in zip(kinds, kinds[1:], strict=False):
        table[(OK, current)] = following
        if current in allow_warning:
            table[(WARNING, current)] = following
    for kind in retry_in_place:
        for status in retry_on:
            table[(status, kind)] = kind
    return table


def _basic() -> WorkflowDefinition:
    steps: tuple[Step, ...] = (Initialize(), GenerateSpec(), ValidateSpec(), Finalize())
    kinds = [step.kind for step in steps]
    return WorkflowDefinition(
        session_type=BASIC,
        steps=steps,
        transitions=linear_transitions(
            kinds,
            retry_in_place=tuple(kinds),
            allow_warning=(StepKind.GENERATE_SPEC,),
        ),
    )


def _spec_with_revisions(session_type: str) -> WorkflowDefinition:
    steps: tuple[Step, ...] = (
        Initialize(),
        GenerateSpec(),
        ValidateSpec(),
        ReviseSpec(),
        Finalize(),
    )
    return WorkflowDefinition(
        session_type=session_type,
        steps=steps,
        transitions={
            (OK, StepKind.INITIALIZE): StepKind.GENERATE_SPEC,
            (ERROR, StepKind.INITIALIZE): StepKind.INITIALIZE,
            (OK, StepKind.GENERATE_SPEC): StepKind.VALIDATE_SPEC,
            (WARNING, StepKind.GENERATE_SPEC): StepKind.VALIDATE_SPEC,
            (ERROR, StepKind.GENERATE_SPEC): StepKind.GENERATE_SPEC,
            (OK, StepKind.VALIDATE_SPEC): StepKind.FINALIZE,
            (ERROR, StepKind.VALIDATE_SPEC): StepKind.REVISE_SPEC,
            (WARNING, StepKind.VALIDATE_SPEC): StepKind.REVISE_SPEC,
            (OK, StepKind.REVISE_SPEC): StepKind.VALIDATE_SPEC,
            (WARNING, StepKind.REVISE_SPEC): StepKind.VALIDATE_SPEC,
            (ERROR, StepKind.REVISE_SPEC): StepKind.REVISE_SPEC,
            (ERROR, StepKind.FINALIZE): StepKind.FINALIZE,
        },
    )


def _component_coding() -> WorkflowDefinition:
    steps: tuple[Step, ...] = (
        Initialize(),
        GenerateTests(),
        GenerateImplementation(),
        RunChecks(),
        ReviseImplementation(),
        Finalize(),
    )
    return WorkflowDefinition(
        session_type=COMPONENT_CODING,
        steps=steps,
        transitions={
            (OK, StepKind.INITIALIZE): StepKind.GENERATE_TESTS,
            (ERROR, StepKind.INITIALIZE): StepKind.INITIALIZE,
            (OK, StepKind.GENERATE_TESTS): StepKind.GENERATE_IMPLEMENTATION,
            (ERROR, StepKind.GENERATE_TESTS): StepKind.GENERATE_TESTS,
            (OK, StepKind.GENERATE_IMPLEMENTATION): StepKind.RUN_CHECKS,
            (ERROR, StepKind.GENERATE_IMPLEMENTATION): StepKind.GENERATE_IMPLEMENTATION,
            (OK, StepKind.RUN_CHECKS): StepKind.FINALIZE,
            (WARNING, StepKind.RUN_CHECKS): StepKind.FINALIZE,
            (ERROR, StepKind.RUN_CHECKS): StepKind.REVISE_IMPLEMENTATION,
            (OK, StepKind.REVISE_IMPLEMENTATION): StepKind.RUN_CHECKS,
            (ERROR, StepKind.REVISE_IMPLEMENTATION): StepKind.REVISE_IMPLEMENTATION,
            (ERROR, StepKind.FINALIZE): StepKind.FINALIZE,
        },
    )


def _context_components_design() -> WorkflowDefinition:
    steps: tuple[Step, ...] = (
        Initialize(),
        SpawnChildSessions(child_type=COMPONENT_SPEC),
        SpawnReviewSession(review_type=DESIGN_REVIEW),
        Finalize(),
    )
    kinds = [step.kind for step in steps]
    return WorkflowDefinition(
        session_type=CONTEXT_COMPONENTS_DESIGN,
        steps=steps,
        transitions=linear_transitions(
            kinds,
            retry_in_place=tuple(kinds),
            retry_on=(ERROR, WARNING),
        ),
    )


def _design_review() -> WorkflowDefinition:
    steps: tuple[Step, ...] = (Initialize(), ExecuteReview(), Finalize())
    kinds = [step.kind for step in steps]
    return WorkflowDefinition(
        session_type=DESIGN_REVIEW,
        steps=steps,
        transitions=linear_transitions(
            kinds,
            retry_in_place=tuple(kinds),
            allow_warning=(StepKind.EXECUTE_REVIEW,),
        ),
    )


def default_workflows() -> dict[str, WorkflowDefinition]:
    """Registry of built-in workflows keyed by session type tag."""

    workflows = [
        _basic(),
        _spec_with_revisions(CONTEXT_SPEC),
        _spec_with_revisions(COMPONENT_SPEC),
        _component_coding(),
        _context_components_design(),
        _design_review(),
    ]
    return {workflow.session_type: workflow for workflow in workflows}


def get_workflow(workflows: dict[str, WorkflowDefinition], session_type: str) -> WorkflowDefinition:
    workflow = workflows.get(session_type)
    if workflow is None:
        raise SessionError(
            f"Unknown session type: {session_type}",
            code=ErrorCode.UNKNOWN_SESSION_TYPE,
        )
    return workflow
