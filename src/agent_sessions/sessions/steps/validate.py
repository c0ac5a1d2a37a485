"""Validation of a generated document.

The executor reads the document back (``read_file`` builtin) and returns its
text in ``result.data["content"]``; this step decides whether it is acceptable.
"""

from __future__ import annotations

import logging
import re

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
    READ_FILE_INVOCATION,
    StepOptions,
    build_builtin_command,
)
from agent_sessions.storage.common import utc_now

logger = logging.getLogger(__name__)

_HEADING_PATTERN = re.compile(r"^\s{0,3}#{1,6}\s+(?P<title>.+?)\s*#*\s*$", re.MULTILINE)


class ValidateSpec:
    kind = StepKind.VALIDATE_SPEC

    def produce_command(self, scope: Scope, session: SessionView, options: StepOptions) -> Command:
        path = str(session.state.get("document_path") or "spec.md")
        return build_builtin_command(self.kind, READ_FILE_INVOCATION, {"path": path})

    def handle_result(
        self,
        scope: Scope,
        session: SessionView,
        result: Result,
        options: StepOptions,
    ) -> StepOutcome:
        if result.status is ResultStatus.ERROR:
            return StepOutcome(result=result)

        content = result.data.get("content")
        problems = validate_document(
            content if isinstance(content, str) else "",
            required_sections=list(session.state.get("required_sections") or []),
        )
        if problems:
            message = "Document validation failed:\n" + "\n".join(f"- {item}" for item in problems)
            logger.info(
                "Validation failed for session %s: %d problem(s)",
                session.session_id,
                len(problems),
            )
            return StepOutcome(result=result.with_status(ResultStatus.ERROR, message))
        return StepOutcome(
            result=result.with_status(ResultStatus.OK),
            state_patch={"validated_at": utc_now().isoformat()},
        )


def validate_document(content: str, *, required_sections: list[str]) -> list[str]:
    """Return human readable problems; empty list means the document is acceptable."""

    if not content.strip():
        return ["Document is empty"]
    headings = {match.group("title").strip().lower() for match in _HEADING_PATTERN.finditer(content)}
    return [
        f"Missing required section: {section}"
        for section in required_sections
        if section.strip().lower() not in headings
    ]
