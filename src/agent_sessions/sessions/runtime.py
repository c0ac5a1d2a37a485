"""Ephemeral runtime state of interactions that are currently executing.

Derived from ingested progress events for live dashboards. Nothing here is
persisted; a restart starts from an empty registry.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from agent_sessions.sessions.models import EventType, SessionEventWrite
from agent_sessions.storage.common import utc_now

logger = logging.getLogger(__name__)


class AgentState(str, Enum):
    STARTED = "started"
    RUNNING = "running"
    IDLE = "idle"
    NOTIFICATION = "notification"
    ENDED = "ended"


_RUNNING_EVENTS = frozenset(
    {
        EventType.CONVERSATION_MESSAGE_SENT,
        EventType.TOOL_CALLED,
        EventType.TOOL_RESULT,
        EventType.FILE_CREATED,
        EventType.FILE_MODIFIED,
        EventType.FILE_DELETED,
        EventType.COMMAND_STARTED,
        EventType.COMMAND_OUTPUT,
        EventType.COMMAND_COMPLETED,
        EventType.HOOK_TRIGGERED,
        EventType.HOOK_COMPLETED,
        EventType.SESSION_RESUMED,
    },
)
_IDLE_EVENTS = frozenset({EventType.CONVERSATION_MESSAGE_RECEIVED, EventType.SESSION_PAUSED})


@dataclass(frozen=True, slots=True)
class RuntimeInteraction:
    interaction_id: str
    agent_state: AgentState
    conversation_id: str | None = None
    last_activity: dict[str, Any] = field(default_factory=dict)
    last_notification: dict[str, Any] | None = None
    updated_at: datetime = field(default_factory=utc_now)


class InteractionRegistry:
    """Thread-safe map of interaction id to its latest runtime state."""

    def __init__(self) -> None:
        self._entries: dict[str, RuntimeInteraction] = {}
        self._lock = threading.Lock()

    def update_from_event(self, interaction_id: str, event: SessionEventWrite) -> RuntimeInteraction | None:
        """Fold one event into the interaction's runtime state; ``None`` when it carries none."""

        with self._lock:
            current = self._entries.get(interaction_id)
            updated = _apply(interaction_id, current, event)
            if updated is None:
                return current
            self._entries[interaction_id] = updated
        logger.debug("Runtime state for %s: %s", interaction_id, updated.agent_state.value)
        return updated

    def get_status(self, interaction_id: str) -> RuntimeInteraction | None:
        with self._lock:
            return self._entries.get(interaction_id)

    def clear(self, interaction_id: str) -> None:
        with self._lock:
            self._entries.pop(interaction_id, None)

    def list_active(self) -> list[str]:
        with self._lock:
            return [
                interaction_id
                for interaction_id, entry in self._entries.items()
                if entry.agent_state is not AgentState.ENDED
            ]


def _apply(
    interaction_id: str,
    current: RuntimeInteraction | None,
    event: SessionEventWrite,
) -> RuntimeInteraction | None:
    base = current or RuntimeInteraction(interaction_id=interaction_id, agent_state=AgentState.STARTED)
    now = utc_now()
    activity = {"event_type": event.event_type.value, "timestamp": now.isoformat()}
    if "tool_name" in event.data:
        activity["tool_name"] = event.data["tool_name"]

    if event.event_type is EventType.CONVERSATION_STARTED:
        return replace(
            base,
            agent_state=AgentState.STARTED,
            conversation_id=event.data.get("conversation_id") or event.data.get("session_id"),
            last_activity=activity,
            updated_at=now,
        )
    if event.event_type is EventType.NOTIFICATION:
        return replace(
            base,
            agent_state=AgentState.NOTIFICATION,
            last_notification={**event.data, "timestamp": now.isoformat()},
            updated_at=now,
        )
    if event.event_type is EventType.CONVERSATION_ENDED:
        return replace(base, agent_state=AgentState.ENDED, last_activity=activity, updated_at=now)
    if event.event_type in _IDLE_EVENTS:
        return replace(base, agent_state=AgentState.IDLE, last_activity=activity, updated_at=now)
    if event.event_type in _RUNNING_EVENTS:
        return replace(base, agent_state=AgentState.RUNNING, last_activity=activity, updated_at=now)
    return None
