"""Ingestion of progress events reported while an interaction runs.

Events are validated up front, persisted together with their side effects in
one transaction, then fanned out to live subscribers. A batch with a single
invalid event is rejected as a whole.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from agent_sessions.sessions.broadcaster import Notification, NotificationKind, SessionBroadcaster
from agent_sessions.sessions.errors import ErrorCode, SessionError
from agent_sessions.sessions.models import (
    EventType,
    Scope,
    SessionEventWrite,
    SessionStatus,
    SessionView,
)
from agent_sessions.sessions.repository import RecordedEvents, SessionRepository
from agent_sessions.sessions.runtime import InteractionRegistry
from agent_sessions.storage.common import from_iso, to_utc_aware_datetime

logger = logging.getLogger(__name__)

_HOOK_EVENTS = frozenset({EventType.HOOK_TRIGGERED, EventType.HOOK_COMPLETED})


class EventHandler:
    """Validates, records and broadcasts session progress events."""

    def __init__(
        self,
        repository: SessionRepository,
        broadcaster: SessionBroadcaster,
        registry: InteractionRegistry | None = None,
    ) -> None:
        self.repository = repository
        self.broadcaster = broadcaster
        self.registry = registry or InteractionRegistry()

    def ingest(self, scope: Scope, interaction_id: str, attrs: dict[str, Any]) -> SessionView:
        return self.ingest_batch(scope, interaction_id, [attrs])

    def ingest_batch(
        self,
        scope: Scope,
        interaction_id: str,
        batch: list[dict[str, Any]],
    ) -> SessionView:
        """Record ``batch`` atomically and return the refreshed session."""

        interaction = self.repository.get_interaction(scope, interaction_id)
        if interaction is None:
            logger.warning("Event rejected: interaction %s not found", interaction_id)
            raise SessionError(
                f"Interaction not found: {interaction_id}",
                code=ErrorCode.INTERACTION_NOT_FOUND,
            )
        session = self.repository.require_session(scope, interaction.session_id)

        events = [parse_event(attrs) for attrs in batch]
        if not events:
            return session

        conversation_id = self._plan_conversation_id(session, events)
        status = _planned_status(events)
        recorded = self.repository.record_events(
            scope,
            session_id=session.session_id,
            interaction_id=interaction_id,
            events=events,
            conversation_id=conversation_id,
            status=status,
        )
        updated = self.repository.require_session(scope, session.session_id)
        logger.debug(
            "Recorded %d event(s) for session %s interaction %s",
            len(recorded.events),
            session.session_id,
            interaction_id,
        )

        for event in events:
            self.registry.update_from_event(interaction_id, event)
        self._broadcast(updated, interaction_id, events, recorded)
        return updated

    def _plan_conversation_id(self, session: SessionView, events: list[SessionEventWrite]) -> str | None:
        stored = session.external_conversation_id
        chosen: str | None = None
        for event in events:
            if event.event_type is not EventType.CONVERSATION_STARTED:
                continue
            candidate = event.data.get("conversation_id") or event.data.get("session_id")
            if not candidate:
                logger.warning(
                    "conversation_started event without conversation_id for session %s",
                    session.session_id,
                )
                continue
            current = stored or chosen
            if current is None:
                chosen = str(candidate)
                logger.info(
                    "Setting conversation_id %s for session %s",
                    chosen,
                    session.session_id,
                )
            elif current != str(candidate):
                logger.warning(
                    "Attempted to change conversation_id from %s to %s for session %s",
                    current,
                    candidate,
                    session.session_id,
                )
        return chosen

    def _broadcast(
        self,
        session: SessionView,
        interaction_id: str,
        events: list[SessionEventWrite],
        recorded: RecordedEvents,
    ) -> None:
        session_id = session.session_id
        if recorded.conversation_id_set:
            self.broadcaster.broadcast(
                session,
                Notification(
                    NotificationKind.CONVERSATION_ID_SET,
                    session_id,
                    {"conversation_id": session.external_conversation_id},
                ),
            )
        if recorded.status_changed:
            self.broadcaster.broadcast(
                session,
                Notification(
                    NotificationKind.SESSION_STATUS_CHANGED,
                    session_id,
                    {"status": session.status.value},
                ),
            )
        for event in events:
            if event.event_type is EventType.NOTIFICATION:
                self.broadcaster.broadcast(
                    session,
                    Notification(
                        NotificationKind.NOTIFICATION,
                        session_id,
                        {
                            "notification_type": event.data.get("notification_type"),
                            "data": event.data,
                        },
                    ),
                )
            elif event.event_type in _HOOK_EVENTS:
                self.broadcaster.broadcast(
                    session,
                    Notification(
                        NotificationKind.HOOK_EVENT,
                        session_id,
                        {"event_type": event.event_type.value, "data": event.data},
                    ),
                )
        self.broadcaster.broadcast(
            session,
            Notification(
                NotificationKind.SESSION_ACTIVITY,
                session_id,
                {
                    "interaction_id": interaction_id,
                    "event_types": [event.event_type.value for event in events],
                },
            ),
        )


def parse_event(attrs: dict[str, Any]) -> SessionEventWrite:
    """Validate raw event attributes against the closed event vocabulary."""

    if not isinstance(attrs, dict):
        raise SessionError("Event must be a JSON object.", code=ErrorCode.INVALID_EVENT)

    raw_type = attrs.get("event_type")
    try:
        event_type = EventType(raw_type)
    except ValueError as error:
        logger.warning("Event validation failed: unknown event_type %r", raw_type)
        raise SessionError(f"Unknown event_type: {raw_type!r}", code=ErrorCode.INVALID_EVENT) from error

    sent_at = _parse_sent_at(attrs.get("sent_at"), event_type)

    if "data" not in attrs:
        raise SessionError(f"Event {event_type.value} is missing data.", code=ErrorCode.INVALID_EVENT)
    data = attrs["data"]
    if not isinstance(data, dict):
        raise SessionError(
            f"Event {event_type.value} data must be a JSON object.",
            code=ErrorCode.INVALID_EVENT,
        )

    if event_type is EventType.SESSION_STATUS_CHANGED and "new_status" in data:
        try:
            SessionStatus(data["new_status"])
        except ValueError as error:
            raise SessionError(
                f"Invalid status: {data['new_status']!r}",
                code=ErrorCode.INVALID_EVENT,
            ) from error

    return SessionEventWrite(event_type=event_type, sent_at=sent_at, data=data)


def _parse_sent_at(value: Any, event_type: EventType) -> datetime:
    if isinstance(value, datetime):
        return to_utc_aware_datetime(value)
    if isinstance(value, str) and value:
        try:
            return from_iso(value.replace("Z", "+00:00"))
        except ValueError as error:
            raise SessionError(
                f"Event {event_type.value} has an invalid sent_at: {value!r}",
                code=ErrorCode.INVALID_EVENT,
            ) from error
    raise SessionError(
        f"Event {event_type.value} is missing sent_at.",
        code=ErrorCode.INVALID_EVENT,
    )


def _planned_status(events: list[SessionEventWrite]) -> SessionStatus | None:
    for event in events:
        if event.event_type is EventType.SESSION_STATUS_CHANGED and "new_status" in event.data:
            status = SessionStatus(event.data["new_status"])
            if status.terminal:
                return status
    return None
