"""Process-local publish/subscribe fan-out for session notifications.

The audit log stays the durable record. Subscribers get best-effort live
updates; a failing subscriber is logged and never affects the publisher or
other subscribers.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agent_sessions.sessions.models import SessionView

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    CONVERSATION_ID_SET = "conversation_id_set"
    SESSION_STATUS_CHANGED = "session_status_changed"
    SESSION_ACTIVITY = "session_activity"
    HOOK_EVENT = "hook_event"
    NOTIFICATION = "notification"
    SESSION_CREATED = "session_created"
    SESSION_UPDATED = "session_updated"
    STEP_COMPLETED = "step_completed"


@dataclass(frozen=True, slots=True)
class Notification:
    kind: NotificationKind
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[Notification], None]


def account_channel(account_id: str) -> str:
    return f"account:{account_id}:sessions"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}:sessions"


def session_channel(session_id: str) -> str:
    return f"session:{session_id}"


def channels_for(session: SessionView) -> list[str]:
    return [
        account_channel(session.account_id),
        user_channel(session.user_id),
        session_channel(session.session_id),
    ]


class SessionBroadcaster:
    """Synchronous in-memory topic broadcaster."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, channel: str, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` on ``channel``; the returned function unsubscribes it."""

        with self._lock:
            self._subscribers.setdefault(channel, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                current = self._subscribers.get(channel)
                if not current:
                    return
                if callback in current:
                    current.remove(callback)
                if not current:
                    self._subscribers.pop(channel, None)

        return _unsubscribe

    def publish(self, channel: str, notification: Notification) -> int:
        """Deliver to every subscriber of ``channel``; returns how many were called."""

        with self._lock:
            callbacks = list(self._subscribers.get(channel, ()))
        for callback in callbacks:
            try:
                callback(notification)
            except Exception:
                logger.exception(
                    "Session subscriber failed channel=%s kind=%s",
                    channel,
                    notification.kind.value,
                )
        return len(callbacks)

    def broadcast(self, session: SessionView, notification: Notification) -> None:
        """Publish to the account, user and session channels of ``session``."""

        for channel in channels_for(session):
            self.publish(channel, notification)

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()
