"""Notification notices — what the dispatcher should tell whom.

The core never sends email or in-app alerts. NoticeOutbox subscribes to
the audit log and turns the events people care about into plain notice
dicts; a delivery collaborator drains the outbox.
"""

from __future__ import annotations

import threading
from typing import Any, Optional

from upkeep.persistence.event_log import AuditEvent, EventKind, EventLog


def assignment_notice(event: AuditEvent) -> dict[str, Any]:
    return {
        "kind": "assignment",
        "request_id": event.request_id,
        "assignee_id": event.to_value,
        "assignee_kind": event.payload.get("assignee_kind"),
        "previous_assignee_id": event.from_value,
        "by": event.actor_id,
    }


def status_notice(event: AuditEvent) -> dict[str, Any]:
    return {
        "kind": "status_change",
        "request_id": event.request_id,
        "from": event.from_value,
        "to": event.to_value,
        "by": event.actor_id,
    }


def public_link_notice(event: AuditEvent) -> dict[str, Any]:
    return {
        "kind": event.event_kind.value,
        "request_id": event.request_id,
        "expires_at": event.payload.get("expires_at"),
        "by": event.actor_id,
    }


_BUILDERS = {
    EventKind.ASSIGNMENT: assignment_notice,
    EventKind.STATUS_CHANGE: status_notice,
    EventKind.PUBLIC_LINK_ENABLED: public_link_notice,
    EventKind.PUBLIC_LINK_DISABLED: public_link_notice,
    EventKind.PUBLIC_LINK_EXPIRED: public_link_notice,
}


def build_notice(event: AuditEvent) -> Optional[dict[str, Any]]:
    """Return the notice for an event, or None if it is not notifiable."""
    builder = _BUILDERS.get(event.event_kind)
    return builder(event) if builder else None


class NoticeOutbox:
    """Collects notices produced from audit events until drained."""

    def __init__(self, event_log: Optional[EventLog] = None) -> None:
        self._pending: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        if event_log is not None:
            event_log.subscribe(self.observe)

    def observe(self, event: AuditEvent) -> None:
        notice = build_notice(event)
        if notice is None:
            return
        with self._lock:
            self._pending.append(notice)

    def drain(self) -> list[dict[str, Any]]:
        """Return and clear all pending notices."""
        with self._lock:
            pending, self._pending = self._pending, []
        return pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)
