"""Append-only audit log — the record of every accepted request mutation.

Every status change, assignment and public-link change produces an event
that is appended here. Events are immutable once written. The log serves as:
1. The audit trail exposed to managers.
2. The feed observed by the notification dispatcher (via subscribers).
3. Tamper evidence: each event carries a SHA-256 hash of its canonical
   JSON, re-verified when the log is reloaded from disk.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    """Classification of audit events."""
    REQUEST_CREATED = "request_created"
    STATUS_CHANGE = "status_change"
    ASSIGNMENT = "assignment"
    PUBLIC_LINK_ENABLED = "public_link_enabled"
    PUBLIC_LINK_DISABLED = "public_link_disabled"
    PUBLIC_LINK_EXPIRED = "public_link_expired"
    COMMENT_ADDED = "comment_added"
    MEDIA_ADDED = "media_added"
    MEDIA_REMOVED = "media_removed"
    FEEDBACK_SUBMITTED = "feedback_submitted"
    DETAILS_UPDATED = "details_updated"


def _canonical_hash(fields: dict[str, Any]) -> str:
    canonical = json.dumps(
        fields, sort_keys=True, ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class AuditEvent:
    """A single immutable audit event.

    ``from_value``/``to_value`` hold the before/after of whatever changed:
    statuses for status_change, assignee ids for assignment, link state
    for public-link events.
    """
    event_id: str
    event_kind: EventKind
    request_id: str
    actor_id: str
    from_value: Optional[str]
    to_value: Optional[str]
    timestamp_utc: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        request_id: str,
        actor_id: str,
        from_value: Optional[str] = None,
        to_value: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        timestamp_utc: Optional[datetime] = None,
    ) -> AuditEvent:
        """Create a new event with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        body = payload or {}
        digest = _canonical_hash({
            "event_id": event_id,
            "event_kind": event_kind.value,
            "request_id": request_id,
            "actor_id": actor_id,
            "from": from_value,
            "to": to_value,
            "timestamp_utc": ts_str,
            "payload": body,
        })
        return AuditEvent(
            event_id=event_id,
            event_kind=event_kind,
            request_id=request_id,
            actor_id=actor_id,
            from_value=from_value,
            to_value=to_value,
            timestamp_utc=ts_str,
            payload=body,
            event_hash=digest,
        )

    def descriptor(self) -> dict[str, Any]:
        """The collaborator-facing shape of the event."""
        return {
            "action": self.event_kind.value,
            "from": self.from_value,
            "to": self.to_value,
            "actor": self.actor_id,
            "requestId": self.request_id,
            "timestamp": self.timestamp_utc,
        }


Subscriber = Callable[[AuditEvent], None]


class EventLog:
    """Append-only event log with optional JSONL file persistence.

    Events can only be appended, never modified or deleted. Subscribers
    are called after each successful append; a failing subscriber is
    logged and does not affect the log or other subscribers.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[AuditEvent] = []
        self._event_ids: set[str] = set()
        self._storage_path = storage_path
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._counter = 0

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)
            self._counter = len(self._events)

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        with self._lock:
            self._counter += 1
            return f"EVT-{self._counter:08d}"

    def append(self, event: AuditEvent) -> None:
        """Append an event to the log.

        Raises ValueError if event_id is a duplicate (replay protection).
        Raises OSError if the JSONL file cannot be written; the event is
        then not recorded in memory either.
        """
        with self._lock:
            if event.event_id in self._event_ids:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            if self._storage_path:
                self._append_to_file(event)
            self._events.append(event)
            self._event_ids.add(event.event_id)

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception(
                    "Audit subscriber failed on %s", event.event_id,
                )

    def events(self, kind: Optional[EventKind] = None) -> list[AuditEvent]:
        """Return events, optionally filtered by kind."""
        with self._lock:
            snapshot = list(self._events)
        if kind is None:
            return snapshot
        return [e for e in snapshot if e.event_kind == kind]

    def events_for(
        self,
        request_id: str,
        kind: Optional[EventKind] = None,
    ) -> list[AuditEvent]:
        """Return events for one request, optionally filtered by kind."""
        return [e for e in self.events(kind) if e.request_id == request_id]

    def events_since(
        self,
        since_utc: str,
        kind: Optional[EventKind] = None,
    ) -> list[AuditEvent]:
        """Return events at or after a timestamp, optionally filtered by kind."""
        return [e for e in self.events(kind) if e.timestamp_utc >= since_utc]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[AuditEvent]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, event: AuditEvent) -> None:
        """Append a single event to the JSONL file."""
        record = {
            "event_id": event.event_id,
            "event_kind": event.event_kind.value,
            "request_id": event.request_id,
            "actor_id": event.actor_id,
            "from": event.from_value,
            "to": event.to_value,
            "timestamp_utc": event.timestamp_utc,
            "payload": event.payload,
            "event_hash": event.event_hash,
        }
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs (replay protection on recovery).
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash({
                    "event_id": data["event_id"],
                    "event_kind": data["event_kind"],
                    "request_id": data["request_id"],
                    "actor_id": data["actor_id"],
                    "from": data["from"],
                    "to": data["to"],
                    "timestamp_utc": data["timestamp_utc"],
                    "payload": data["payload"],
                })
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = AuditEvent(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    request_id=data["request_id"],
                    actor_id=data["actor_id"],
                    from_value=data["from"],
                    to_value=data["to"],
                    timestamp_utc=data["timestamp_utc"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event_id)
