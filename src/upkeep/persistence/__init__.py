"""Persistence layer — audit event log and versioned request store."""

from upkeep.persistence.event_log import AuditEvent, EventKind, EventLog
from upkeep.persistence.state_store import RequestStore

__all__ = ["AuditEvent", "EventKind", "EventLog", "RequestStore"]
