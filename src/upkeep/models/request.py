"""Maintenance request aggregate — status, assignment, public access,
media, comments and feedback.

The request is the unit of persistence and concurrency control. Every
accepted mutation bumps ``updated_at`` and (in the store) ``version``.

Invariants:
- Status moves only along ALLOWED_TRANSITIONS.
- assigned_to is set only while the request is in an active post-assignment
  status; archival may keep it for history, cancellation clears it.
- An enabled public link always has a token, and its expiry (if any) was
  in the future when it was enabled.
- created_by is set once, at creation.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class RequestStatus(str, enum.Enum):
    """Lifecycle states for a maintenance request.

    NEW → ASSIGNED → IN_PROGRESS → COMPLETED → VERIFIED → ARCHIVED
    COMPLETED/VERIFIED → REOPENED → IN_PROGRESS/COMPLETED/ARCHIVED
    Any active state → ARCHIVED (operator override)
    NEW/ASSIGNED/IN_PROGRESS → CANCELED
    """
    NEW = "new"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VERIFIED = "verified"
    REOPENED = "reopened"
    ARCHIVED = "archived"
    CANCELED = "canceled"


class Priority(str, enum.Enum):
    """Informational urgency. Has no effect on transitions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class AssigneeKind(str, enum.Enum):
    """Who a request is assigned to."""
    INTERNAL_USER = "internalUser"
    VENDOR = "vendor"


TERMINAL_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.ARCHIVED,
    RequestStatus.CANCELED,
})

# Statuses in which an assignee may be present.
ASSIGNED_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.ASSIGNED,
    RequestStatus.IN_PROGRESS,
    RequestStatus.COMPLETED,
    RequestStatus.VERIFIED,
    RequestStatus.REOPENED,
})

_S = RequestStatus

ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    _S.NEW: frozenset({_S.ASSIGNED, _S.IN_PROGRESS, _S.CANCELED, _S.ARCHIVED}),
    _S.ASSIGNED: frozenset({_S.IN_PROGRESS, _S.CANCELED, _S.ARCHIVED}),
    _S.IN_PROGRESS: frozenset({_S.COMPLETED, _S.CANCELED, _S.ARCHIVED}),
    _S.COMPLETED: frozenset({_S.VERIFIED, _S.REOPENED, _S.ARCHIVED}),
    _S.VERIFIED: frozenset({_S.REOPENED, _S.ARCHIVED}),
    _S.REOPENED: frozenset({_S.IN_PROGRESS, _S.COMPLETED, _S.ARCHIVED}),
    _S.ARCHIVED: frozenset(),
    _S.CANCELED: frozenset(),
}


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Comment:
    """An append-only note on a request.

    External authors (public-link bearers) have no platform account;
    author_id is then ``external:<name>`` and author_external is True.
    """
    author_id: str
    message: str
    created_at: datetime
    author_name: str = ""
    author_external: bool = False
    author_phone: str = ""


@dataclass(frozen=True)
class MediaRef:
    """Reference to a stored file. Blob storage is a collaborator concern."""
    ref: str
    uploaded_by: str
    uploaded_at: datetime


@dataclass(frozen=True)
class Feedback:
    """Creator's rating of completed work. At most one per request."""
    rating: int
    submitted_by: str
    submitted_at: datetime
    comment: str = ""


@dataclass(frozen=True)
class RetiredToken:
    """A dead public-link token, kept as a fingerprint for replay audits."""
    fingerprint: str   # "sha256:<hex>" of the token
    retired_at: datetime
    reason: str        # "rotated" | "revoked" | "expired"


@dataclass
class PublicAccess:
    """Public link state for a single request.

    A disabled record keeps its token (marked dead) until the link is
    enabled again, at which point the old token moves to retired_tokens.
    """
    token: Optional[str] = None
    enabled: bool = False
    expires_at: Optional[datetime] = None
    enabled_at: Optional[datetime] = None
    enabled_by: Optional[str] = None
    disabled_at: Optional[datetime] = None
    disabled_reason: Optional[str] = None
    retired_tokens: list[RetiredToken] = field(default_factory=list)


@dataclass
class MaintenanceRequest:
    """The request aggregate."""
    request_id: str
    title: str
    created_by: str
    property_id: str
    unit_id: Optional[str] = None
    description: str = ""
    category: str = "general"
    priority: Priority = Priority.MEDIUM
    status: RequestStatus = RequestStatus.NEW

    assigned_to: Optional[str] = None
    assigned_to_kind: Optional[AssigneeKind] = None

    public_access: Optional[PublicAccess] = None
    media: list[MediaRef] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    feedback: Optional[Feedback] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    # Optimistic concurrency token, owned by the store.
    version: int = 0

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def has_assignee(self) -> bool:
        return self.assigned_to is not None

    def public_link_enabled(self) -> bool:
        return self.public_access is not None and self.public_access.enabled
