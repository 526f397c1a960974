"""Request store — versioned, JSON-backed persistence for request aggregates.

Stores and recovers:
- Every maintenance request aggregate (status, assignment, public access,
  media, comments, feedback)
- The token -> request index used to resolve public links

Concurrency model: optimistic. ``get()`` hands out a deep-copied snapshot
carrying ``version``; ``save()`` is a compare-and-swap that only succeeds
if the stored version still equals the snapshot's. Requests are fully
independent of each other.

This is a simple file-based store suitable for single-node deployment.
Production deployments would replace this with a database backend
(a version column and ``UPDATE ... WHERE version = ?``) while keeping the
same interface.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from upkeep.models.errors import ConflictError
from upkeep.models.request import (
    AssigneeKind,
    Comment,
    Feedback,
    MaintenanceRequest,
    MediaRef,
    Priority,
    PublicAccess,
    RequestStatus,
    RetiredToken,
)

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class RequestStore:
    """Versioned request persistence with optional JSON file backing.

    Usage:
        store = RequestStore(Path("data/requests.json"))
        stored = store.create(request)            # version 1
        snapshot = store.get(stored.request_id)
        snapshot.status = RequestStatus.ASSIGNED
        store.save(snapshot, expected_version=snapshot.version)
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._path = storage_path
        self._requests: dict[str, MaintenanceRequest] = {}
        self._token_index: dict[str, str] = {}
        self._lock = threading.Lock()
        if storage_path is not None and storage_path.exists():
            self._load()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> Optional[MaintenanceRequest]:
        """Return a snapshot of the request, or None."""
        with self._lock:
            stored = self._requests.get(request_id)
            return copy.deepcopy(stored) if stored is not None else None

    def find_by_token(self, token: str) -> Optional[MaintenanceRequest]:
        """Return a snapshot of the request whose current token is ``token``."""
        with self._lock:
            request_id = self._token_index.get(token)
            if request_id is None:
                return None
            return copy.deepcopy(self._requests[request_id])

    def all_requests(self) -> list[MaintenanceRequest]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._requests.values()]

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for r in self._requests.values():
                counts[r.status.value] = counts.get(r.status.value, 0) + 1
        return counts

    @property
    def count(self) -> int:
        return len(self._requests)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, request: MaintenanceRequest) -> MaintenanceRequest:
        """Insert a new request at version 1.

        Raises ValueError on a duplicate id, OSError if the state file
        cannot be written (nothing is kept in that case).
        """
        with self._lock:
            if request.request_id in self._requests:
                raise ValueError(f"Request already exists: {request.request_id}")
            stored = copy.deepcopy(request)
            stored.version = 1
            self._requests[stored.request_id] = stored
            try:
                self._save()
            except OSError:
                del self._requests[stored.request_id]
                raise
            return copy.deepcopy(stored)

    def save(
        self,
        request: MaintenanceRequest,
        expected_version: int,
    ) -> MaintenanceRequest:
        """Compare-and-swap a mutated snapshot into the store.

        Raises ConflictError if the stored version is no longer
        ``expected_version`` (another writer won), KeyError for an unknown
        request, OSError if the state file cannot be written (the prior
        record is restored).
        """
        with self._lock:
            current = self._requests.get(request.request_id)
            if current is None:
                raise KeyError(request.request_id)
            if current.version != expected_version:
                logger.warning(
                    "Version conflict on %s: expected %d, found %d",
                    request.request_id, expected_version, current.version,
                )
                raise ConflictError(
                    request.request_id, expected_version, current.version,
                )

            stored = copy.deepcopy(request)
            stored.version = expected_version + 1
            prior_index = dict(self._token_index)
            self._requests[stored.request_id] = stored
            self._reindex(current, stored)
            try:
                self._save()
            except OSError:
                self._requests[stored.request_id] = current
                self._token_index = prior_index
                raise
            return copy.deepcopy(stored)

    def _reindex(
        self, previous: MaintenanceRequest, updated: MaintenanceRequest,
    ) -> None:
        old_token = previous.public_access.token if previous.public_access else None
        new_token = updated.public_access.token if updated.public_access else None
        if old_token and old_token != new_token:
            self._token_index.pop(old_token, None)
        if new_token:
            self._token_index[new_token] = updated.request_id

    # ------------------------------------------------------------------
    # File backing
    # ------------------------------------------------------------------

    def _load(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            state = json.load(f)
        for rid, data in state.get("requests", {}).items():
            request = request_from_dict(data)
            self._requests[rid] = request
            if request.public_access and request.public_access.token:
                self._token_index[request.public_access.token] = rid

    def _save(self) -> None:
        if self._path is None:
            return
        state = {
            "requests": {
                rid: request_to_dict(r) for rid, r in self._requests.items()
            },
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, sort_keys=True, ensure_ascii=False)


# ----------------------------------------------------------------------
# Serialisation
# ----------------------------------------------------------------------

def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(_TS_FORMAT) if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def request_to_dict(r: MaintenanceRequest) -> dict[str, Any]:
    """Serialise a request aggregate to plain JSON types."""
    access = None
    if r.public_access is not None:
        pa = r.public_access
        access = {
            "token": pa.token,
            "enabled": pa.enabled,
            "expires_at": _ts(pa.expires_at),
            "enabled_at": _ts(pa.enabled_at),
            "enabled_by": pa.enabled_by,
            "disabled_at": _ts(pa.disabled_at),
            "disabled_reason": pa.disabled_reason,
            "retired_tokens": [
                {
                    "fingerprint": t.fingerprint,
                    "retired_at": _ts(t.retired_at),
                    "reason": t.reason,
                }
                for t in pa.retired_tokens
            ],
        }

    feedback = None
    if r.feedback is not None:
        feedback = {
            "rating": r.feedback.rating,
            "comment": r.feedback.comment,
            "submitted_by": r.feedback.submitted_by,
            "submitted_at": _ts(r.feedback.submitted_at),
        }

    return {
        "request_id": r.request_id,
        "title": r.title,
        "description": r.description,
        "created_by": r.created_by,
        "property_id": r.property_id,
        "unit_id": r.unit_id,
        "category": r.category,
        "priority": r.priority.value,
        "status": r.status.value,
        "assigned_to": r.assigned_to,
        "assigned_to_kind": r.assigned_to_kind.value if r.assigned_to_kind else None,
        "public_access": access,
        "media": [
            {
                "ref": m.ref,
                "uploaded_by": m.uploaded_by,
                "uploaded_at": _ts(m.uploaded_at),
            }
            for m in r.media
        ],
        "comments": [
            {
                "author_id": c.author_id,
                "message": c.message,
                "created_at": _ts(c.created_at),
                "author_name": c.author_name,
                "author_external": c.author_external,
                "author_phone": c.author_phone,
            }
            for c in r.comments
        ],
        "feedback": feedback,
        "created_at": _ts(r.created_at),
        "updated_at": _ts(r.updated_at),
        "resolved_at": _ts(r.resolved_at),
        "version": r.version,
    }


def request_from_dict(data: dict[str, Any]) -> MaintenanceRequest:
    """Deserialise a request aggregate written by request_to_dict."""
    access = None
    if data.get("public_access"):
        pa = data["public_access"]
        access = PublicAccess(
            token=pa.get("token"),
            enabled=pa.get("enabled", False),
            expires_at=_parse_ts(pa.get("expires_at")),
            enabled_at=_parse_ts(pa.get("enabled_at")),
            enabled_by=pa.get("enabled_by"),
            disabled_at=_parse_ts(pa.get("disabled_at")),
            disabled_reason=pa.get("disabled_reason"),
            retired_tokens=[
                RetiredToken(
                    fingerprint=t["fingerprint"],
                    retired_at=_parse_ts(t["retired_at"]),
                    reason=t["reason"],
                )
                for t in pa.get("retired_tokens", [])
            ],
        )

    feedback = None
    if data.get("feedback"):
        fb = data["feedback"]
        feedback = Feedback(
            rating=fb["rating"],
            comment=fb.get("comment", ""),
            submitted_by=fb["submitted_by"],
            submitted_at=_parse_ts(fb["submitted_at"]),
        )

    kind = data.get("assigned_to_kind")
    return MaintenanceRequest(
        request_id=data["request_id"],
        title=data["title"],
        description=data.get("description", ""),
        created_by=data["created_by"],
        property_id=data["property_id"],
        unit_id=data.get("unit_id"),
        category=data.get("category", "general"),
        priority=Priority(data["priority"]),
        status=RequestStatus(data["status"]),
        assigned_to=data.get("assigned_to"),
        assigned_to_kind=AssigneeKind(kind) if kind else None,
        public_access=access,
        media=[
            MediaRef(
                ref=m["ref"],
                uploaded_by=m["uploaded_by"],
                uploaded_at=_parse_ts(m["uploaded_at"]),
            )
            for m in data.get("media", [])
        ],
        comments=[
            Comment(
                author_id=c["author_id"],
                message=c["message"],
                created_at=_parse_ts(c["created_at"]),
                author_name=c.get("author_name", ""),
                author_external=c.get("author_external", False),
                author_phone=c.get("author_phone", ""),
            )
            for c in data.get("comments", [])
        ],
        feedback=feedback,
        created_at=_parse_ts(data.get("created_at")),
        updated_at=_parse_ts(data.get("updated_at")),
        resolved_at=_parse_ts(data.get("resolved_at")),
        version=data.get("version", 0),
    )
