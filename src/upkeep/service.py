"""Maintenance service — unified facade for the request lifecycle core.

This is the primary interface for programmatic access to the core.
It orchestrates all subsystems:
- Request lifecycle (create, detail edits, transition, cancel, archive)
- Assignment (internal staff or external vendor)
- Public links (enable, rotate, disable, resolve, lazy expiry)
- Comments, media and creator feedback
- Access mediation for every caller, authenticated or token-bearing
- Persistence (versioned request store, audit event log)

All operations return a ServiceResult with a typed error kind; expected
failures never raise. Every mutation is a read-modify-write against a
versioned snapshot: a writer holding a stale version fails with
``conflict`` and must re-read. Audit events are appended only after the
aggregate is committed, so a lost race never leaves a phantom event.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from upkeep.access.mediator import (
    PUBLIC_CAPABILITIES,
    AccessMediator,
    AnyCaller,
    Operation,
)
from upkeep.access.tokens import TokenIssuer
from upkeep.directory.registry import PartyDirectory
from upkeep.lifecycle.assignment import AssignmentResolver
from upkeep.lifecycle.state_machine import RequestStateMachine
from upkeep.models.caller import Caller, PublicCaller
from upkeep.models.errors import ConflictError, RequestError
from upkeep.models.request import (
    AssigneeKind,
    Comment,
    Feedback,
    MaintenanceRequest,
    MediaRef,
    Priority,
    RequestStatus,
)
from upkeep.persistence.event_log import AuditEvent, EventKind, EventLog
from upkeep.persistence.state_store import RequestStore
from upkeep.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
AUDIT_DEGRADED = "audit_degraded"

_EDITABLE_FIELDS = frozenset({"title", "description", "category", "priority", "unit_id"})


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation.

    ``error`` is a machine-readable kind; wording belongs to the caller.
    """
    success: bool
    error: Optional[RequestError] = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _PendingEvent:
    kind: EventKind
    from_value: Optional[str] = None
    to_value: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Outcome:
    """What a mutator did to a snapshot."""
    error: Optional[RequestError] = None
    events: list[_PendingEvent] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    no_op: bool = False


Mutator = Callable[[MaintenanceRequest], _Outcome]


def _fail(error: RequestError, reason: str = "") -> ServiceResult:
    if reason:
        logger.debug("Rejected (%s): %s", error.value, reason)
    return ServiceResult(success=False, error=error)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _parse_priority(value: Union[Priority, str]) -> Priority:
    if isinstance(value, Priority):
        return value
    return Priority(str(value).strip().lower())


class MaintenanceService:
    """Maintenance request lifecycle facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = MaintenanceService(resolver, directory)

        result = service.create_request(tenant, "Leaking tap", "P-1")
        rid = result.data["request_id"]
        service.assign(rid, "vendor-x", "vendor", manager)
        service.request_transition(rid, "in_progress", vendor)

        link = service.enable_public_access(rid, 7, manager)
        service.resolve_token(link.data["token"])

    Persistence (optional):
        service = MaintenanceService(
            resolver, directory,
            store=RequestStore(Path("data/requests.json")),
            event_log=EventLog(Path("data/audit.jsonl")),
        )
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        directory: Optional[PartyDirectory] = None,
        store: Optional[RequestStore] = None,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._resolver = resolver
        self._directory = directory if directory is not None else PartyDirectory()
        self._store = store if store is not None else RequestStore()
        self._event_log = event_log if event_log is not None else EventLog()

        self._mediator = AccessMediator(resolver)
        self._state_machine = RequestStateMachine(resolver, self._mediator)
        self._assignments = AssignmentResolver(
            resolver, self._mediator, self._directory,
        )
        self._tokens = TokenIssuer(resolver)

        # Set when an audit append fails after its mutation was committed.
        # The aggregate is correct; the audit trail needs operator repair.
        self._audit_degraded: bool = False

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def directory(self) -> PartyDirectory:
        return self._directory

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create_request(
        self,
        caller: Caller,
        title: str,
        property_id: str,
        description: str = "",
        category: str = "general",
        priority: Union[Priority, str] = Priority.MEDIUM,
        unit_id: Optional[str] = None,
        request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Open a new request in NEW status, owned by the caller."""
        if not isinstance(caller, Caller) or not self._resolver.can_create_requests(
            caller.role,
        ):
            return _fail(RequestError.FORBIDDEN, "caller may not create requests")
        if not title.strip() or not property_id.strip():
            return _fail(RequestError.INVALID_INPUT, "title and property required")
        try:
            priority_enum = _parse_priority(priority)
        except ValueError:
            return _fail(RequestError.INVALID_INPUT, f"bad priority {priority!r}")

        ts = _now(now)
        request = MaintenanceRequest(
            request_id=request_id or f"REQ-{uuid.uuid4().hex[:12]}",
            title=title.strip(),
            description=description,
            created_by=caller.caller_id,
            property_id=property_id.strip(),
            unit_id=unit_id,
            category=category.strip().lower() or "general",
            priority=priority_enum,
            created_at=ts,
            updated_at=ts,
        )
        try:
            stored = self._store.create(request)
        except ValueError:
            return _fail(RequestError.CONFLICT, f"duplicate id {request.request_id}")
        except OSError as e:
            logger.error("Could not persist new request: %s", e)
            return _fail(RequestError.PERSISTENCE_FAILURE)

        logger.info(
            "Request %s created by %s", stored.request_id, caller.caller_id,
        )
        data: dict[str, Any] = {
            "request_id": stored.request_id,
            "status": stored.status.value,
            "version": stored.version,
            "request": stored,
        }
        warning = self._record_events(
            stored.request_id, caller.caller_id,
            [_PendingEvent(EventKind.REQUEST_CREATED, None, stored.status.value)],
            ts,
        )
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def get_request(self, request_id: str, caller: Caller) -> ServiceResult:
        """Return a snapshot of the request with the caller's capabilities."""
        if isinstance(caller, PublicCaller):
            return _fail(RequestError.FORBIDDEN, "use resolve_token")
        snapshot = self._store.get(request_id)
        if snapshot is None:
            return _fail(RequestError.NOT_FOUND, request_id)
        caps = self._mediator.capabilities(caller, snapshot)
        if Operation.VIEW not in caps:
            return _fail(RequestError.FORBIDDEN, f"no view on {request_id}")
        return ServiceResult(
            success=True,
            data={
                "request": snapshot,
                "capabilities": caps,
                "permitted_targets": self._mediator.permitted_targets(
                    caller, snapshot,
                ),
            },
        )

    def capabilities(
        self,
        request_id: str,
        caller: AnyCaller,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Return the caller's capability set without the aggregate.

        A public bearer is resolved by token first, so a dead or foreign
        token is token_not_found whether or not ``request_id`` exists.
        """
        if isinstance(caller, PublicCaller):
            resolved = self.resolve_token(caller.token, now)
            if not resolved.success:
                return resolved
            if resolved.data["request_id"] != request_id:
                return _fail(RequestError.TOKEN_NOT_FOUND)
            return ServiceResult(
                success=True,
                data={"capabilities": resolved.data["capabilities"]},
            )

        snapshot = self._store.get(request_id)
        if snapshot is None:
            return _fail(RequestError.NOT_FOUND, request_id)
        return ServiceResult(
            success=True,
            data={"capabilities": self._mediator.capabilities(caller, snapshot, now)},
        )

    def audit_trail(self, request_id: str, caller: Caller) -> ServiceResult:
        """Return audit descriptors for one request. Manager-tier only."""
        if isinstance(caller, PublicCaller) or not self._resolver.is_manager(
            caller.role,
        ):
            return _fail(RequestError.FORBIDDEN, "audit trail is manager-only")
        snapshot = self._store.get(request_id)
        if snapshot is None:
            return _fail(RequestError.NOT_FOUND, request_id)
        return ServiceResult(
            success=True,
            data={
                "events": [
                    e.descriptor() for e in self._event_log.events_for(request_id)
                ],
            },
        )

    def update_details(
        self,
        request_id: str,
        caller: Caller,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
        **fields: Any,
    ) -> ServiceResult:
        """Edit descriptive fields: title, description, category, priority, unit_id.

        Managers and the creator may edit while the request is not
        terminal. Status never changes through this path; an unknown
        field (``status`` included) is invalid_input. Unchanged values
        are a no-op.
        """
        if isinstance(caller, PublicCaller):
            return _fail(RequestError.FORBIDDEN, "public bearer detail edit")
        unknown = set(fields) - _EDITABLE_FIELDS
        if not fields or unknown:
            return _fail(RequestError.INVALID_INPUT, f"not editable: {sorted(unknown)}")

        changes: dict[str, Any] = {}
        for name, value in fields.items():
            if name == "priority":
                try:
                    changes[name] = _parse_priority(value)
                except ValueError:
                    return _fail(RequestError.INVALID_INPUT, f"bad priority {value!r}")
            elif name == "unit_id":
                if value is not None and not isinstance(value, str):
                    return _fail(RequestError.INVALID_INPUT, "unit_id must be a string")
                changes[name] = (value or "").strip() or None
            elif not isinstance(value, str):
                return _fail(RequestError.INVALID_INPUT, f"{name} must be a string")
            elif name == "title":
                if not value.strip():
                    return _fail(RequestError.INVALID_INPUT, "title required")
                changes[name] = value.strip()
            elif name == "category":
                changes[name] = value.strip().lower() or "general"
            else:
                changes[name] = value

        ts = _now(now)

        def mutate(request: MaintenanceRequest) -> _Outcome:
            if not self._mediator.check(
                caller, request, Operation.EDIT_DETAILS,
            ).allowed:
                return _Outcome(error=RequestError.FORBIDDEN)
            changed = sorted(
                name for name, value in changes.items()
                if getattr(request, name) != value
            )
            if not changed:
                return _Outcome(no_op=True)
            for name in changed:
                setattr(request, name, changes[name])
            request.updated_at = ts
            return _Outcome(
                events=[_PendingEvent(
                    EventKind.DETAILS_UPDATED, payload={"fields": changed},
                )],
                data={"changed": changed},
            )

        return self._mutate(request_id, caller.caller_id, expected_version, mutate, ts)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def request_transition(
        self,
        request_id: str,
        target: Union[RequestStatus, str],
        caller: Caller,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Move a request along one lifecycle edge.

        Fails invalid_transition (no such edge), forbidden (caller may not
        take this edge), precondition_failed (``assigned`` without an
        assignee) or conflict (stale version).
        """
        if isinstance(caller, PublicCaller):
            return _fail(RequestError.FORBIDDEN, "public bearer transition")
        try:
            target_status = RequestStatus(target)
        except ValueError:
            return _fail(RequestError.INVALID_TRANSITION, f"unknown status {target!r}")

        ts = _now(now)

        def mutate(request: MaintenanceRequest) -> _Outcome:
            if Operation.VIEW not in self._mediator.capabilities(caller, request):
                return _Outcome(error=RequestError.FORBIDDEN)
            check = self._state_machine.check(request, target_status, caller)
            if not check.allowed:
                logger.debug("Transition rejected: %s", check.reason)
                return _Outcome(error=check.error)
            if check.no_op:
                return _Outcome(no_op=True)
            previous = self._state_machine.apply(request, target_status, ts)
            return _Outcome(events=[_PendingEvent(
                EventKind.STATUS_CHANGE, previous.value, target_status.value,
            )])

        return self._mutate(request_id, caller.caller_id, expected_version, mutate, ts)

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign(
        self,
        request_id: str,
        assignee_id: str,
        assignee_kind: Union[AssigneeKind, str],
        caller: Caller,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Assign (or reassign) a request.

        A request still in NEW advances to ASSIGNED in the same commit.
        Reassignment in other non-terminal statuses leaves status alone.
        """
        if isinstance(caller, PublicCaller):
            return _fail(RequestError.FORBIDDEN, "public bearer assignment")
        try:
            kind = AssigneeKind(assignee_kind)
        except ValueError:
            return _fail(RequestError.INVALID_ASSIGNEE, f"bad kind {assignee_kind!r}")

        ts = _now(now)

        def mutate(request: MaintenanceRequest) -> _Outcome:
            if Operation.VIEW not in self._mediator.capabilities(caller, request):
                return _Outcome(error=RequestError.FORBIDDEN)
            check = self._assignments.check(request, assignee_id, kind, caller)
            if not check.allowed:
                logger.debug("Assignment rejected: %s", check.reason)
                return _Outcome(error=check.error)

            prior_id, _ = AssignmentResolver.apply(request, check, kind, ts)
            events = [_PendingEvent(
                EventKind.ASSIGNMENT, prior_id, check.assignee_id,
                {"assignee_kind": kind.value},
            )]

            if check.advances_status:
                transition = self._state_machine.check(
                    request, RequestStatus.ASSIGNED, caller,
                )
                if not transition.allowed:
                    logger.debug("Implicit assign transition: %s", transition.reason)
                    return _Outcome(error=transition.error)
                previous = self._state_machine.apply(
                    request, RequestStatus.ASSIGNED, ts,
                )
                events.append(_PendingEvent(
                    EventKind.STATUS_CHANGE, previous.value,
                    RequestStatus.ASSIGNED.value,
                ))
            return _Outcome(
                events=events,
                data={"assigned_to": check.assignee_id, "assigned_to_kind": kind.value},
            )

        return self._mutate(request_id, caller.caller_id, expected_version, mutate, ts)

    # ------------------------------------------------------------------
    # Public links
    # ------------------------------------------------------------------

    def enable_public_access(
        self,
        request_id: str,
        expiry_days: int,
        caller: Caller,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Issue a public link, rotating any existing token.

        ``expiry_days == 0`` means no expiry; the result then carries
        ``no_expiry=True`` so the caller can warn about broad exposure.
        """
        if isinstance(caller, PublicCaller):
            return _fail(RequestError.FORBIDDEN, "public bearer link management")
        ts = _now(now)

        def mutate(request: MaintenanceRequest) -> _Outcome:
            decision = self._mediator.check(
                caller, request, Operation.ENABLE_PUBLIC_LINK,
            )
            if not decision.allowed:
                return _Outcome(error=RequestError.FORBIDDEN)
            errors = self._tokens.check_expiry_days(expiry_days, ts)
            if errors:
                logger.debug("Link expiry rejected: %s", "; ".join(errors))
                return _Outcome(error=RequestError.INVALID_INPUT)

            was_enabled = request.public_link_enabled()
            access = self._tokens.issue(
                request.public_access, expiry_days, caller.caller_id, ts,
            )
            request.public_access = access
            request.updated_at = ts

            expires = _iso(access.expires_at)
            if access.expires_at is None:
                logger.warning(
                    "Public link on %s enabled with no expiry by %s",
                    request.request_id, caller.caller_id,
                )
            return _Outcome(
                events=[_PendingEvent(
                    EventKind.PUBLIC_LINK_ENABLED,
                    "enabled" if was_enabled else "disabled",
                    "enabled",
                    {"expires_at": expires, "rotated": was_enabled},
                )],
                data={
                    "token": access.token,
                    "expires_at": access.expires_at,
                    "public_url": self._tokens.public_url(access.token),
                    "no_expiry": access.expires_at is None,
                    "rotated": was_enabled,
                },
            )

        return self._mutate(request_id, caller.caller_id, expected_version, mutate, ts)

    def disable_public_access(
        self,
        request_id: str,
        caller: Caller,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Disable the public link. Disabling a dead link is a no-op."""
        if isinstance(caller, PublicCaller):
            return _fail(RequestError.FORBIDDEN, "public bearer link management")
        ts = _now(now)

        def mutate(request: MaintenanceRequest) -> _Outcome:
            decision = self._mediator.check(
                caller, request, Operation.DISABLE_PUBLIC_LINK,
            )
            if not decision.allowed:
                return _Outcome(error=RequestError.FORBIDDEN)
            if not request.public_link_enabled():
                return _Outcome(no_op=True)
            request.public_access = TokenIssuer.revoke(
                request.public_access, "revoked", ts,
            )
            request.updated_at = ts
            return _Outcome(events=[_PendingEvent(
                EventKind.PUBLIC_LINK_DISABLED, "enabled", "disabled",
                {"reason": "revoked"},
            )])

        return self._mutate(request_id, caller.caller_id, expected_version, mutate, ts)

    def resolve_token(
        self, token: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Resolve a public-link token to its request.

        On success ``data`` holds the request snapshot and the public
        capability set. An expired token is disabled on the spot (lazy
        expiry) and reported as token_expired; afterwards it is
        token_not_found.
        """
        if not isinstance(token, str) or not token:
            return _fail(RequestError.TOKEN_NOT_FOUND)

        snapshot = self._store.find_by_token(token)
        if (
            snapshot is None
            or not TokenIssuer.matches(snapshot.public_access, token)
            or not snapshot.public_access.enabled
        ):
            return _fail(RequestError.TOKEN_NOT_FOUND)

        ts = _now(now)
        if TokenIssuer.is_expired(snapshot.public_access, ts):
            self._expire_link(snapshot, token, ts)
            return _fail(RequestError.TOKEN_EXPIRED)

        return ServiceResult(
            success=True,
            data={
                "request_id": snapshot.request_id,
                "request": snapshot,
                "capabilities": PUBLIC_CAPABILITIES,
            },
        )

    def public_view(
        self, token: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Limited projection of a request for the public link page."""
        resolved = self.resolve_token(token, now)
        if not resolved.success:
            return resolved
        request: MaintenanceRequest = resolved.data["request"]
        return ServiceResult(
            success=True,
            data={
                "view": _public_projection(request),
                "capabilities": resolved.data["capabilities"],
            },
        )

    def public_url(self, token: str) -> str:
        return self._tokens.public_url(token)

    def _expire_link(
        self, snapshot: MaintenanceRequest, token: str, now: datetime,
    ) -> None:
        """Disable an expired link. Safe under concurrent detection.

        Retries on version conflicts until the stored link is no longer
        the live one. Every conflict means another writer committed, so the
        loop makes progress; a concurrent expiry converges it to disabled.
        """
        request_id = snapshot.request_id
        current: Optional[MaintenanceRequest] = snapshot
        while True:
            if (
                current is None
                or not TokenIssuer.matches(current.public_access, token)
                or not current.public_access.enabled
            ):
                return
            base_version = current.version
            current.public_access = TokenIssuer.revoke(
                current.public_access, "expired", now,
            )
            current.updated_at = now
            try:
                stored = self._store.save(current, expected_version=base_version)
            except ConflictError:
                logger.debug("Lazy expiry of %s lost a race; re-reading", request_id)
                current = self._store.get(request_id)
                continue
            except OSError as e:
                logger.error("Could not persist lazy expiry of %s: %s", request_id, e)
                return
            logger.warning(
                "Public link on %s expired (token %s…)", request_id, token[:8],
            )
            self._record_events(
                stored.request_id, SYSTEM_ACTOR,
                [_PendingEvent(
                    EventKind.PUBLIC_LINK_EXPIRED, "enabled", "disabled",
                    {"reason": "expired"},
                )],
                now,
            )
            return

    # ------------------------------------------------------------------
    # Comments, media, feedback
    # ------------------------------------------------------------------

    def add_comment(
        self,
        request_id: str,
        caller: Caller,
        message: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Append a comment as an authenticated caller."""
        if isinstance(caller, PublicCaller):
            return _fail(RequestError.FORBIDDEN, "use public_add_comment")
        ts = _now(now)
        entry = self._directory.get(caller.caller_id)
        comment = Comment(
            author_id=caller.caller_id,
            message=message.strip() if isinstance(message, str) else "",
            created_at=ts,
            author_name=entry.display_name if entry is not None else "",
        )
        return self._mutate(
            request_id, caller.caller_id, None,
            self._comment_mutator(caller, comment, ts), ts,
        )

    def public_add_comment(
        self,
        token: str,
        display_name: str,
        message: str,
        phone: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Append a comment as a public-link bearer."""
        resolved = self.resolve_token(token, now)
        if not resolved.success:
            return resolved
        if not display_name or not display_name.strip():
            return _fail(RequestError.INVALID_INPUT, "external name required")

        bearer = PublicCaller(token=token, display_name=display_name, phone=phone)
        ts = _now(now)
        comment = Comment(
            author_id=bearer.author_id,
            message=message.strip() if isinstance(message, str) else "",
            created_at=ts,
            author_name=display_name.strip(),
            author_external=True,
            author_phone=phone.strip(),
        )
        return self._mutate(
            resolved.data["request_id"], bearer.author_id, None,
            self._comment_mutator(bearer, comment, ts), ts,
            snapshot=resolved.data["request"],
        )

    def _comment_mutator(
        self, caller: AnyCaller, comment: Comment, ts: datetime,
    ) -> Mutator:
        def mutate(request: MaintenanceRequest) -> _Outcome:
            if not self._mediator.check(
                caller, request, Operation.COMMENT, ts,
            ).allowed:
                return _Outcome(error=RequestError.FORBIDDEN)
            if not comment.message or len(comment.message) > (
                self._resolver.max_comment_length()
            ):
                return _Outcome(error=RequestError.INVALID_INPUT)
            request.comments.append(comment)
            request.updated_at = ts
            return _Outcome(
                events=[_PendingEvent(
                    EventKind.COMMENT_ADDED,
                    payload={"external": comment.author_external},
                )],
                data={"comment_count": len(request.comments)},
            )
        return mutate

    def append_media(
        self,
        request_id: str,
        caller: Caller,
        ref: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Attach a stored file reference as an authenticated caller."""
        if isinstance(caller, PublicCaller):
            return _fail(RequestError.FORBIDDEN, "use public_append_media")
        ts = _now(now)
        media = MediaRef(ref=(ref or "").strip(), uploaded_by=caller.caller_id, uploaded_at=ts)
        return self._mutate(
            request_id, caller.caller_id, None,
            self._media_mutator(caller, media, ts), ts,
        )

    def public_append_media(
        self,
        token: str,
        display_name: str,
        ref: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Attach a stored file reference as a public-link bearer."""
        resolved = self.resolve_token(token, now)
        if not resolved.success:
            return resolved
        if not display_name or not display_name.strip():
            return _fail(RequestError.INVALID_INPUT, "external name required")

        bearer = PublicCaller(token=token, display_name=display_name)
        ts = _now(now)
        media = MediaRef(ref=(ref or "").strip(), uploaded_by=bearer.author_id, uploaded_at=ts)
        return self._mutate(
            resolved.data["request_id"], bearer.author_id, None,
            self._media_mutator(bearer, media, ts), ts,
            snapshot=resolved.data["request"],
        )

    def _media_mutator(
        self, caller: AnyCaller, media: MediaRef, ts: datetime,
    ) -> Mutator:
        def mutate(request: MaintenanceRequest) -> _Outcome:
            if not self._mediator.check(
                caller, request, Operation.UPLOAD_MEDIA, ts,
            ).allowed:
                return _Outcome(error=RequestError.FORBIDDEN)
            if not media.ref:
                return _Outcome(error=RequestError.INVALID_INPUT)
            request.media.append(media)
            request.updated_at = ts
            return _Outcome(
                events=[_PendingEvent(
                    EventKind.MEDIA_ADDED, to_value=media.ref,
                )],
                data={"media_count": len(request.media)},
            )
        return mutate

    def remove_media(
        self,
        request_id: str,
        caller: Caller,
        ref: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Remove a media reference. Manager-tier only."""
        if isinstance(caller, PublicCaller):
            return _fail(RequestError.FORBIDDEN, "public bearer media removal")
        ts = _now(now)

        def mutate(request: MaintenanceRequest) -> _Outcome:
            if not self._mediator.check(
                caller, request, Operation.REMOVE_MEDIA,
            ).allowed:
                return _Outcome(error=RequestError.FORBIDDEN)
            kept = [m for m in request.media if m.ref != ref]
            if len(kept) == len(request.media):
                return _Outcome(error=RequestError.NOT_FOUND)
            request.media = kept
            request.updated_at = ts
            return _Outcome(
                events=[_PendingEvent(EventKind.MEDIA_REMOVED, from_value=ref)],
                data={"media_count": len(kept)},
            )

        return self._mutate(request_id, caller.caller_id, None, mutate, ts)

    def submit_feedback(
        self,
        request_id: str,
        caller: Caller,
        rating: int,
        comment: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Record the creator's rating once work is completed or verified."""
        if isinstance(caller, PublicCaller):
            return _fail(RequestError.FORBIDDEN, "public bearer feedback")
        ts = _now(now)
        low, high = self._resolver.feedback_rating_range()

        def mutate(request: MaintenanceRequest) -> _Outcome:
            allowed = self._mediator.check(
                caller, request, Operation.SUBMIT_FEEDBACK,
            ).allowed
            if not allowed:
                if caller.caller_id == request.created_by:
                    return _Outcome(error=RequestError.PRECONDITION_FAILED)
                return _Outcome(error=RequestError.FORBIDDEN)
            if (
                isinstance(rating, bool)
                or not isinstance(rating, int)
                or not low <= rating <= high
                or len(comment) > self._resolver.max_comment_length()
            ):
                return _Outcome(error=RequestError.INVALID_INPUT)
            request.feedback = Feedback(
                rating=rating,
                comment=comment.strip(),
                submitted_by=caller.caller_id,
                submitted_at=ts,
            )
            request.updated_at = ts
            return _Outcome(
                events=[_PendingEvent(
                    EventKind.FEEDBACK_SUBMITTED, to_value=str(rating),
                )],
                data={"rating": rating},
            )

        return self._mutate(request_id, caller.caller_id, None, mutate, ts)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Summary for operators."""
        return {
            "requests": {
                "total": self._store.count,
                "by_status": self._store.count_by_status(),
            },
            "audit_events": self._event_log.count,
            "audit_degraded": self._audit_degraded,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _mutate(
        self,
        request_id: str,
        actor_id: str,
        expected_version: Optional[int],
        mutator: Mutator,
        ts: datetime,
        snapshot: Optional[MaintenanceRequest] = None,
    ) -> ServiceResult:
        """Read-modify-write one aggregate under its version check.

        The mutator works on a private snapshot; nothing is visible to
        other callers until the compare-and-swap succeeds. Audit events
        are recorded only after that.
        """
        if snapshot is None:
            snapshot = self._store.get(request_id)
        if snapshot is None:
            return _fail(RequestError.NOT_FOUND, request_id)
        if expected_version is not None and snapshot.version != expected_version:
            logger.warning(
                "Stale write on %s by %s: expected %d, found %d",
                request_id, actor_id, expected_version, snapshot.version,
            )
            return _fail(RequestError.CONFLICT)

        base_version = snapshot.version
        outcome = mutator(snapshot)
        if outcome.error is not None:
            return _fail(outcome.error, f"{request_id} by {actor_id}")
        if outcome.no_op:
            return ServiceResult(
                success=True,
                data={
                    "request_id": request_id,
                    "status": snapshot.status.value,
                    "version": base_version,
                    "request": snapshot,
                    "no_op": True,
                    **outcome.data,
                },
            )

        try:
            stored = self._store.save(snapshot, expected_version=base_version)
        except ConflictError:
            return _fail(RequestError.CONFLICT)
        except KeyError:
            return _fail(RequestError.NOT_FOUND, request_id)
        except OSError as e:
            logger.error("Could not persist %s: %s", request_id, e)
            return _fail(RequestError.PERSISTENCE_FAILURE)

        for pending in outcome.events:
            logger.info(
                "%s on %s by %s (%s -> %s)",
                pending.kind.value, request_id, actor_id,
                pending.from_value, pending.to_value,
            )
        data: dict[str, Any] = {
            "request_id": request_id,
            "status": stored.status.value,
            "version": stored.version,
            "request": stored,
            **outcome.data,
        }
        recorded: list[AuditEvent] = []
        warning = self._record_events(
            request_id, actor_id, outcome.events, ts, recorded,
        )
        data["events"] = [e.descriptor() for e in recorded]
        status_events = [
            e for e in recorded if e.event_kind == EventKind.STATUS_CHANGE
        ]
        if status_events:
            data["event"] = status_events[-1].descriptor()
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def _record_events(
        self,
        request_id: str,
        actor_id: str,
        pending: list[_PendingEvent],
        ts: datetime,
        recorded: Optional[list[AuditEvent]] = None,
    ) -> Optional[str]:
        """Append audit events for a committed mutation.

        MUST NOT roll back the aggregate: it is already committed. On a
        failed append the degraded flag is set and a warning returned.
        """
        for p in pending:
            try:
                event = AuditEvent.create(
                    event_id=self._event_log.next_event_id(),
                    event_kind=p.kind,
                    request_id=request_id,
                    actor_id=actor_id,
                    from_value=p.from_value,
                    to_value=p.to_value,
                    payload=dict(p.payload),
                    timestamp_utc=ts,
                )
                self._event_log.append(event)
            except (ValueError, OSError) as e:
                self._audit_degraded = True
                logger.error(
                    "Audit append failed for %s on %s: %s",
                    p.kind.value, request_id, e,
                )
                return AUDIT_DEGRADED
            if recorded is not None:
                recorded.append(event)
        return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ") if value else None


def _public_projection(request: MaintenanceRequest) -> dict[str, Any]:
    """Fields a public-link bearer may see.

    Excludes the creator's id, feedback, and all token history.
    """
    access = request.public_access
    return {
        "request_id": request.request_id,
        "title": request.title,
        "description": request.description,
        "category": request.category,
        "priority": request.priority.value,
        "status": request.status.value,
        "property_id": request.property_id,
        "unit_id": request.unit_id,
        "assigned_to": request.assigned_to,
        "assigned_to_kind": (
            request.assigned_to_kind.value if request.assigned_to_kind else None
        ),
        "media": [m.ref for m in request.media],
        "comments": [
            {
                "author": c.author_name or c.author_id,
                "external": c.author_external,
                "message": c.message,
                "created_at": _iso(c.created_at),
            }
            for c in request.comments
        ],
        "created_at": _iso(request.created_at),
        "updated_at": _iso(request.updated_at),
        "link_expires_at": _iso(access.expires_at) if access else None,
    }
