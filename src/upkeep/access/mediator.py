"""Access mediator — the capability set a caller holds on a request.

Pure computation: ``(caller, request) -> frozenset[Operation]``. No I/O,
no mutation. Every role check in the core goes through here.

Authenticated callers receive the union of:
- manager-tier baseline (assign, every lifecycle edge, link management,
  media removal, detail edits)
- creator rights (view, comment, upload, detail edits until the request
  is terminal, feedback once work is done, configured creator edges)
- assignee rights (view, comment, upload, configured forward edges)

Public-link bearers receive PUBLIC_CAPABILITIES and nothing else,
whatever the underlying request looks like, and only while their token
is the live unexpired link of that request. Nobody may delete comments.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from upkeep.access.tokens import TokenIssuer
from upkeep.models.caller import Caller, PublicCaller
from upkeep.models.request import (
    ALLOWED_TRANSITIONS,
    MaintenanceRequest,
    RequestStatus,
)
from upkeep.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)

AnyCaller = Union[Caller, PublicCaller]


class Operation(str, enum.Enum):
    """Operations a caller may invoke on a request."""
    VIEW = "view"
    COMMENT = "comment"
    UPLOAD_MEDIA = "upload_media"
    REMOVE_MEDIA = "remove_media"
    TRANSITION = "transition"
    ASSIGN = "assign"
    ENABLE_PUBLIC_LINK = "enable_public_link"
    DISABLE_PUBLIC_LINK = "disable_public_link"
    SUBMIT_FEEDBACK = "submit_feedback"
    EDIT_DETAILS = "edit_details"


PUBLIC_CAPABILITIES: frozenset[Operation] = frozenset({
    Operation.VIEW,
    Operation.COMMENT,
    Operation.UPLOAD_MEDIA,
})

_PARTICIPANT_BASELINE: frozenset[Operation] = frozenset({
    Operation.VIEW,
    Operation.COMMENT,
    Operation.UPLOAD_MEDIA,
})

_FEEDBACK_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.VERIFIED})


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of a single capability check.

    ``reason`` is for operator logs only and must never reach a caller.
    """
    allowed: bool
    reason: str = ""


class AccessMediator:
    """Computes capability sets and per-edge transition grants."""

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def capabilities(
        self,
        caller: AnyCaller,
        request: MaintenanceRequest,
        now: Optional[datetime] = None,
    ) -> frozenset[Operation]:
        """Return every operation the caller may invoke right now.

        A public bearer holds PUBLIC_CAPABILITIES only while its token is
        the live, unexpired link of this request; otherwise nothing.
        """
        if isinstance(caller, PublicCaller):
            if self._holds_live_link(caller, request, now):
                return PUBLIC_CAPABILITIES
            return frozenset()

        ops: set[Operation] = set()
        is_manager = self._resolver.is_manager(caller.role)

        if is_manager:
            ops |= _PARTICIPANT_BASELINE
            ops |= {Operation.REMOVE_MEDIA, Operation.DISABLE_PUBLIC_LINK}
            if not request.is_terminal():
                ops |= {
                    Operation.ASSIGN,
                    Operation.ENABLE_PUBLIC_LINK,
                    Operation.EDIT_DETAILS,
                }

        if self._is_creator(caller, request):
            ops |= _PARTICIPANT_BASELINE
            if not request.is_terminal():
                ops.add(Operation.EDIT_DETAILS)
            if request.status in _FEEDBACK_STATUSES and request.feedback is None:
                ops.add(Operation.SUBMIT_FEEDBACK)

        if self._is_assignee(caller, request):
            ops |= _PARTICIPANT_BASELINE

        if self.permitted_targets(caller, request):
            ops.add(Operation.TRANSITION)

        return frozenset(ops)

    def permitted_targets(
        self, caller: AnyCaller, request: MaintenanceRequest,
    ) -> frozenset[RequestStatus]:
        """Target statuses this caller may move the request to."""
        if isinstance(caller, PublicCaller):
            return frozenset()

        outgoing = ALLOWED_TRANSITIONS[request.status]
        if self._resolver.is_manager(caller.role):
            return outgoing

        targets: set[RequestStatus] = set()
        if self._is_assignee(caller, request):
            targets |= {
                t for s, t in self._resolver.assignee_edges()
                if s == request.status
            }
        if self._is_creator(caller, request):
            targets |= {
                t for s, t in self._resolver.creator_edges()
                if s == request.status
            }
        return frozenset(targets & outgoing)

    def check(
        self,
        caller: AnyCaller,
        request: MaintenanceRequest,
        operation: Operation,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        """Check a single operation against the computed capability set."""
        if operation in self.capabilities(caller, request, now):
            return AccessDecision(allowed=True)
        reason = (
            f"{_describe(caller)} lacks {operation.value} on "
            f"{request.request_id} (status={request.status.value})"
        )
        logger.debug("Access denied: %s", reason)
        return AccessDecision(allowed=False, reason=reason)

    def check_edge(
        self,
        caller: AnyCaller,
        request: MaintenanceRequest,
        target: RequestStatus,
    ) -> AccessDecision:
        """Check that the caller may take the edge request.status -> target."""
        if target in self.permitted_targets(caller, request):
            return AccessDecision(allowed=True)
        reason = (
            f"{_describe(caller)} may not move {request.request_id} "
            f"{request.status.value} -> {target.value}"
        )
        logger.debug("Edge denied: %s", reason)
        return AccessDecision(allowed=False, reason=reason)

    @staticmethod
    def _holds_live_link(
        caller: PublicCaller,
        request: MaintenanceRequest,
        now: Optional[datetime],
    ) -> bool:
        access = request.public_access
        return (
            access is not None
            and access.enabled
            and TokenIssuer.matches(access, caller.token)
            and not TokenIssuer.is_expired(access, now)
        )

    @staticmethod
    def _is_creator(caller: Caller, request: MaintenanceRequest) -> bool:
        return caller.caller_id == request.created_by

    @staticmethod
    def _is_assignee(caller: Caller, request: MaintenanceRequest) -> bool:
        return (
            request.assigned_to is not None
            and caller.caller_id == request.assigned_to
        )


def _describe(caller: AnyCaller) -> str:
    if isinstance(caller, PublicCaller):
        return f"public bearer {caller.token[:8]}…"
    return f"{caller.role.value}:{caller.caller_id}"
