"""Assignment resolver — validates who a request may be assigned to.

Pure computation over a snapshot. The service applies the result and,
for a request still in ``new``, advances it to ``assigned`` through the
state machine in the same commit.

Requirements:
1. The caller holds a manager-tier role (else forbidden).
2. The request is not archived or canceled (else precondition_failed).
3. Internal-user assignees are active users holding a manager-tier role;
   vendor assignees are active directory vendors (else invalid_assignee).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from upkeep.access.mediator import AccessMediator, AnyCaller, Operation
from upkeep.directory.registry import PartyDirectory, PartyKind
from upkeep.models.errors import RequestError
from upkeep.models.request import AssigneeKind, MaintenanceRequest, RequestStatus
from upkeep.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssignmentCheck:
    """Result of validating an assignment."""
    allowed: bool
    error: Optional[RequestError] = None
    reason: str = ""
    assignee_id: str = ""
    advances_status: bool = False


class AssignmentResolver:
    """Validates assignees against the directory and caller rights."""

    def __init__(
        self,
        resolver: PolicyResolver,
        mediator: AccessMediator,
        directory: PartyDirectory,
    ) -> None:
        self._resolver = resolver
        self._mediator = mediator
        self._directory = directory

    def check(
        self,
        request: MaintenanceRequest,
        assignee_id: str,
        assignee_kind: AssigneeKind,
        caller: AnyCaller,
    ) -> AssignmentCheck:
        if request.is_terminal():
            # Terminal requests drop ASSIGN from every capability set, so
            # separate that case from a plain lack of rights first.
            if not self._is_manager(caller):
                return self._forbidden(caller, request)
            return AssignmentCheck(
                allowed=False,
                error=RequestError.PRECONDITION_FAILED,
                reason=f"{request.request_id} is {request.status.value}",
            )

        if not self._mediator.check(caller, request, Operation.ASSIGN).allowed:
            return self._forbidden(caller, request)

        canonical = assignee_id.strip()
        errors = self._assignee_errors(canonical, assignee_kind)
        if errors:
            reason = "; ".join(errors)
            logger.debug("Assignee rejected on %s: %s", request.request_id, reason)
            return AssignmentCheck(
                allowed=False,
                error=RequestError.INVALID_ASSIGNEE,
                reason=reason,
            )

        return AssignmentCheck(
            allowed=True,
            assignee_id=canonical,
            advances_status=request.status == RequestStatus.NEW,
        )

    def _assignee_errors(
        self, assignee_id: str, kind: AssigneeKind,
    ) -> list[str]:
        if not assignee_id:
            return ["Assignee ID is blank"]

        entry = self._directory.get(assignee_id)
        if entry is None:
            return [f"Unknown assignee: {assignee_id}"]

        errors: list[str] = []
        if not entry.is_available():
            errors.append(f"Assignee {assignee_id} is {entry.status.value}")

        if kind == AssigneeKind.VENDOR:
            if entry.kind != PartyKind.VENDOR:
                errors.append(f"{assignee_id} is not a vendor")
        else:
            if entry.kind != PartyKind.USER:
                errors.append(f"{assignee_id} is not a platform user")
            elif not self._resolver.is_manager(entry.role):
                errors.append(
                    f"Internal assignee {assignee_id} has role "
                    f"{entry.role.value}; manager-tier role required"
                )
        return errors

    def _is_manager(self, caller: AnyCaller) -> bool:
        role = getattr(caller, "role", None)
        return role is not None and self._resolver.is_manager(role)

    @staticmethod
    def _forbidden(
        caller: AnyCaller, request: MaintenanceRequest,
    ) -> AssignmentCheck:
        return AssignmentCheck(
            allowed=False,
            error=RequestError.FORBIDDEN,
            reason=f"Caller may not assign {request.request_id}",
        )

    @staticmethod
    def apply(
        request: MaintenanceRequest,
        check: AssignmentCheck,
        assignee_kind: AssigneeKind,
        now: Optional[datetime] = None,
    ) -> tuple[Optional[str], Optional[AssigneeKind]]:
        """Apply a validated assignment in place. Returns the prior assignee."""
        previous = (request.assigned_to, request.assigned_to_kind)
        request.assigned_to = check.assignee_id
        request.assigned_to_kind = assignee_kind
        request.updated_at = now or datetime.now(timezone.utc)
        return previous
