"""Request state machine — validates lifecycle transitions.

Validates but does not persist: the service applies the result to a
snapshot and commits it through the store's version check.

Check order for a requested move:
1. The edge exists in ALLOWED_TRANSITIONS (else invalid_transition).
2. The caller may take this specific edge (else forbidden).
3. Dependent state is present, e.g. an assignee before ``assigned``
   (else precondition_failed).

Archived and canceled are terminal. Reopening never un-archives.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from upkeep.access.mediator import AccessMediator, AnyCaller
from upkeep.models.caller import Caller
from upkeep.models.errors import RequestError
from upkeep.models.request import (
    ALLOWED_TRANSITIONS,
    MaintenanceRequest,
    RequestStatus,
)
from upkeep.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionCheck:
    """Result of validating one requested move.

    ``no_op`` marks an accepted request that needs no mutation (confirming
    ``assigned`` on a request that is already assigned).
    """
    allowed: bool
    error: Optional[RequestError] = None
    reason: str = ""
    no_op: bool = False


class RequestStateMachine:
    """Validates and applies status changes on a request aggregate."""

    def __init__(self, resolver: PolicyResolver, mediator: AccessMediator) -> None:
        self._resolver = resolver
        self._mediator = mediator

    @staticmethod
    def is_edge(source: RequestStatus, target: RequestStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[source]

    def check(
        self,
        request: MaintenanceRequest,
        target: RequestStatus,
        caller: AnyCaller,
    ) -> TransitionCheck:
        current = request.status

        if (
            target == current == RequestStatus.ASSIGNED
            and request.has_assignee()
            and isinstance(caller, Caller)
            and self._resolver.is_manager(caller.role)
        ):
            # assign() already moved new -> assigned; confirming is a no-op.
            return TransitionCheck(allowed=True, no_op=True)

        if not self.is_edge(current, target):
            return TransitionCheck(
                allowed=False,
                error=RequestError.INVALID_TRANSITION,
                reason=f"No edge {current.value} -> {target.value}",
            )

        decision = self._mediator.check_edge(caller, request, target)
        if not decision.allowed:
            return TransitionCheck(
                allowed=False,
                error=RequestError.FORBIDDEN,
                reason=decision.reason,
            )

        if target == RequestStatus.ASSIGNED and not request.has_assignee():
            return TransitionCheck(
                allowed=False,
                error=RequestError.PRECONDITION_FAILED,
                reason=f"{request.request_id} has no assignee",
            )

        return TransitionCheck(allowed=True)

    @staticmethod
    def apply(
        request: MaintenanceRequest,
        target: RequestStatus,
        now: Optional[datetime] = None,
    ) -> RequestStatus:
        """Apply a validated transition in place. Returns the prior status."""
        now = now or datetime.now(timezone.utc)
        previous = request.status
        request.status = target
        request.updated_at = now

        if target == RequestStatus.COMPLETED:
            request.resolved_at = now
        elif target in (RequestStatus.REOPENED, RequestStatus.IN_PROGRESS):
            request.resolved_at = None
        elif target == RequestStatus.CANCELED:
            request.assigned_to = None
            request.assigned_to_kind = None

        logger.debug(
            "Applied %s -> %s on %s",
            previous.value, target.value, request.request_id,
        )
        return previous
