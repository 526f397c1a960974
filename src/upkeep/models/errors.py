"""Typed failure kinds returned across the service boundary.

Kinds carry no human-readable text; the calling layer owns wording.
"""

from __future__ import annotations

import enum


class RequestError(str, enum.Enum):
    INVALID_TRANSITION = "invalid_transition"
    PRECONDITION_FAILED = "precondition_failed"
    INVALID_ASSIGNEE = "invalid_assignee"
    FORBIDDEN = "forbidden"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_EXPIRED = "token_expired"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    PERSISTENCE_FAILURE = "persistence_failure"


class ConflictError(Exception):
    """Raised by the store when a save targets a stale version."""

    def __init__(self, request_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Version conflict on {request_id}: expected {expected}, found {actual}"
        )
        self.request_id = request_id
        self.expected = expected
        self.actual = actual
