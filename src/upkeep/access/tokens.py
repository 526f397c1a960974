"""Token issuer — opaque, expiring capabilities for public request links.

A token grants its bearer view/comment/upload rights on exactly one
request without an account. Properties:
- Tokens come from ``secrets`` with at least 128 bits of entropy.
- Issuing on a request that already has a token rotates it: the old
  token is retired in the same record, so at most one token per request
  ever resolves.
- Disabling keeps the token on the record, marked dead, for audit.
- Expiry is lazy: detected when a bearer presents the token.

Pure computation over PublicAccess records; the service persists them.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from upkeep.models.request import PublicAccess, RetiredToken
from upkeep.policy.resolver import PolicyResolver


class TokenIssuer:
    """Issues, rotates, revokes and expires public-link tokens."""

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def check_expiry_days(
        self, expiry_days: Any, now: Optional[datetime] = None,
    ) -> list[str]:
        """Validate requested expiry days. Returns list of errors.

        0 means no expiry. The upper bound is a policy setting and may be
        absent (unbounded); the expiry date must still be representable.
        """
        if isinstance(expiry_days, bool) or not isinstance(expiry_days, int):
            return [f"Expiry days must be an integer, got {expiry_days!r}"]
        if expiry_days < 0:
            return [f"Expiry days must be >= 0, got {expiry_days}"]
        max_days = self._resolver.max_link_expiry_days()
        if max_days is not None and expiry_days > max_days:
            return [f"Expiry days {expiry_days} exceeds maximum {max_days}"]
        try:
            (now or datetime.now(timezone.utc)) + timedelta(days=expiry_days)
        except (OverflowError, ValueError):
            return [f"Expiry days {expiry_days} is past the latest supported date"]
        return []

    def new_token(self) -> str:
        return secrets.token_urlsafe(self._resolver.token_bytes())

    def issue(
        self,
        current: Optional[PublicAccess],
        expiry_days: int,
        issued_by: str,
        now: Optional[datetime] = None,
    ) -> PublicAccess:
        """Return a fresh, enabled PublicAccess replacing ``current``."""
        now = now or datetime.now(timezone.utc)
        retired: list[RetiredToken] = []
        if current is not None:
            retired = list(current.retired_tokens)
            if current.token:
                reason = "rotated" if current.enabled else (
                    current.disabled_reason or "revoked"
                )
                retired.append(RetiredToken(
                    fingerprint=fingerprint(current.token),
                    retired_at=now,
                    reason=reason,
                ))

        expires_at = None if expiry_days == 0 else now + timedelta(days=expiry_days)
        return PublicAccess(
            token=self.new_token(),
            enabled=True,
            expires_at=expires_at,
            enabled_at=now,
            enabled_by=issued_by,
            retired_tokens=retired,
        )

    @staticmethod
    def revoke(
        current: PublicAccess,
        reason: str = "revoked",
        now: Optional[datetime] = None,
    ) -> PublicAccess:
        """Return a disabled copy of ``current``. The token stays, marked dead."""
        return replace(
            current,
            enabled=False,
            disabled_at=now or datetime.now(timezone.utc),
            disabled_reason=reason,
            retired_tokens=list(current.retired_tokens),
        )

    @staticmethod
    def is_expired(access: PublicAccess, now: Optional[datetime] = None) -> bool:
        """True if the link has an expiry and it has passed."""
        if access.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now >= access.expires_at

    @staticmethod
    def matches(access: Optional[PublicAccess], token: str) -> bool:
        """Constant-time comparison of a presented token with the live one."""
        if access is None or not access.token:
            return False
        return hmac.compare_digest(access.token, token)

    def public_url(self, token: str) -> str:
        """Build the public page URL. The token is the only credential."""
        return f"{self._resolver.public_origin()}/public/requests/{token}"


def fingerprint(token: str) -> str:
    """SHA-256 fingerprint used to record retired tokens."""
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()
