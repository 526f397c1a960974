"""Caller identities — who is acting on a request.

Two kinds of caller reach the core:
- Caller: an authenticated platform user with a role, supplied by the
  identity provider. Sessions and credentials are not handled here.
- PublicCaller: the bearer of a public-link token. Carries only a
  self-declared display name; it never maps to a platform role.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class Role(str, enum.Enum):
    """Platform roles as issued by the identity provider."""
    TENANT = "tenant"
    VENDOR = "vendor"
    PROPERTY_MANAGER = "propertymanager"
    LANDLORD = "landlord"
    ADMIN = "admin"


@dataclass(frozen=True)
class Caller:
    """An authenticated caller."""
    caller_id: str
    role: Role


@dataclass(frozen=True)
class PublicCaller:
    """A public-link bearer. The token is the only credential."""
    token: str
    display_name: str = ""
    phone: str = ""

    @property
    def author_id(self) -> str:
        return f"external:{self.display_name.strip() or 'anonymous'}"
