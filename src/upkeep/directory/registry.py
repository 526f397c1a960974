"""Party directory — registry of users and vendors that can be assigned.

The directory is the core's view of the identity/role provider. It tracks:
- Platform users with their role (tenant, vendor, manager-tier roles)
- Vendors (external companies, usually without platform accounts)
- Availability status (suspended parties cannot receive assignments)

Invariants enforced:
- Party IDs are canonicalised (stripped) and never blank.
- Users always carry a role; vendors never do.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from upkeep.models.caller import Role


class PartyKind(str, enum.Enum):
    USER = "user"
    VENDOR = "vendor"


class PartyStatus(str, enum.Enum):
    """Operational status of a directory party."""
    ACTIVE = "active"
    SUSPENDED = "suspended"


@dataclass
class PartyEntry:
    """A single party in the directory."""
    party_id: str
    kind: PartyKind
    display_name: str = ""
    role: Optional[Role] = None
    status: PartyStatus = PartyStatus.ACTIVE

    def is_available(self) -> bool:
        return self.status == PartyStatus.ACTIVE


class PartyDirectory:
    """Registry of all assignable parties.

    Thread-safety: reads are safe; registration is expected to happen
    during setup or from a single admin thread.
    """

    def __init__(self) -> None:
        self._parties: dict[str, PartyEntry] = {}

    def register(self, entry: PartyEntry) -> None:
        """Register a new party or update an existing one.

        Raises ValueError if:
        - party_id is blank/empty
        - a user has no role, or a vendor has one
        """
        canonical_id = entry.party_id.strip()
        if not canonical_id:
            raise ValueError("Cannot register party with blank ID")
        if entry.kind == PartyKind.USER and entry.role is None:
            raise ValueError(f"User {canonical_id} must have a role")
        if entry.kind == PartyKind.VENDOR and entry.role is not None:
            raise ValueError(f"Vendor {canonical_id} cannot carry a user role")
        entry.party_id = canonical_id
        self._parties[canonical_id] = entry

    def remove(self, party_id: str) -> None:
        self._parties.pop(party_id.strip(), None)

    def get(self, party_id: str) -> Optional[PartyEntry]:
        return self._parties.get(party_id.strip())

    def suspend(self, party_id: str) -> bool:
        """Suspend a party. Returns False if unknown."""
        entry = self.get(party_id)
        if entry is None:
            return False
        entry.status = PartyStatus.SUSPENDED
        return True

    def all_parties(self) -> list[PartyEntry]:
        return list(self._parties.values())

    def vendors(self) -> list[PartyEntry]:
        return [p for p in self._parties.values() if p.kind == PartyKind.VENDOR]

    def users_with_roles(self, roles: frozenset[Role]) -> list[PartyEntry]:
        """Return available users holding one of the given roles."""
        return [
            p for p in self._parties.values()
            if p.kind == PartyKind.USER and p.role in roles and p.is_available()
        ]

    @property
    def count(self) -> int:
        return len(self._parties)
