"""Directory module — users and vendors known to the request core."""

from upkeep.directory.registry import (
    PartyDirectory,
    PartyEntry,
    PartyKind,
    PartyStatus,
)

__all__ = [
    "PartyDirectory",
    "PartyEntry",
    "PartyKind",
    "PartyStatus",
]
