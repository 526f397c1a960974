"""Access module — capability sets and public-link tokens."""

from upkeep.access.mediator import (
    PUBLIC_CAPABILITIES,
    AccessDecision,
    AccessMediator,
    Operation,
)
from upkeep.access.tokens import TokenIssuer, fingerprint

__all__ = [
    "PUBLIC_CAPABILITIES",
    "AccessDecision",
    "AccessMediator",
    "Operation",
    "TokenIssuer",
    "fingerprint",
]
