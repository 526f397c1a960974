"""Policy resolver — loads runtime_policy.json and exposes every runtime
decision as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from upkeep.models.caller import Role
from upkeep.models.request import ALLOWED_TRANSITIONS, RequestStatus

# Edges that only a manager-tier role may ever take.
_MANAGER_ONLY_TARGETS = frozenset({RequestStatus.VERIFIED, RequestStatus.ARCHIVED})

# 128 bits of entropy is the floor for a public-link capability.
MIN_TOKEN_BYTES = 16

Edge = tuple[RequestStatus, RequestStatus]


class PolicyResolver:
    """Loads and resolves runtime policy for the request core.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        resolver.is_manager(Role.LANDLORD)
        resolver.assignee_edges()
    """

    def __init__(self, policy: dict[str, Any]) -> None:
        self._policy = policy
        self._validate_version()
        self._manager_roles = self._parse_roles(policy["roles"]["manager_tier"])
        self._creator_roles = self._parse_roles(policy["roles"]["request_creators"])
        self._assignee_edges = self._parse_edges(
            policy["transitions"]["assignee_edges"], "assignee_edges",
        )
        self._creator_edges = self._parse_edges(
            policy["transitions"]["creator_edges"], "creator_edges",
        )
        self._validate_public_link()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        return cls(_load_json(config_dir / "runtime_policy.json"))

    def _validate_version(self) -> None:
        if "version" not in self._policy:
            raise ValueError("runtime_policy.json missing version")

    def _validate_public_link(self) -> None:
        pl = self._policy["public_link"]
        if pl["token_bytes"] < MIN_TOKEN_BYTES:
            raise ValueError(
                f"public_link.token_bytes must be >= {MIN_TOKEN_BYTES}, "
                f"got {pl['token_bytes']}"
            )
        max_days = pl["max_expiry_days"]
        if max_days is not None and max_days < 1:
            raise ValueError(
                f"public_link.max_expiry_days must be null or >= 1, got {max_days}"
            )

    @staticmethod
    def _parse_roles(raw: list[str]) -> frozenset[Role]:
        return frozenset(Role(r) for r in raw)

    @staticmethod
    def _parse_edges(raw: list[list[str]], key: str) -> frozenset[Edge]:
        edges: set[Edge] = set()
        for source, target in raw:
            edge = (RequestStatus(source), RequestStatus(target))
            if edge[1] not in ALLOWED_TRANSITIONS[edge[0]]:
                raise ValueError(
                    f"transitions.{key}: {source} -> {target} is not a lifecycle edge"
                )
            if edge[1] in _MANAGER_ONLY_TARGETS:
                raise ValueError(
                    f"transitions.{key}: {source} -> {target} is manager-only"
                )
            edges.add(edge)
        return frozenset(edges)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def manager_roles(self) -> frozenset[Role]:
        """Roles permitted to assign, verify, archive and manage links."""
        return self._manager_roles

    def is_manager(self, role: Role) -> bool:
        return role in self._manager_roles

    def can_create_requests(self, role: Role) -> bool:
        return role in self._creator_roles

    # ------------------------------------------------------------------
    # Transition grants for non-manager callers
    # ------------------------------------------------------------------

    def assignee_edges(self) -> frozenset[Edge]:
        """Forward edges the current assignee may take."""
        return self._assignee_edges

    def creator_edges(self) -> frozenset[Edge]:
        """Edges the request creator may take."""
        return self._creator_edges

    # ------------------------------------------------------------------
    # Public link
    # ------------------------------------------------------------------

    def token_bytes(self) -> int:
        return self._policy["public_link"]["token_bytes"]

    def public_origin(self) -> str:
        return self._policy["public_link"]["origin"].rstrip("/")

    def max_link_expiry_days(self) -> Optional[int]:
        """Upper bound on requested expiry days. None means unbounded."""
        return self._policy["public_link"]["max_expiry_days"]

    # ------------------------------------------------------------------
    # Comments and feedback
    # ------------------------------------------------------------------

    def max_comment_length(self) -> int:
        return self._policy["comments"]["max_length"]

    def feedback_rating_range(self) -> tuple[int, int]:
        """Return (min_rating, max_rating), inclusive."""
        fb = self._policy["feedback"]
        return fb["min_rating"], fb["max_rating"]


def _load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file or raise with clear path."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
