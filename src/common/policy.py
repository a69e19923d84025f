from __future__ import annotations

import json
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Protocol

from .identity import normalize_identity


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls, reason: Optional[str] = None) -> "PolicyDecision":
        return cls(True, reason)

    @classmethod
    def deny(cls, reason: str) -> "PolicyDecision":
        return cls(False, reason)


class AuthorizationPolicy(Protocol):
    """Decides whether `requester` may learn the plaintext of record `record_id`."""

    def evaluate(self, record_id: str, requester: str) -> PolicyDecision: ...


class AllowAllPolicy:
    """Placeholder policy: every requester is allowed."""

    def evaluate(self, record_id: str, requester: str) -> PolicyDecision:
        return PolicyDecision.allow("allow-all policy")


def _canonical(token: str) -> str:
    try:
        return normalize_identity(token)
    except ValueError:
        return token.strip().lower()


def parse_allowed_requesters(raw: Optional[str]) -> FrozenSet[str]:
    """Parse requester identities from a JSON array or CSV string.

    Accepts either:
    - JSON array: '["0xab..", "0xcd.."]'
    - CSV (commas/newlines/spaces treated as separators): "0xab.., 0xcd.."

    Identities are normalized to lowercase `0x` form. Empty or invalid input
    yields an empty set.
    """
    if not raw or not isinstance(raw, str):
        return frozenset()

    tokens: List[str] = []
    try:
        data = json.loads(raw)
    except ValueError:
        data = None
    if isinstance(data, list):
        tokens = [item for item in data if isinstance(item, str)]
    else:
        norm = raw.replace("\n", ",").replace(" ", ",")
        for tok in norm.split(","):
            tok = tok.strip()
            if len(tok) >= 2 and tok[0] == tok[-1] and tok[0] in "\"'":
                tok = tok[1:-1]
            tokens.append(tok)

    return frozenset(_canonical(t) for t in tokens if t.strip())


class AllowlistPolicy:
    """
    Allow only requesters on an explicit allowlist.

    An empty allowlist means no allowlist is configured; every requester is
    allowed, matching the placeholder behaviour of `AllowAllPolicy`.
    """

    def __init__(self, allowed: Iterable[str]) -> None:
        self._allowed = frozenset(_canonical(a) for a in allowed if a and a.strip())

    @classmethod
    def from_raw(cls, raw: Optional[str]) -> "AllowlistPolicy":
        return cls(parse_allowed_requesters(raw))

    @property
    def is_open(self) -> bool:
        return not self._allowed

    def evaluate(self, record_id: str, requester: str) -> PolicyDecision:
        if not self._allowed:
            return PolicyDecision.allow("no allowlist configured")
        if _canonical(requester) in self._allowed:
            return PolicyDecision.allow("requester on allowlist")
        return PolicyDecision.deny(f"requester {requester} not on allowlist")


__all__ = [
    "AllowAllPolicy",
    "AllowlistPolicy",
    "AuthorizationPolicy",
    "PolicyDecision",
    "parse_allowed_requesters",
]
