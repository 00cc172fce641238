"""
Role-based access decisions over ``(role, resource, action)`` policies.

The engine holds an immutable ``PolicySnapshot``. Reloads build a fresh snapshot and
swap the reference; ``decide`` reads that reference once per call and never locks.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from sqlalchemy.exc import SQLAlchemyError

from authcore.core.errors import AuthError, PolicyEngineError

logger = logging.getLogger(__name__)

WILDCARD = "*"

DEFAULT_POLICIES: tuple[tuple[str, str, str], ...] = (
    ("admin", WILDCARD, WILDCARD),
    ("user", "dashboard", "view"),
    ("user", "profile", "view"),
    ("user", "profile", "edit"),
)


def _matches(pattern: str, value: str) -> bool:
    return pattern == WILDCARD or pattern == value


@dataclass(frozen=True)
class PolicySnapshot:
    policies: frozenset[tuple[str, str, str]]
    groupings: Mapping[str, frozenset[str]] = field(default_factory=dict)
    degraded: bool = False

    @classmethod
    def build(
        cls,
        policies: Iterable[tuple[str, str, str]],
        groupings: Iterable[tuple[str, str]] = (),
        *,
        degraded: bool = False,
    ) -> "PolicySnapshot":
        parents: dict[str, set[str]] = {}
        for role, parent in groupings:
            parents.setdefault(role, set()).add(parent)
        return cls(
            policies=frozenset(tuple(p) for p in policies),
            groupings={k: frozenset(v) for k, v in parents.items()},
            degraded=degraded,
        )

    @classmethod
    def defaults(cls, *, degraded: bool = False) -> "PolicySnapshot":
        return cls.build(DEFAULT_POLICIES, degraded=degraded)

    def role_closure(self, roles: Iterable[str]) -> list[str]:
        """Roles plus everything they inherit, in discovery order. Cycles are fine."""
        seen: set[str] = set()
        order: list[str] = []
        queue = list(roles)
        while queue:
            role = queue.pop(0)
            if role in seen:
                continue
            seen.add(role)
            order.append(role)
            queue.extend(sorted(self.groupings.get(role, ())))
        return order

    def match(self, role: str, obj: str, act: str) -> tuple[str, str, str] | None:
        for policy in self.policies:
            sub, p_obj, p_act = policy
            # "*" as a subject is a literal role name, not a wildcard
            if sub == role and _matches(p_obj, obj) and _matches(p_act, act):
                return policy
        return None


@dataclass
class PolicyDecision:
    allowed: bool
    reason: str
    matched: tuple[str, str, str] | None = None


class PolicyEngine:
    def __init__(self, snapshot: PolicySnapshot | None = None):
        self._snapshot = snapshot
        self._lock = threading.Lock()

    @property
    def snapshot(self) -> PolicySnapshot | None:
        return self._snapshot

    def install(self, snapshot: PolicySnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot

    def reload(self, store, groupings: Iterable[tuple[str, str]] = ()) -> PolicySnapshot:
        try:
            rows = store.list_all()
        except (SQLAlchemyError, AuthError) as exc:
            snapshot = PolicySnapshot.defaults(degraded=True)
            logger.warning("policy reload failed, using default policies: %s", exc)
        else:
            snapshot = PolicySnapshot.build(rows, groupings)
            logger.info("policy snapshot loaded: %d policies", len(snapshot.policies))
        self.install(snapshot)
        return snapshot

    def decide(
        self, roles: Iterable[str], obj: str, act: str, *, is_super_admin: bool = False
    ) -> PolicyDecision:
        if is_super_admin:
            return PolicyDecision(allowed=True, reason="super_admin")

        snapshot = self._snapshot
        if snapshot is None:
            raise PolicyEngineError(detail="no policy snapshot installed")

        for role in snapshot.role_closure(roles):
            policy = snapshot.match(role, obj, act)
            if policy is not None:
                return PolicyDecision(allowed=True, reason=f"policy:{role}", matched=policy)
        return PolicyDecision(allowed=False, reason="no_matching_policy")
