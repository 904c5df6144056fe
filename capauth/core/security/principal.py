from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Protocol

from .roles import ANONYMOUS


@dataclass(frozen=True)
class Principal:
    """
    Evaluation input for capability checks.

    The engine does not own principal identity; roles come from a role service.
    An unauthenticated principal has no principal_id.
    """

    principal_id: Optional[str] = None
    roles: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        roles = self.roles
        if isinstance(roles, str):
            roles = [roles]
        object.__setattr__(
            self, "roles", frozenset(r.strip() for r in roles if isinstance(r, str) and r.strip())
        )

    @property
    def authenticated(self) -> bool:
        return bool(self.principal_id)


def effective_roles(principal: Principal) -> FrozenSet[str]:
    """Principal roles plus the implicit anonymous role."""
    return principal.roles | {ANONYMOUS}


class RoleService(Protocol):
    """Collaborator that resolves a principal's flat role membership."""

    def roles_for(self, principal_id: str) -> Iterable[str]:
        ...


class StaticRoleService:
    """Mapping-backed role service (configuration, tests)."""

    def __init__(self, mapping: Optional[Mapping[str, Iterable[str]]] = None):
        self._mapping: Dict[str, FrozenSet[str]] = {
            k: frozenset(v) for k, v in (mapping or {}).items()
        }

    def roles_for(self, principal_id: str) -> Iterable[str]:
        return self._mapping.get(principal_id, frozenset())


def resolve_principal(principal_id: Optional[str], service: RoleService) -> Principal:
    if not principal_id:
        return Principal()
    return Principal(principal_id=principal_id, roles=frozenset(service.roles_for(principal_id)))
