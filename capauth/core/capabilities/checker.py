from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from capauth.core.security.capabilities import CapabilityDef, as_name_list
from capauth.core.security.principal import Principal, effective_roles
from capauth.core.security.roles import ADMINISTRATOR, SUPER_ADMIN

from .registry import CapabilityRegistry

log = logging.getLogger("capauth.checker")


def _role_set(roles: Iterable[str]) -> frozenset:
    if isinstance(roles, str):
        roles = [roles]
    return frozenset(r for r in (roles or ()) if isinstance(r, str))


@dataclass(frozen=True)
class CapabilityChecker:
    """
    Capability decision point. Reads only from the registry.

    Security invariants
    - Default deny: unknown capabilities are never satisfied
    - Never raises for a negative answer; outcomes are booleans
    - Role comparison is exact (case-sensitive)
    - Only super-admin and the explicit override bypass role evaluation
    """

    registry: CapabilityRegistry

    def can(self, roles: Iterable[str], capability: str) -> bool:
        return self._can(_role_set(roles), capability)

    def _can(self, roles: frozenset, capability: str) -> bool:
        if SUPER_ADMIN in roles:
            return True

        cap = self.registry.get(capability)
        if cap is None:
            return False

        if ADMINISTRATOR in roles and ADMINISTRATOR not in cap.excluded:
            return True

        return not roles.isdisjoint(cap.allowed)

    def can_all(
        self,
        roles: Iterable[str],
        capabilities: Any,
        strict: bool = True,
        override: bool = False,
    ) -> bool:
        """Composite check.

        strict=True: every capability must be satisfied (AND).
        strict=False: any one satisfied capability grants access (OR).
        An empty capability list is never satisfied.
        override=True is the full administrative bypass.
        """

        if override:
            return True

        names = as_name_list(capabilities)
        if not names:
            return False

        role_set = _role_set(roles)
        if strict:
            return all(self._can(role_set, n) for n in names)
        return any(self._can(role_set, n) for n in names)

    def granted_to(self, roles: Iterable[str]) -> List[CapabilityDef]:
        """Every registered capability the roles satisfy, sorted by name."""
        role_set = _role_set(roles)
        return [c for c in self.registry.list() if self._can(role_set, c.name)]

    def roles_with(self, capability: str) -> Tuple[str, ...]:
        """Roles explicitly holding a capability; empty when unknown."""
        cap = self.registry.get(capability) if capability else None
        if cap is None:
            return ()
        return cap.allowed

    def can_principal(
        self,
        principal: Principal,
        capabilities: Any,
        strict: bool = True,
        override: bool = False,
    ) -> bool:
        return self.can_all(effective_roles(principal), capabilities, strict, override)

    def bulk_check(
        self,
        roles: Iterable[str],
        checks: Mapping[str, Mapping[str, Any]],
        override: bool = False,
    ) -> Dict[str, bool]:
        """Evaluate labelled checks: {label: {"capabilities": [...], "strict": bool}}."""

        role_set = _role_set(roles)
        out: Dict[str, bool] = {}
        for label, entry in (checks or {}).items():
            entry = entry if isinstance(entry, Mapping) else {}
            strict = entry.get("strict", True)
            if not isinstance(strict, bool):
                # Malformed entries are denied, never guessed.
                log.warning("bulk_check_invalid_strict", extra={"label": str(label)})
                out[str(label)] = False
                continue
            out[str(label)] = self.can_all(
                role_set,
                entry.get("capabilities"),
                strict=strict,
                override=override,
            )
        return out
