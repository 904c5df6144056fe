from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from capauth.core.security.capabilities import try_canonical_name
from capauth.core.security.roles import ADMINISTRATOR, ANONYMOUS, SUPER_ADMIN

from .checker import CapabilityChecker
from .exceptions import CapabilityValidationError, ValidationIssue
from .hooks import DEFAULT_COLLECTION_ACTIONS, CapabilityChange, CapabilityListener
from .registry import CapabilityRegistry

log = logging.getLogger("capauth.artifacts")

PUBLIC_KEY = "*"
ROLE_PREFIX = "role:"

Matrix = Dict[str, Dict[str, bool]]


def capability_name_for(collection: str, action: str) -> str:
    return f"{collection}.{action}".lower()


def build_matrix(registry: CapabilityRegistry, collection: str, actions: Iterable[str]) -> Matrix:
    """Collection permission matrix: action -> {"role:<name>": True} or {"*": True}.

    administrator and super-admin are always present because consumers of
    the matrix do not re-run the normalizer.

    Time:  O(a * r) for a actions and r allowed roles per action
    """

    matrix: Matrix = {}
    for action in actions:
        cap = registry.get(capability_name_for(collection, action))
        allowed = cap.allowed if cap is not None else ()

        if ANONYMOUS in allowed:
            matrix[action] = {PUBLIC_KEY: True}
            continue

        entry = {f"{ROLE_PREFIX}{role}": True for role in allowed}
        entry[f"{ROLE_PREFIX}{ADMINISTRATOR}"] = True
        entry[f"{ROLE_PREFIX}{SUPER_ADMIN}"] = True
        matrix[action] = entry
    return matrix


class Permission(str, Enum):
    READ = "read"
    WRITE = "write"


class Target(str, Enum):
    PUBLIC = "public"
    ROLE = "role"
    USER = "user"


@dataclass(frozen=True)
class AccessRule:
    """One explicit access grant or denial.

    Security invariants
    - permission/target are enums (not free-form text)
    - role and user targets require an identifier
    """

    permission: Permission
    target: Target
    identifier: Optional[str] = None
    allow: bool = True

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "permission", Permission(self.permission))
            object.__setattr__(self, "target", Target(self.target))
        except ValueError as e:
            raise CapabilityValidationError(
                [ValidationIssue(field="rule", message=f"invalid access rule: {e}")]
            ) from e

        if self.target != Target.PUBLIC:
            ident = self.identifier.strip() if isinstance(self.identifier, str) else ""
            if not ident:
                raise CapabilityValidationError(
                    [ValidationIssue(field="identifier", message="role/user rules need an identifier")]
                )
            object.__setattr__(self, "identifier", ident)

        object.__setattr__(self, "allow", bool(self.allow))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AccessRule":
        return cls(
            permission=data.get("permission"),
            target=data.get("target"),
            identifier=data.get("identifier"),
            allow=data.get("allow", True),
        )

    @property
    def key(self) -> str:
        if self.target == Target.PUBLIC:
            return PUBLIC_KEY
        if self.target == Target.ROLE:
            # The anonymous role is everyone.
            if self.identifier == ANONYMOUS:
                return PUBLIC_KEY
            return f"{ROLE_PREFIX}{self.identifier}"
        return str(self.identifier)


@dataclass
class AccessList:
    """Per-object access list consumed by the storage enforcement layer.

    Serialized form: {"*": {"read": true}, "role:editor": {"write": true}, "<userId>": {...}}
    Only granted permissions are emitted.
    """

    _entries: Dict[str, Dict[str, bool]] = field(default_factory=dict)

    def apply(self, rule: AccessRule) -> None:
        self._entries.setdefault(rule.key, {})[rule.permission.value] = rule.allow

    def allows(self, key: str, permission: Permission) -> bool:
        return bool(self._entries.get(key, {}).get(Permission(permission).value, False))

    def to_dict(self) -> Dict[str, Dict[str, bool]]:
        out: Dict[str, Dict[str, bool]] = {}
        for key, perms in self._entries.items():
            granted = {p: True for p, ok in perms.items() if ok}
            if granted:
                out[key] = granted
        return out


def _role_rule(permission: Permission, role: str) -> AccessRule:
    return AccessRule(permission=permission, target=Target.ROLE, identifier=role)


def build_access_list(
    checker: CapabilityChecker,
    explicit_rules: Sequence[AccessRule] = (),
    read_capability: str = "",
    write_capability: str = "",
) -> AccessList:
    """Access list from explicit rules plus capability-granted roles.

    Rules apply in order; a later rule for the same target and permission
    overwrites an earlier one. Unknown capabilities contribute nothing.
    """

    rules: List[AccessRule] = list(explicit_rules)
    for permission, capability in ((Permission.READ, read_capability), (Permission.WRITE, write_capability)):
        if not capability:
            continue
        for role in checker.roles_with(capability):
            rules.append(_role_rule(permission, role))

    acl = AccessList()
    for rule in rules:
        acl.apply(rule)
    return acl


class PermissionMatrixCache(CapabilityListener):
    """Keeps collection matrices in step with capability changes.

    Registered as a change listener; a change to "{collection}.{action}"
    rebuilds that collection's matrix and passes it to on_rebuild
    (for example a schema writer owned by the content-type layer).
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        collections: Iterable[str] = (),
        *,
        actions: Sequence[str] = DEFAULT_COLLECTION_ACTIONS,
        on_rebuild: Optional[Callable[[str, Matrix], None]] = None,
    ):
        self.registry = registry
        self.actions = [a.lower() for a in actions]
        self.on_rebuild = on_rebuild
        self._collections: Dict[str, str] = {}
        self._matrices: Dict[str, Matrix] = {}
        self._lock = Lock()
        for c in collections:
            self.track(c)

    def track(self, collection: str) -> None:
        key = try_canonical_name(collection)
        if key is None:
            raise CapabilityValidationError(
                [ValidationIssue(field="collection", message=f"invalid collection: {collection!r}")]
            )
        with self._lock:
            self._collections[key] = collection

    def matrix(self, collection: str) -> Matrix:
        key = try_canonical_name(collection)
        with self._lock:
            cached = self._matrices.get(key) if key else None
        if cached is not None:
            return cached
        return self.rebuild(collection)

    def rebuild(self, collection: str) -> Matrix:
        matrix = build_matrix(self.registry, collection, self.actions)
        key = try_canonical_name(collection)
        if key is not None:
            with self._lock:
                self._matrices[key] = matrix
        if self.on_rebuild is not None:
            self.on_rebuild(collection, matrix)
        return matrix

    def on_change(self, change: CapabilityChange) -> None:
        prefix, _, action = change.name.rpartition(".")
        with self._lock:
            collection = self._collections.get(prefix)
        if collection is None or action not in self.actions:
            return
        log.debug("permission_matrix_rebuild", extra={"collection": collection, "capability": change.name})
        self.rebuild(collection)
