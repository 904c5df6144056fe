from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from capauth.core.security.capabilities import CapabilityDef, canonical_capability_name
from capauth.core.storage.contracts import CapabilityStore, RoleResolver
from capauth.core.storage.roles import IdentityRoleResolver
from capauth.core.storage.sqlite_store import SQLiteCapabilityStore, SQLiteRoleResolver

from .artifacts import AccessRule, Matrix, PermissionMatrixCache, build_access_list, build_matrix
from .checker import CapabilityChecker
from .exceptions import CapabilityNotFoundError
from .hooks import DEFAULT_COLLECTION_ACTIONS, CapabilityHooks, CapabilityListener
from .pack import CapabilityPack
from .registry import CapabilityRegistry
from .synchronizer import CapabilitySynchronizer, LoadReport, PropagateReport

log = logging.getLogger("capauth.service")

Definition = Union[CapabilityDef, Mapping[str, Any]]


def _as_definition(definition: Definition, name: Optional[str] = None) -> CapabilityDef:
    if isinstance(definition, CapabilityDef):
        return definition if name is None else definition.with_name(name)
    return CapabilityDef.from_mapping(definition or {}, name=name)


class CapabilityService:
    """Capability engine facade, constructed once per process.

    Holds the registry and the store client; passed explicitly to callers
    (API, CLI) rather than living in a module-level singleton.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        synchronizer: CapabilitySynchronizer,
        *,
        hooks: Optional[CapabilityHooks] = None,
        matrices: Optional[PermissionMatrixCache] = None,
    ):
        self.registry = registry
        self.synchronizer = synchronizer
        self.hooks = hooks or synchronizer.hooks
        self.checker = CapabilityChecker(registry)
        self.matrices = matrices

    # CRUD

    def create(self, definition: Definition) -> CapabilityDef:
        """Register and persist a capability (last write wins)."""
        return self.synchronizer.save(_as_definition(definition))

    def retrieve(self, name: str) -> CapabilityDef:
        cap = self.registry.get(name)
        if cap is None:
            raise CapabilityNotFoundError(name)
        return cap

    def update(self, name: str, definition: Definition) -> CapabilityDef:
        key = canonical_capability_name(name)
        if self.registry.get(key) is None:
            raise CapabilityNotFoundError(key)
        return self.synchronizer.save(_as_definition(definition, name=key))

    def delete(self, name: str) -> None:
        key = canonical_capability_name(name)
        if self.registry.get(key) is None:
            raise CapabilityNotFoundError(key)
        self.synchronizer.delete(key)

    def list(self, prefix: Optional[str] = None) -> List[CapabilityDef]:
        return self.registry.list(prefix=prefix)

    # Role membership

    def grant(self, name: str, role: str) -> CapabilityDef:
        return self.synchronizer.grant(name, role)

    def revoke(self, name: str, role: str) -> CapabilityDef:
        return self.synchronizer.revoke(name, role)

    def restrict(self, name: str, role: str) -> CapabilityDef:
        return self.synchronizer.restrict(name, role)

    def unrestrict(self, name: str, role: str) -> CapabilityDef:
        return self.synchronizer.unrestrict(name, role)

    # Checks

    def check(
        self, roles: Iterable[str], capabilities: Any, strict: bool = True, override: bool = False
    ) -> bool:
        return self.checker.can_all(roles, capabilities, strict=strict, override=override)

    def bulk_check(
        self, roles: Iterable[str], checks: Mapping[str, Mapping[str, Any]], override: bool = False
    ) -> Dict[str, bool]:
        return self.checker.bulk_check(roles, checks, override=override)

    def visible(self, roles: Iterable[str]) -> List[CapabilityDef]:
        return self.checker.granted_to(roles)

    # Derived artifacts

    def matrix(self, collection: str, actions: Optional[Sequence[str]] = None) -> Matrix:
        """Matrix computed from the registry as it is now.

        The matrix cache is rebuilt asynchronously; reads here must not lag a
        mutation the same caller just made.
        """
        if not actions:
            actions = self.matrices.actions if self.matrices is not None else DEFAULT_COLLECTION_ACTIONS
        return build_matrix(self.registry, collection, actions)

    def access_list(
        self,
        rules: Sequence[AccessRule] = (),
        read_capability: str = "",
        write_capability: str = "",
    ) -> Dict[str, Dict[str, bool]]:
        return build_access_list(self.checker, rules, read_capability, write_capability).to_dict()

    # Sync

    def load(self, flush: bool = False, timeout: Optional[float] = None) -> LoadReport:
        return self.synchronizer.load(flush=flush, timeout=timeout)

    def propagate(self, timeout: Optional[float] = None) -> PropagateReport:
        return self.synchronizer.propagate(timeout=timeout)

    def close(self) -> None:
        self.registry.dispatcher.close()


def build_service(
    store: CapabilityStore,
    resolver: Optional[RoleResolver] = None,
    *,
    listeners: Iterable[CapabilityListener] = (),
    pack: Optional[CapabilityPack] = None,
    collections: Sequence[str] = (),
    timeout: Optional[float] = None,
    load: bool = True,
) -> CapabilityService:
    """Wire registry, hooks, synchronizer and matrix cache around a store."""

    registry = CapabilityRegistry()
    hooks = CapabilityHooks(listeners)
    if pack is not None:
        hooks.add(pack.listener())

    tracked = [*collections, *(pack.collections if pack is not None else ())]
    matrices = PermissionMatrixCache(
        registry,
        tracked,
        actions=pack.collection_actions if pack is not None else DEFAULT_COLLECTION_ACTIONS,
    )
    hooks.add(matrices)
    registry.subscribe(hooks.on_change)

    synchronizer = CapabilitySynchronizer(
        registry, store, resolver or IdentityRoleResolver(), hooks, default_timeout=timeout
    )
    service = CapabilityService(registry, synchronizer, hooks=hooks, matrices=matrices)

    if load:
        service.load()
    return service


def open_sqlite_service(
    db_path: Union[str, Path],
    *,
    role_refs: str = "table",
    **kwargs: Any,
) -> CapabilityService:
    """build_service over a SQLite store.

    role_refs="table" resolves role references through the roles table;
    role_refs="identity" stores role names as references.
    """

    store = SQLiteCapabilityStore(Path(db_path))
    store.init_schema()
    if role_refs == "identity":
        resolver: RoleResolver = IdentityRoleResolver()
    elif role_refs == "table":
        resolver = SQLiteRoleResolver(store)
    else:
        raise ValueError(f"unknown role reference mode: {role_refs}")
    return build_service(store, resolver, **kwargs)
