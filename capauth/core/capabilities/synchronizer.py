from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock, RLock
from typing import Callable, Dict, Iterable, List, Optional

from capauth.core.security.capabilities import CapabilityDef, canonical_capability_name
from capauth.core.storage.contracts import (
    CapabilityRecord,
    CapabilityStore,
    Deadline,
    RoleResolver,
)

from .exceptions import (
    CapabilityValidationError,
    StoreError,
    StoreTimeoutError,
    ValidationIssue,
)
from .hooks import CapabilityHooks
from .normalizer import normalize, validate_definition
from .registry import CapabilityRegistry

log = logging.getLogger("capauth.sync")


@dataclass
class LoadReport:
    """Outcome of a store -> registry load."""

    loaded: List[str] = field(default_factory=list)
    defaults_created: List[str] = field(default_factory=list)
    unresolved_refs: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class PropagateReport:
    """Outcome of a registry -> store propagation.

    failed maps capability name -> error text. unresolved maps capability name
    -> role names that had no store reference (persisted without them).
    """

    written: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    unresolved: Dict[str, List[str]] = field(default_factory=dict)
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.timed_out


class CapabilitySynchronizer:
    """Bidirectional sync between the registry and a durable store.

    Security invariants
    - A failed or timed-out load never mutates the registry
    - Propagation never holds the registry write lock during store I/O
    - Load and propagate are serialized; they never interleave
    - Every mutation passes the normalizer and before-save listeners
    - Read-modify-write mutations (grant, revoke, ...) are atomic per process
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        store: CapabilityStore,
        resolver: RoleResolver,
        hooks: Optional[CapabilityHooks] = None,
        *,
        default_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.store = store
        self.resolver = resolver
        self.hooks = hooks or CapabilityHooks()
        self.default_timeout = default_timeout
        self._sync_lock = Lock()
        # Held from read to register for single-record writes.
        self._commit_lock = RLock()

    def _deadline(self, timeout: Optional[float]) -> Deadline:
        return Deadline.from_timeout(timeout if timeout is not None else self.default_timeout)

    # store -> registry

    def load(self, flush: bool = False, timeout: Optional[float] = None) -> LoadReport:
        """Populate the registry from the durable store.

        Raises
        - StoreError / StoreTimeoutError: the registry is left untouched.
        """

        deadline = self._deadline(timeout)
        report = LoadReport()

        with self._sync_lock:
            defaults = self.hooks.collect_defaults()

            deadline.check("load")
            records = self.store.fetch_all(deadline)

            refs = {ref for r in records for ref in (*r.allowed, *r.excluded)}
            try:
                names = self.resolver.names_for(refs) if refs else {}
            except StoreError:
                raise
            except Exception as e:
                raise StoreError(f"role resolution failed: {e}") from e

            definitions: List[CapabilityDef] = []
            for rec in records:
                missing = [ref for ref in (*rec.allowed, *rec.excluded) if ref not in names]
                if missing:
                    report.unresolved_refs[rec.name] = missing
                    log.warning(
                        "capability_role_refs_unresolved",
                        extra={"capability": rec.name, "refs": missing},
                    )
                definitions.append(
                    CapabilityDef(
                        name=rec.name,
                        allowed=[names[r] for r in rec.allowed if r in names],
                        excluded=[names[r] for r in rec.excluded if r in names],
                        priority=rec.priority,
                    )
                )

            # Lower priority values load first; last write wins within a name.
            definitions.sort(key=lambda d: d.priority)
            changes = self.registry.replace_all(definitions, flush=flush)
            report.loaded = sorted({c.name for c in changes if c.capability is not None})

            created = self.registry.register_missing(defaults)
            report.defaults_created = [c.name for c in created]

        log.info(
            "capabilities_loaded",
            extra={
                "count": len(report.loaded),
                "flush": bool(flush),
                "defaults_created": len(report.defaults_created),
            },
        )

        if created:
            self.propagate(names=report.defaults_created, timeout=deadline.remaining())

        return report

    # registry -> store

    def propagate(
        self, names: Optional[Iterable[str]] = None, timeout: Optional[float] = None
    ) -> PropagateReport:
        """Upsert registry entries into the durable store.

        Per-record store failures are logged and reported, never raised.
        """

        deadline = self._deadline(timeout)
        report = PropagateReport()

        if names is None:
            snapshot = self.registry.list()
        else:
            wanted = set()
            for n in names:
                try:
                    wanted.add(canonical_capability_name(n))
                except CapabilityValidationError:
                    continue
            snapshot = self.registry.list(lambda c: c.name in wanted)

        if not snapshot:
            return report

        with self._sync_lock:
            role_names = {r for c in snapshot for r in (*c.allowed, *c.excluded)}
            try:
                refs = self.resolver.refs_for(role_names)
            except Exception as e:
                log.warning("capability_role_resolution_failed", extra={"error": str(e)})
                for c in snapshot:
                    report.failed[c.name] = f"role resolution failed: {e}"
                return report

            for i, cap in enumerate(snapshot):
                if deadline.expired():
                    report.timed_out = True
                    for rest in snapshot[i:]:
                        report.failed[rest.name] = "deadline exceeded"
                    log.warning(
                        "capability_propagate_timed_out",
                        extra={"remaining": len(snapshot) - i},
                    )
                    break

                unresolved = [r for r in (*cap.allowed, *cap.excluded) if r not in refs]
                if unresolved:
                    report.unresolved[cap.name] = unresolved

                record = CapabilityRecord(
                    name=cap.name,
                    allowed=tuple(refs[r] for r in cap.allowed if r in refs),
                    excluded=tuple(refs[r] for r in cap.excluded if r in refs),
                    priority=cap.priority,
                )
                try:
                    self.store.upsert(record, deadline)
                except StoreTimeoutError as e:
                    report.timed_out = True
                    report.failed[cap.name] = str(e)
                except StoreError as e:
                    log.warning(
                        "capability_propagate_failed",
                        extra={"capability": cap.name, "error": str(e)},
                    )
                    report.failed[cap.name] = str(e)
                else:
                    report.written.append(cap.name)

        if report.unresolved:
            log.warning(
                "capability_roles_unresolved",
                extra={"capabilities": sorted(report.unresolved)},
            )
        return report

    # Write-through mutations

    def save(self, definition: CapabilityDef, timeout: Optional[float] = None) -> CapabilityDef:
        """Validate, register and persist one definition.

        Raises
        - CapabilityValidationError: malformed name or rejected by a listener.
        - StoreError: the record could not be persisted (registry already updated).
        """

        stored = self._commit(definition)
        return self._persist(stored, timeout)

    def _commit(self, definition: CapabilityDef) -> CapabilityDef:
        cap = validate_definition(definition)
        with self._commit_lock:
            issues = self.hooks.run_before_save(cap)
            if issues:
                raise CapabilityValidationError(issues)
            return self.registry.register(cap.name, cap)

    def _persist(self, stored: CapabilityDef, timeout: Optional[float]) -> CapabilityDef:
        report = self.propagate(names=[stored.name], timeout=timeout)
        if stored.name in report.failed:
            raise StoreError(report.failed[stored.name])
        return stored

    def delete(self, name: str, timeout: Optional[float] = None) -> bool:
        """Remove a capability from the registry and the store."""

        key = canonical_capability_name(name)
        deadline = self._deadline(timeout)
        with self._commit_lock:
            removed = self.registry.unregister(key)
        with self._sync_lock:
            stored = self.store.delete(key, deadline)
        return removed or stored

    def _mutate(
        self,
        name: str,
        role: str,
        mutate: Callable[[List[str], List[str]], None],
        timeout: Optional[float],
    ) -> CapabilityDef:
        key = canonical_capability_name(name)
        if not isinstance(role, str) or not role.strip():
            raise CapabilityValidationError(
                [ValidationIssue(field="role", message="role name must be a non-empty string")]
            )
        with self._commit_lock:
            current = self.registry.get(key) or CapabilityDef(name=key)
            allowed, excluded = list(current.allowed), list(current.excluded)
            mutate(allowed, excluded)
            updated = normalize(
                CapabilityDef(name=key, allowed=allowed, excluded=excluded, priority=current.priority)
            )
            stored = self._commit(updated)
        return self._persist(stored, timeout)

    def grant(self, name: str, role: str, timeout: Optional[float] = None) -> CapabilityDef:
        """Allow role; also lifts an explicit restriction of it."""

        def op(allowed: List[str], excluded: List[str]) -> None:
            allowed.append(role)
            while role in excluded:
                excluded.remove(role)

        return self._mutate(name, role, op, timeout)

    def revoke(self, name: str, role: str, timeout: Optional[float] = None) -> CapabilityDef:
        def op(allowed: List[str], excluded: List[str]) -> None:
            while role in allowed:
                allowed.remove(role)

        return self._mutate(name, role, op, timeout)

    def restrict(self, name: str, role: str, timeout: Optional[float] = None) -> CapabilityDef:
        def op(allowed: List[str], excluded: List[str]) -> None:
            excluded.append(role)

        return self._mutate(name, role, op, timeout)

    def unrestrict(self, name: str, role: str, timeout: Optional[float] = None) -> CapabilityDef:
        def op(allowed: List[str], excluded: List[str]) -> None:
            while role in excluded:
                excluded.remove(role)

        return self._mutate(name, role, op, timeout)
