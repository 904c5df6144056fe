from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Condition, Lock
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from capauth.core.security.capabilities import (
    CapabilityDef,
    canonical_capability_name,
    try_canonical_name,
)

from .hooks import CapabilityChange, ChangeCallback, ChangeDispatcher, ChangeKind
from .normalizer import RawDefinition, normalize

log = logging.getLogger("capauth.registry")


class ReadWriteLock:
    """Many readers or one writer.

    Writers are preferred once waiting so a steady read load cannot starve
    registration. Not reentrant.
    """

    def __init__(self) -> None:
        self._cond = Condition(Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class CapabilityRegistry:
    """In-memory capability store keyed by canonical name.

    Single source of truth for permission checks.

    Security invariants
    - Every stored definition has passed the normalizer
    - Lookups never raise for unknown names (default-deny is a value)
    - Subscribers are notified asynchronously after the write lock is released

    - get: O(1)
    - list: O(n log n)
    - register / unregister: O(1) + notification
    """

    dispatcher: ChangeDispatcher = field(default_factory=ChangeDispatcher)

    _caps: Dict[str, CapabilityDef] = field(default_factory=dict, init=False, repr=False)
    _lock: ReadWriteLock = field(default_factory=ReadWriteLock, init=False, repr=False)
    _subscribers: Dict[int, ChangeCallback] = field(default_factory=dict, init=False, repr=False)
    _sub_lock: Lock = field(default_factory=Lock, init=False, repr=False)
    _next_token: int = field(default=0, init=False, repr=False)

    # Subscriptions

    def subscribe(self, callback: ChangeCallback) -> int:
        """Register a change callback; returns a token for unsubscribe."""
        if not callable(callback):
            raise TypeError("callback must be callable")
        with self._sub_lock:
            self._next_token += 1
            token = self._next_token
            self._subscribers[token] = callback
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._sub_lock:
            return self._subscribers.pop(token, None) is not None

    def _notify(self, changes: List[CapabilityChange]) -> None:
        if not changes:
            return
        with self._sub_lock:
            callbacks = list(self._subscribers.values())
        self.dispatcher.dispatch(callbacks, changes)

    # Mutations

    def register(
        self,
        name: str,
        definition: Optional[RawDefinition] = None,
        priority: Optional[int] = None,
    ) -> CapabilityDef:
        """Store normalize(definition) under the canonical key of name.

        Last write wins. Returns the stored definition.

        Raises
        - CapabilityValidationError: name is missing or malformed.
        """

        key = canonical_capability_name(name)
        cap = self._prepare(key, definition, priority)

        with self._lock.write():
            previous = self._caps.get(key)
            self._caps[key] = cap

        log.debug("capability_registered", extra={"capability": key})
        self._notify([CapabilityChange(ChangeKind.REGISTERED, key, cap, previous)])
        return cap

    def unregister(self, name: str) -> bool:
        key = try_canonical_name(name)
        if key is None:
            return False

        with self._lock.write():
            previous = self._caps.pop(key, None)

        if previous is None:
            return False

        log.debug("capability_unregistered", extra={"capability": key})
        self._notify([CapabilityChange(ChangeKind.UNREGISTERED, key, None, previous)])
        return True

    def replace_all(
        self, definitions: Iterable[CapabilityDef], *, flush: bool = False
    ) -> List[CapabilityChange]:
        """Apply a batch of definitions under one write lock.

        With flush=True, names absent from the batch are removed.
        Invalid names in the batch are skipped and logged.
        """

        prepared: List[Tuple[str, CapabilityDef]] = []
        for d in definitions:
            key = try_canonical_name(d.name)
            if key is None:
                log.warning("capability_invalid_name_skipped", extra={"capability": d.name})
                continue
            prepared.append((key, self._prepare(key, d, None)))

        changes: List[CapabilityChange] = []
        with self._lock.write():
            before = dict(self._caps)
            if flush:
                self._caps.clear()
            for key, cap in prepared:
                self._caps[key] = cap
            for key, cap in prepared:
                changes.append(CapabilityChange(ChangeKind.REGISTERED, key, cap, before.get(key)))
            if flush:
                kept = {key for key, _ in prepared}
                for key, prev in before.items():
                    if key not in kept:
                        changes.append(CapabilityChange(ChangeKind.UNREGISTERED, key, None, prev))

        self._notify(changes)
        return changes

    def register_missing(self, definitions: Iterable[CapabilityDef]) -> List[CapabilityDef]:
        """Register only definitions whose name is not yet present."""

        created: List[CapabilityDef] = []
        with self._lock.write():
            for d in definitions:
                key = try_canonical_name(d.name)
                if key is None or key in self._caps:
                    continue
                cap = self._prepare(key, d, None)
                self._caps[key] = cap
                created.append(cap)

        self._notify([CapabilityChange(ChangeKind.REGISTERED, c.name, c, None) for c in created])
        return created

    def clear(self) -> None:
        self.replace_all((), flush=True)

    # Reads

    def get(self, name: str) -> Optional[CapabilityDef]:
        key = try_canonical_name(name)
        if key is None:
            return None
        with self._lock.read():
            return self._caps.get(key)

    def list(
        self,
        predicate: Optional[Callable[[CapabilityDef], bool]] = None,
        *,
        prefix: Optional[str] = None,
        role: Optional[str] = None,
    ) -> List[CapabilityDef]:
        """Snapshot of registered capabilities, sorted by name."""

        with self._lock.read():
            caps = list(self._caps.values())

        if prefix:
            p = prefix.strip().lower()
            caps = [c for c in caps if c.name.startswith(p)]
        if role is not None:
            caps = [c for c in caps if role in c.allowed]
        if predicate is not None:
            caps = [c for c in caps if predicate(c)]

        return sorted(caps, key=lambda c: c.name)

    def names(self) -> List[str]:
        with self._lock.read():
            return sorted(self._caps)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._caps)

    @staticmethod
    def _prepare(key: str, definition: Optional[RawDefinition], priority: Optional[int]) -> CapabilityDef:
        if definition is None:
            base = CapabilityDef(name=key)
        elif isinstance(definition, CapabilityDef):
            base = definition.with_name(key)
        else:
            base = CapabilityDef.from_mapping(definition, name=key)

        if priority is not None:
            base = CapabilityDef(
                name=key, allowed=base.allowed, excluded=base.excluded, priority=priority
            )
        return normalize(base)
