from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Iterable, List, Optional, Sequence

from capauth.core.security.capabilities import CapabilityDef, try_canonical_name

from .exceptions import ValidationIssue

log = logging.getLogger("capauth.hooks")

DEFAULT_COLLECTION_ACTIONS = ("create", "retrieve", "update", "delete", "addfield")


class ChangeKind(str, Enum):
    REGISTERED = "registered"
    UNREGISTERED = "unregistered"


@dataclass(frozen=True)
class CapabilityChange:
    """A committed registry mutation, delivered to subscribers after the write."""

    kind: ChangeKind
    name: str
    capability: Optional[CapabilityDef] = None
    previous: Optional[CapabilityDef] = None


ChangeCallback = Callable[[CapabilityChange], None]


class ChangeDispatcher:
    """Ordered, asynchronous delivery of change notifications.

    A single worker thread runs callbacks in submission order, off the
    mutating caller's thread and after the registry write lock is released.

    Security notes:
    - A failing callback is logged and never affects other callbacks.
    """

    def __init__(self, *, thread_name_prefix: str = "capauth-notify"):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=thread_name_prefix)
        self._pending: List[Future] = []
        self._lock = Lock()
        self._closed = False

    def dispatch(self, callbacks: Sequence[ChangeCallback], changes: Sequence[CapabilityChange]) -> None:
        if not callbacks or not changes:
            return
        with self._lock:
            if self._closed:
                log.warning("change_dispatch_after_close", extra={"changes": len(changes)})
                return
            fut = self._executor.submit(_deliver, list(callbacks), list(changes))
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(fut)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued notifications. Returns True if all completed."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self, *, wait_pending: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_pending)


def _deliver(callbacks: List[ChangeCallback], changes: List[CapabilityChange]) -> None:
    for change in changes:
        for cb in callbacks:
            try:
                cb(change)
            except Exception:
                log.exception(
                    "capability_change_handler_failed",
                    extra={"capability": change.name, "kind": change.kind.value},
                )


class CapabilityListener:
    """Typed extension point.

    Subclasses override what they need; defaults are no-ops.
    """

    def before_save(self, capability: CapabilityDef) -> List[ValidationIssue]:
        return []

    def on_change(self, change: CapabilityChange) -> None:
        return None

    def ensure_defaults(self) -> Iterable[CapabilityDef]:
        return ()


class CapabilityHooks:
    """Ordered listener list.

    - before_save runs synchronously and aggregates validation issues
    - on_change is attached to the registry subscription (asynchronous)
    - collect_defaults gathers lazily-created capability definitions
    """

    def __init__(self, listeners: Iterable[CapabilityListener] = ()):
        self._listeners: List[CapabilityListener] = list(listeners)
        self._lock = Lock()

    def add(self, listener: CapabilityListener) -> None:
        if not isinstance(listener, CapabilityListener):
            raise TypeError("listener must be a CapabilityListener")
        with self._lock:
            self._listeners.append(listener)

    def remove(self, listener: CapabilityListener) -> None:
        with self._lock:
            self._listeners = [x for x in self._listeners if x is not listener]

    def listeners(self) -> List[CapabilityListener]:
        with self._lock:
            return list(self._listeners)

    def run_before_save(self, capability: CapabilityDef) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        for listener in self.listeners():
            issues.extend(listener.before_save(capability) or [])
        return issues

    def on_change(self, change: CapabilityChange) -> None:
        for listener in self.listeners():
            try:
                listener.on_change(change)
            except Exception:
                log.exception(
                    "capability_listener_failed",
                    extra={"listener": type(listener).__name__, "capability": change.name},
                )

    def collect_defaults(self) -> List[CapabilityDef]:
        out: List[CapabilityDef] = []
        for listener in self.listeners():
            out.extend(listener.ensure_defaults() or ())
        return out


class CollectionCapabilities(CapabilityListener):
    """Default capabilities for managed collections and workflow statuses.

    For each collection, one capability per action: "{collection}.{action}".
    For each (content type, status) pair: "{type}.{status}".

    Defaults are only registered when no capability of that name exists.
    Names that do not canonicalize are skipped with a warning.
    """

    def __init__(
        self,
        collections: Iterable[str] = (),
        *,
        actions: Sequence[str] = DEFAULT_COLLECTION_ACTIONS,
        statuses: Iterable[tuple] = (),
        allowed: Sequence[str] = (),
    ):
        self.collections = list(collections)
        self.actions = [a.lower() for a in actions]
        self.statuses = list(statuses)
        self.allowed = tuple(allowed)

    def add_collection(self, collection: str) -> None:
        if collection not in self.collections:
            self.collections.append(collection)

    def ensure_defaults(self) -> Iterable[CapabilityDef]:
        names: List[str] = []
        for collection in self.collections:
            names.extend(f"{collection}.{action}" for action in self.actions)
        for type_name, status in self.statuses:
            names.append(f"{type_name}.{status}")

        out = []
        for name in names:
            key = try_canonical_name(name)
            if key is None:
                log.warning("capability_default_invalid_name_skipped", extra={"capability": name})
                continue
            out.append(CapabilityDef(name=key, allowed=self.allowed))
        return out
