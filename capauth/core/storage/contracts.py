from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from capauth.core.capabilities.exceptions import StoreTimeoutError


@dataclass(frozen=True)
class CapabilityRecord:
    """
    Durable representation of one capability.

    Role memberships are role references (store identifiers), not names.
    """

    name: str
    allowed: Tuple[str, ...] = field(default_factory=tuple)
    excluded: Tuple[str, ...] = field(default_factory=tuple)
    priority: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "allowed", tuple(self.allowed))
        object.__setattr__(self, "excluded", tuple(self.excluded))


@dataclass(frozen=True)
class Deadline:
    """Monotonic deadline passed through to store call boundaries."""

    expires_at: Optional[float] = None

    @classmethod
    def from_timeout(cls, timeout: Optional[float]) -> "Deadline":
        if timeout is None:
            return cls()
        return cls(expires_at=time.monotonic() + max(0.0, float(timeout)))

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def check(self, operation: str) -> None:
        """Raise StoreTimeoutError if the deadline has passed."""
        if self.expired():
            raise StoreTimeoutError(f"deadline exceeded before {operation}")


NO_DEADLINE = Deadline()


class CapabilityStore(Protocol):
    """Durable store contract: one record per capability, queryable by role."""

    def fetch_all(self, deadline: Deadline = NO_DEADLINE) -> List[CapabilityRecord]:
        ...

    def fetch(self, name: str, deadline: Deadline = NO_DEADLINE) -> Optional[CapabilityRecord]:
        ...

    def upsert(self, record: CapabilityRecord, deadline: Deadline = NO_DEADLINE) -> None:
        ...

    def delete(self, name: str, deadline: Deadline = NO_DEADLINE) -> bool:
        ...

    def find_by_role(self, role_ref: str, deadline: Deadline = NO_DEADLINE) -> List[str]:
        ...


class RoleResolver(Protocol):
    """Translate between role references and role names, one batch per call."""

    def names_for(self, refs: Iterable[str]) -> Dict[str, str]:
        ...

    def refs_for(self, names: Iterable[str]) -> Dict[str, str]:
        ...
