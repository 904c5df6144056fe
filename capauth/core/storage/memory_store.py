from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional, Set

from capauth.core.capabilities.exceptions import StoreError

from .contracts import NO_DEADLINE, CapabilityRecord, Deadline


@dataclass
class InMemoryCapabilityStore:
    """Dict-backed CapabilityStore for tests and single-process use.

    Fault injection
    - fail_reads: fetch_all/fetch raise StoreError
    - fail_writes_for: upsert/delete of these names raise StoreError
    """

    fail_reads: bool = False
    fail_writes_for: Set[str] = field(default_factory=set)

    _records: Dict[str, CapabilityRecord] = field(default_factory=dict, init=False, repr=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def fetch_all(self, deadline: Deadline = NO_DEADLINE) -> List[CapabilityRecord]:
        deadline.check("fetch_all")
        if self.fail_reads:
            raise StoreError("store read failed")
        with self._lock:
            return [self._records[k] for k in sorted(self._records)]

    def fetch(self, name: str, deadline: Deadline = NO_DEADLINE) -> Optional[CapabilityRecord]:
        deadline.check("fetch")
        if self.fail_reads:
            raise StoreError("store read failed")
        with self._lock:
            return self._records.get(name)

    def upsert(self, record: CapabilityRecord, deadline: Deadline = NO_DEADLINE) -> None:
        deadline.check("upsert")
        if record.name in self.fail_writes_for:
            raise StoreError(f"store write failed: {record.name}")
        with self._lock:
            self._records[record.name] = record

    def delete(self, name: str, deadline: Deadline = NO_DEADLINE) -> bool:
        deadline.check("delete")
        if name in self.fail_writes_for:
            raise StoreError(f"store delete failed: {name}")
        with self._lock:
            return self._records.pop(name, None) is not None

    def find_by_role(self, role_ref: str, deadline: Deadline = NO_DEADLINE) -> List[str]:
        deadline.check("find_by_role")
        with self._lock:
            return sorted(
                n for n, r in self._records.items() if role_ref in r.allowed or role_ref in r.excluded
            )
