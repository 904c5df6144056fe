from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from capauth.core.capabilities.exceptions import StoreError

from .contracts import NO_DEADLINE, CapabilityRecord, Deadline

_ALLOWED = "allowed"
_EXCLUDED = "excluded"

# SQLite's default host-parameter limit is 999; stay well below it.
_IN_CHUNK = 500


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _chunks(items: Sequence[str], size: int = _IN_CHUNK) -> Iterable[Sequence[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


@dataclass(slots=True)
class SQLiteCapabilityStore:
    """SQLite persistence for capability records and role references.

    Tables
    - capabilities: one row per capability name
    - capability_roles: (name, kind, position, role_ref) membership relation
    - roles: role_ref -> role name, used by SQLiteRoleResolver

    Security notes:
    - Treat all values read from the database as untrusted.
    - Every query is parameterized.

    Complexity
    - fetch_all: O(c + m) in two queries, where m = #memberships
    - upsert: O(m) for one record
    - find_by_role: O(k) via the role_ref index
    """

    db_path: Path
    busy_timeout: float = 5.0

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)

    def connect(self, deadline: Deadline = NO_DEADLINE) -> sqlite3.Connection:
        """Open a SQLite connection; the busy timeout is bounded by the deadline."""

        timeout = self.busy_timeout
        remaining = deadline.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        try:
            con = sqlite3.connect(str(self.db_path), timeout=timeout)
        except sqlite3.Error as e:
            raise StoreError(f"cannot open capability store: {e}") from e
        con.execute("PRAGMA foreign_keys = ON")
        return con

    def init_schema(self) -> None:
        """Create tables if missing."""

        try:
            with self.connect() as con:
                con.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS capabilities (
                        name TEXT PRIMARY KEY,
                        priority INTEGER NOT NULL DEFAULT 0,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS capability_roles (
                        name TEXT NOT NULL,
                        kind TEXT NOT NULL CHECK (kind IN ('allowed', 'excluded')),
                        position INTEGER NOT NULL,
                        role_ref TEXT NOT NULL,
                        PRIMARY KEY (name, kind, role_ref),
                        FOREIGN KEY (name) REFERENCES capabilities(name) ON DELETE CASCADE
                    );

                    CREATE INDEX IF NOT EXISTS idx_capability_roles_ref
                        ON capability_roles(role_ref);

                    CREATE TABLE IF NOT EXISTS roles (
                        role_ref TEXT PRIMARY KEY,
                        name TEXT NOT NULL UNIQUE
                    );
                    """
                )
        except sqlite3.Error as e:
            raise StoreError(f"cannot initialize capability store: {e}") from e

    def fetch_all(self, deadline: Deadline = NO_DEADLINE) -> List[CapabilityRecord]:
        """Read every capability with its memberships (single fetch)."""

        deadline.check("fetch_all")
        self.init_schema()
        try:
            with self.connect(deadline) as con:
                caps = con.execute(
                    "SELECT name, priority FROM capabilities ORDER BY name"
                ).fetchall()
                members = con.execute(
                    "SELECT name, kind, role_ref FROM capability_roles ORDER BY name, kind, position"
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"capability store read failed: {e}") from e

        grouped: Dict[str, Dict[str, List[str]]] = {}
        for name, kind, ref in members:
            grouped.setdefault(name, {_ALLOWED: [], _EXCLUDED: []})[kind].append(ref)

        out: List[CapabilityRecord] = []
        for name, priority in caps:
            m = grouped.get(name, {})
            out.append(
                CapabilityRecord(
                    name=name,
                    allowed=tuple(m.get(_ALLOWED, ())),
                    excluded=tuple(m.get(_EXCLUDED, ())),
                    priority=int(priority or 0),
                )
            )
        return out

    def fetch(self, name: str, deadline: Deadline = NO_DEADLINE) -> Optional[CapabilityRecord]:
        deadline.check("fetch")
        self.init_schema()
        try:
            with self.connect(deadline) as con:
                row = con.execute(
                    "SELECT name, priority FROM capabilities WHERE name = ?", (name,)
                ).fetchone()
                if row is None:
                    return None
                members = con.execute(
                    "SELECT kind, role_ref FROM capability_roles WHERE name = ? ORDER BY kind, position",
                    (name,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"capability store read failed: {e}") from e

        return CapabilityRecord(
            name=row[0],
            allowed=tuple(ref for kind, ref in members if kind == _ALLOWED),
            excluded=tuple(ref for kind, ref in members if kind == _EXCLUDED),
            priority=int(row[1] or 0),
        )

    def upsert(self, record: CapabilityRecord, deadline: Deadline = NO_DEADLINE) -> None:
        """Insert or replace one capability record and its memberships."""

        deadline.check("upsert")
        self.init_schema()
        try:
            with self.connect(deadline) as con:
                con.execute(
                    """INSERT INTO capabilities(name, priority, updated_at) VALUES(?,?,?)
                       ON CONFLICT(name) DO UPDATE SET
                           priority = excluded.priority,
                           updated_at = excluded.updated_at""",
                    (record.name, int(record.priority), _now_iso()),
                )
                con.execute("DELETE FROM capability_roles WHERE name = ?", (record.name,))
                rows = [
                    (record.name, _ALLOWED, i, ref) for i, ref in enumerate(dict.fromkeys(record.allowed))
                ] + [
                    (record.name, _EXCLUDED, i, ref) for i, ref in enumerate(dict.fromkeys(record.excluded))
                ]
                con.executemany(
                    "INSERT INTO capability_roles(name, kind, position, role_ref) VALUES(?,?,?,?)",
                    rows,
                )
                con.commit()
        except sqlite3.Error as e:
            raise StoreError(f"capability store write failed for {record.name}: {e}") from e

    def delete(self, name: str, deadline: Deadline = NO_DEADLINE) -> bool:
        deadline.check("delete")
        self.init_schema()
        try:
            with self.connect(deadline) as con:
                cur = con.execute("DELETE FROM capabilities WHERE name = ?", (name,))
                con.commit()
                return cur.rowcount > 0
        except sqlite3.Error as e:
            raise StoreError(f"capability store delete failed for {name}: {e}") from e

    def find_by_role(self, role_ref: str, deadline: Deadline = NO_DEADLINE) -> List[str]:
        """Names of capabilities whose allowed or excluded set references role_ref."""

        deadline.check("find_by_role")
        self.init_schema()
        try:
            with self.connect(deadline) as con:
                rows = con.execute(
                    "SELECT DISTINCT name FROM capability_roles WHERE role_ref = ? ORDER BY name",
                    (role_ref,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"capability store read failed: {e}") from e
        return [r[0] for r in rows]

    # Roles

    def ensure_role(self, name: str, role_ref: Optional[str] = None) -> str:
        """Return the reference for a role name, creating the role row if missing."""

        self.init_schema()
        try:
            with self.connect() as con:
                row = con.execute("SELECT role_ref FROM roles WHERE name = ?", (name,)).fetchone()
                if row is not None:
                    return row[0]
                ref = role_ref or uuid4().hex
                con.execute("INSERT INTO roles(role_ref, name) VALUES(?,?)", (ref, name))
                con.commit()
                return ref
        except sqlite3.Error as e:
            raise StoreError(f"cannot create role {name}: {e}") from e

    def role_rows(self, column: str, values: Sequence[str]) -> List[tuple]:
        """(role_ref, name) rows where column is in values, batched."""

        if column not in {"role_ref", "name"}:
            raise ValueError(f"invalid role column: {column}")
        self.init_schema()
        out: List[tuple] = []
        if not values:
            return out
        try:
            with self.connect() as con:
                for chunk in _chunks(list(values)):
                    marks = ",".join("?" for _ in chunk)
                    out.extend(
                        con.execute(
                            f"SELECT role_ref, name FROM roles WHERE {column} IN ({marks})",
                            tuple(chunk),
                        ).fetchall()
                    )
        except sqlite3.Error as e:
            raise StoreError(f"role lookup failed: {e}") from e
        return out


@dataclass(frozen=True)
class SQLiteRoleResolver:
    """RoleResolver backed by the store's roles table."""

    store: SQLiteCapabilityStore

    def names_for(self, refs: Iterable[str]) -> Dict[str, str]:
        return {ref: name for ref, name in self.store.role_rows("role_ref", list(dict.fromkeys(refs)))}

    def refs_for(self, names: Iterable[str]) -> Dict[str, str]:
        return {name: ref for ref, name in self.store.role_rows("name", list(dict.fromkeys(names)))}
