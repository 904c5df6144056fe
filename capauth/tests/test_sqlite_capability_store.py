from __future__ import annotations

from pathlib import Path

import pytest

from capauth.core.capabilities.exceptions import StoreError, StoreTimeoutError
from capauth.core.capabilities.service import open_sqlite_service
from capauth.core.storage.contracts import CapabilityRecord, Deadline
from capauth.core.storage.sqlite_store import SQLiteCapabilityStore, SQLiteRoleResolver


def _store(tmp_path: Path) -> SQLiteCapabilityStore:
    store = SQLiteCapabilityStore(tmp_path / "caps.db")
    store.init_schema()
    return store


def test_upsert_fetch_roundtrip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rec = CapabilityRecord(name="posts.edit", allowed=("r2", "r1"), excluded=("r9",), priority=3)

    store.upsert(rec)

    assert store.fetch("posts.edit") == rec
    assert store.fetch_all() == [rec]
    assert store.fetch("missing") is None


def test_upsert_replaces_memberships(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.upsert(CapabilityRecord(name="a.cap", allowed=("r1", "r2")))
    store.upsert(CapabilityRecord(name="a.cap", allowed=("r3",)))

    assert store.fetch("a.cap").allowed == ("r3",)


def test_find_by_role_and_delete(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.upsert(CapabilityRecord(name="a.cap", allowed=("r1",)))
    store.upsert(CapabilityRecord(name="b.cap", excluded=("r1",)))
    store.upsert(CapabilityRecord(name="c.cap", allowed=("r2",)))

    assert store.find_by_role("r1") == ["a.cap", "b.cap"]

    assert store.delete("a.cap") is True
    assert store.delete("a.cap") is False
    assert store.find_by_role("r1") == ["b.cap"]


def test_expired_deadline_is_rejected_before_io(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(StoreTimeoutError):
        store.fetch_all(Deadline.from_timeout(0))


def test_unreadable_database_raises_store_error(tmp_path: Path) -> None:
    store = SQLiteCapabilityStore(tmp_path / "missing-dir" / "caps.db")
    with pytest.raises(StoreError):
        store.fetch_all()


def test_role_resolver_batches(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ref_editor = store.ensure_role("editor")
    ref_author = store.ensure_role("author", role_ref="author-ref")
    assert store.ensure_role("editor") == ref_editor

    resolver = SQLiteRoleResolver(store)
    assert resolver.refs_for(["editor", "author", "ghost"]) == {
        "editor": ref_editor,
        "author": "author-ref",
    }
    assert resolver.names_for([ref_author, "nope"]) == {"author-ref": "author"}
    assert resolver.names_for([]) == {}


def test_service_persists_through_role_table(tmp_path: Path) -> None:
    db = tmp_path / "caps.db"
    store = _store(tmp_path)
    for role in ("editor", "administrator", "super-admin", "banned"):
        store.ensure_role(role)

    svc = open_sqlite_service(db, role_refs="table")
    try:
        svc.create({"name": "posts.edit", "allowed": ["editor", "unknown-role"]})
        rec = store.fetch("posts.edit")
        # Stored as references, and only for roles that exist.
        assert "editor" not in rec.allowed
        assert len(rec.allowed) == 3
    finally:
        svc.close()

    reopened = open_sqlite_service(db, role_refs="table")
    try:
        cap = reopened.retrieve("posts.edit")
        assert cap.allowed == ("editor", "administrator", "super-admin")
        assert cap.excluded == ("banned",)
    finally:
        reopened.close()


def test_open_sqlite_service_rejects_unknown_mode(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        open_sqlite_service(tmp_path / "caps.db", role_refs="bogus")
