from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from capauth.core.capabilities.exceptions import CapabilityNotFoundError, CapabilityValidationError
from capauth.core.capabilities.hooks import CapabilityChange, CapabilityListener, CollectionCapabilities
from capauth.core.capabilities.pack import load_capability_pack
from capauth.core.capabilities.service import build_service
from capauth.core.security.roles import ADMINISTRATOR, SUPER_ADMIN
from capauth.core.storage.memory_store import InMemoryCapabilityStore

PACK_DIR = Path(__file__).resolve().parents[2] / "capability_packs"


@pytest.fixture
def store() -> InMemoryCapabilityStore:
    return InMemoryCapabilityStore()


@pytest.fixture
def service(store):
    svc = build_service(store, pack=load_capability_pack(str(PACK_DIR / "default.yaml")))
    yield svc
    svc.close()


def test_pack_defaults_are_loaded_and_persisted(service, store) -> None:
    names = service.registry.names()
    assert "capability.create" in names
    assert "content.addfield" in names
    assert "media.retrieve" in names
    assert store.fetch("content.create") is not None


def test_crud(service) -> None:
    created = service.create({"name": "Articles.Publish", "allowed": ["editor"]})
    assert created.name == "articles.publish"
    assert service.retrieve("articles.publish") == created

    updated = service.update("articles.publish", {"allowed": ["author"]})
    assert updated.allowed[0] == "author"
    assert "editor" not in updated.allowed

    service.delete("articles.publish")
    with pytest.raises(CapabilityNotFoundError):
        service.retrieve("articles.publish")


def test_update_and_delete_require_existing(service) -> None:
    with pytest.raises(CapabilityNotFoundError):
        service.update("nope.cap", {"allowed": ["x"]})
    with pytest.raises(CapabilityNotFoundError):
        service.delete("nope.cap")


def test_not_found_is_also_a_key_error(service) -> None:
    with pytest.raises(KeyError):
        service.retrieve("nope.cap")


def test_create_rejects_malformed_names(service) -> None:
    with pytest.raises(CapabilityValidationError):
        service.create({"name": "bad name"})


def test_check_and_visibility(service) -> None:
    service.create({"name": "articles.publish", "allowed": ["editor"]})

    assert service.check(["editor"], "articles.publish") is True
    assert service.check(["editor"], ["articles.publish", "capability.create"]) is False
    assert service.check(["editor"], ["articles.publish", "capability.create"], strict=False) is True

    visible = [c.name for c in service.visible(["editor"])]
    assert visible == ["articles.publish", "capability.retrieve"]


def test_matrix_follows_grants(service) -> None:
    assert "role:author" not in service.matrix("content")["create"]

    service.grant("content.create", "author")
    assert service.registry.dispatcher.drain(timeout=5)

    m = service.matrix("content")
    assert m["create"]["role:author"] is True
    assert set(m) == {"create", "retrieve", "update", "delete", "addfield"}
    assert service.matrix("content", ["create"]) == {"create": m["create"]}


def test_access_list_from_capabilities(service) -> None:
    service.create({"name": "doc.write", "allowed": ["editor"]})
    acl = service.access_list((), write_capability="doc.write")
    assert acl["role:editor"] == {"write": True}
    assert acl[f"role:{ADMINISTRATOR}"] == {"write": True}
    assert acl[f"role:{SUPER_ADMIN}"] == {"write": True}


def test_reload_from_store(service, store) -> None:
    service.create({"name": "posts.edit", "allowed": ["editor"]})

    other = build_service(store)
    try:
        assert other.retrieve("posts.edit").allowed[0] == "editor"
        report = other.load(flush=True)
        assert "posts.edit" in report.loaded
    finally:
        other.close()


def test_extra_listeners_are_wired() -> None:
    seen: List[str] = []

    class Recorder(CapabilityListener):
        def on_change(self, change: CapabilityChange) -> None:
            seen.append(change.name)

    svc = build_service(
        InMemoryCapabilityStore(),
        listeners=[Recorder(), CollectionCapabilities(["tags"], actions=["create"])],
    )
    try:
        assert svc.registry.get("tags.create") is not None
        svc.create({"name": "x.cap"})
        assert svc.registry.dispatcher.drain(timeout=5)
        assert seen == ["tags.create", "x.cap"]
    finally:
        svc.close()
