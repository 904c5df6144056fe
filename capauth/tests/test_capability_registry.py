from __future__ import annotations

import threading
from typing import List

import pytest

from capauth.core.capabilities.exceptions import CapabilityValidationError
from capauth.core.capabilities.hooks import CapabilityChange, ChangeKind
from capauth.core.capabilities.registry import CapabilityRegistry
from capauth.core.security.capabilities import CapabilityDef
from capauth.core.security.roles import BANNED, SUPER_ADMIN


@pytest.fixture
def registry():
    reg = CapabilityRegistry()
    yield reg
    reg.dispatcher.close()


def test_register_normalizes_and_canonicalizes(registry: CapabilityRegistry) -> None:
    cap = registry.register("Articles.Publish", {"allowed": ["editor"]})

    assert cap.name == "articles.publish"
    assert registry.get("_articles.publish") == cap
    assert SUPER_ADMIN in cap.allowed
    assert BANNED in cap.excluded
    assert "ARTICLES.PUBLISH" in registry
    assert len(registry) == 1


def test_register_without_definition_creates_reserved_only(registry: CapabilityRegistry) -> None:
    cap = registry.register("empty.cap")
    assert cap.allowed == ("administrator", SUPER_ADMIN)


def test_register_rejects_bad_names(registry: CapabilityRegistry) -> None:
    with pytest.raises(CapabilityValidationError):
        registry.register("bad name")
    assert len(registry) == 0


def test_get_unknown_or_invalid_is_none(registry: CapabilityRegistry) -> None:
    assert registry.get("nope") is None
    assert registry.get("bad name") is None


def test_last_write_wins(registry: CapabilityRegistry) -> None:
    registry.register("a.b", CapabilityDef(name="ignored", allowed=["one"]))
    registry.register("a.b", CapabilityDef(name="ignored", allowed=["two"]))
    assert registry.get("a.b").allowed[0] == "two"


def test_list_filters_and_sorts(registry: CapabilityRegistry) -> None:
    registry.register("posts.edit", {"allowed": ["editor"]})
    registry.register("posts.create", {"allowed": ["author"]})
    registry.register("media.delete")

    assert [c.name for c in registry.list()] == ["media.delete", "posts.create", "posts.edit"]
    assert [c.name for c in registry.list(prefix="Posts.")] == ["posts.create", "posts.edit"]
    assert [c.name for c in registry.list(role="editor")] == ["posts.edit"]


def test_unregister(registry: CapabilityRegistry) -> None:
    registry.register("a.b")
    assert registry.unregister("A.B") is True
    assert registry.unregister("a.b") is False
    assert registry.get("a.b") is None


def test_subscribers_receive_changes_in_order(registry: CapabilityRegistry) -> None:
    seen: List[CapabilityChange] = []
    registry.subscribe(seen.append)

    registry.register("a.one", {"allowed": ["x"]})
    registry.register("a.one", {"allowed": ["y"]})
    registry.unregister("a.one")

    assert registry.dispatcher.drain(timeout=5)
    assert [c.kind for c in seen] == [ChangeKind.REGISTERED, ChangeKind.REGISTERED, ChangeKind.UNREGISTERED]
    assert seen[1].previous is not None and seen[1].previous.allowed[0] == "x"
    assert seen[2].capability is None


def test_notification_runs_off_the_caller_thread(registry: CapabilityRegistry) -> None:
    threads: List[str] = []
    registry.subscribe(lambda change: threads.append(threading.current_thread().name))

    registry.register("a.b")
    assert registry.dispatcher.drain(timeout=5)
    assert threads and threads[0] != threading.current_thread().name


def test_failing_subscriber_does_not_block_others(registry: CapabilityRegistry) -> None:
    seen: List[str] = []

    def boom(change: CapabilityChange) -> None:
        raise RuntimeError("listener failure")

    registry.subscribe(boom)
    registry.subscribe(lambda change: seen.append(change.name))

    registry.register("a.b")
    assert registry.dispatcher.drain(timeout=5)
    assert seen == ["a.b"]


def test_unsubscribe_stops_delivery(registry: CapabilityRegistry) -> None:
    seen: List[str] = []
    token = registry.subscribe(lambda change: seen.append(change.name))
    assert registry.unsubscribe(token) is True

    registry.register("a.b")
    assert registry.dispatcher.drain(timeout=5)
    assert seen == []


def test_subscriber_can_read_registry_without_deadlock(registry: CapabilityRegistry) -> None:
    reads: List[object] = []
    registry.subscribe(lambda change: reads.append(registry.get(change.name)))

    registry.register("a.b", {"allowed": ["x"]})
    assert registry.dispatcher.drain(timeout=5)
    assert reads and reads[0] is not None


def test_replace_all_with_flush_drops_missing(registry: CapabilityRegistry) -> None:
    registry.register("old.cap")
    changes = registry.replace_all([CapabilityDef(name="new.cap", allowed=["x"])], flush=True)

    assert registry.names() == ["new.cap"]
    kinds = {(c.kind, c.name) for c in changes}
    assert (ChangeKind.REGISTERED, "new.cap") in kinds
    assert (ChangeKind.UNREGISTERED, "old.cap") in kinds


def test_replace_all_skips_invalid_names(registry: CapabilityRegistry) -> None:
    registry.replace_all([CapabilityDef(name="bad name"), CapabilityDef(name="ok.cap")])
    assert registry.names() == ["ok.cap"]


def test_register_missing_keeps_existing(registry: CapabilityRegistry) -> None:
    registry.register("a.b", {"allowed": ["custom"]})
    created = registry.register_missing([CapabilityDef(name="a.b"), CapabilityDef(name="c.d")])

    assert [c.name for c in created] == ["c.d"]
    assert registry.get("a.b").allowed[0] == "custom"


def test_concurrent_writers_and_readers(registry: CapabilityRegistry) -> None:
    errors: List[BaseException] = []

    def writer(n: int) -> None:
        try:
            for i in range(50):
                registry.register(f"w{n}.cap{i}", {"allowed": [f"r{i}"]})
        except BaseException as e:  # pragma: no cover - reported below
            errors.append(e)

    def reader() -> None:
        try:
            for _ in range(200):
                for cap in registry.list():
                    assert SUPER_ADMIN in cap.allowed
        except BaseException as e:  # pragma: no cover - reported below
            errors.append(e)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    threads += [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert not errors
    assert len(registry) == 200
