from __future__ import annotations

from typing import List

import pytest

from capauth.core.capabilities.hooks import (
    CapabilityChange,
    CapabilityHooks,
    CapabilityListener,
    ChangeDispatcher,
    ChangeKind,
    CollectionCapabilities,
)
from capauth.core.capabilities.exceptions import ValidationIssue
from capauth.core.security.capabilities import CapabilityDef


class Recorder(CapabilityListener):
    def __init__(self) -> None:
        self.changes: List[str] = []

    def on_change(self, change: CapabilityChange) -> None:
        self.changes.append(change.name)


class Broken(CapabilityListener):
    def on_change(self, change: CapabilityChange) -> None:
        raise RuntimeError("broken listener")

    def before_save(self, capability: CapabilityDef) -> List[ValidationIssue]:
        return [ValidationIssue(field="name", message="nope")]


def test_on_change_isolates_failing_listeners() -> None:
    rec = Recorder()
    hooks = CapabilityHooks([Broken(), rec])

    hooks.on_change(CapabilityChange(ChangeKind.REGISTERED, "a.b"))
    assert rec.changes == ["a.b"]


def test_before_save_aggregates_issues() -> None:
    hooks = CapabilityHooks([Broken(), Recorder(), Broken()])
    issues = hooks.run_before_save(CapabilityDef(name="a.b"))
    assert [i.message for i in issues] == ["nope", "nope"]


def test_add_requires_listener_type() -> None:
    hooks = CapabilityHooks()
    with pytest.raises(TypeError):
        hooks.add(lambda change: None)  # type: ignore[arg-type]


def test_remove_listener() -> None:
    rec = Recorder()
    hooks = CapabilityHooks([rec])
    hooks.remove(rec)
    assert hooks.listeners() == []


def test_collection_defaults() -> None:
    cc = CollectionCapabilities(
        ["Posts"],
        actions=["create", "retrieve"],
        statuses=[("posts", "draft")],
        allowed=["editor"],
    )
    cc.add_collection("media")
    cc.add_collection("media")

    defaults = list(cc.ensure_defaults())
    assert [d.name for d in defaults] == [
        "posts.create",
        "posts.retrieve",
        "media.create",
        "media.retrieve",
        "posts.draft",
    ]
    assert all(d.allowed == ("editor",) for d in defaults)


def test_dispatcher_drain_and_close() -> None:
    seen: List[str] = []
    d = ChangeDispatcher()
    d.dispatch([lambda c: seen.append(c.name)], [CapabilityChange(ChangeKind.REGISTERED, "x.y")])
    assert d.drain(timeout=5) is True
    assert seen == ["x.y"]

    d.close()
    # Dispatch after close is dropped, not raised.
    d.dispatch([lambda c: seen.append(c.name)], [CapabilityChange(ChangeKind.REGISTERED, "z.z")])
    assert seen == ["x.y"]


def test_collection_defaults_skip_malformed_names(caplog) -> None:
    cc = CollectionCapabilities(["bad collection", "posts"], actions=["create"], statuses=[("posts", "")])

    with caplog.at_level("WARNING", logger="capauth.hooks"):
        defaults = [d.name for d in cc.ensure_defaults()]

    assert defaults == ["posts.create"]
    assert any(r.getMessage() == "capability_default_invalid_name_skipped" for r in caplog.records)
