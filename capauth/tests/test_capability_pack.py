from __future__ import annotations

import json
from pathlib import Path

import pytest

from capauth.core.capabilities.exceptions import CapabilityValidationError
from capauth.core.capabilities.pack import (
    load_capability_pack,
    parse_capability_pack,
    resolve_capability_pack_path,
)

PACK_DIR = Path(__file__).resolve().parents[2] / "capability_packs"


def test_load_default_pack() -> None:
    path = resolve_capability_pack_path("default", base_dir=str(PACK_DIR), allow_arbitrary_paths=False)
    pack = load_capability_pack(path)

    assert pack.pack_id == "default"
    names = [c.name for c in pack.capabilities]
    assert "capability.create" in names
    retrieve = next(c for c in pack.capabilities if c.name == "capability.retrieve")
    assert retrieve.allowed == ("editor",)
    assert pack.collections == ("content", "media")
    assert "addfield" in pack.collection_actions


def test_pack_name_resolution_blocks_traversal() -> None:
    with pytest.raises(ValueError):
        resolve_capability_pack_path("../secrets.yaml", base_dir=str(PACK_DIR), allow_arbitrary_paths=False)


def test_missing_pack_is_reported() -> None:
    with pytest.raises(FileNotFoundError):
        resolve_capability_pack_path("does-not-exist", base_dir=str(PACK_DIR))


def test_yaml_keys_may_contain_colons(tmp_path: Path) -> None:
    p = tmp_path / "colons.yaml"
    p.write_text(
        "capabilities:\n"
        "  export:document.basic:\n"
        "    allowed:\n"
        "      - analyst  # trailing comment\n"
        "    priority: 4\n"
        "  \"Quoted.Name\":\n"
        "    excluded: []\n",
        encoding="utf-8",
    )
    pack = load_capability_pack(str(p))

    by_name = {c.name: c for c in pack.capabilities}
    assert by_name["export:document.basic"].allowed == ("analyst",)
    assert by_name["export:document.basic"].priority == 4
    assert "quoted.name" in by_name
    assert pack.collections == ()


def test_json_pack(tmp_path: Path) -> None:
    p = tmp_path / "pack.json"
    p.write_text(
        json.dumps(
            {
                "capabilities": {"posts.publish": {"allowed": ["editor"]}},
                "collections": ["posts"],
                "collection_actions": ["Create"],
            }
        ),
        encoding="utf-8",
    )
    pack = load_capability_pack(str(p))

    assert pack.pack_id == "pack"
    assert pack.collection_actions == ("create",)
    defaults = [c.name for c in pack.listener().ensure_defaults()]
    assert defaults == ["posts.publish", "posts.create"]


def test_invalid_capability_names_are_collected() -> None:
    with pytest.raises(CapabilityValidationError) as ei:
        parse_capability_pack({"capabilities": {"bad name": {}, "a..b": {}, "ok.cap": {}}}, pack_id="x")
    assert len(ei.value.issues) == 2


def test_structural_errors_raise_value_error() -> None:
    with pytest.raises(ValueError):
        parse_capability_pack({"capabilities": ["not", "a", "mapping"]}, pack_id="x")
    with pytest.raises(ValueError):
        parse_capability_pack({"capabilities": {"a.b": {"allowed": [1, 2]}}}, pack_id="x")
