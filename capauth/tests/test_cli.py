from __future__ import annotations

import json
from pathlib import Path

from capauth.cli.main import main


def _run(capsys, *argv: str):
    code = main(list(argv))
    out = capsys.readouterr().out
    return code, (json.loads(out) if out.strip() else None)


def test_init_create_and_check(tmp_path: Path, capsys) -> None:
    db = str(tmp_path / "caps.db")

    code, out = _run(capsys, "init", "--db", db, "--roles", "editor", "--pack", "default")
    assert code == 0
    assert "capability.create" in out["capabilities"]

    code, out = _run(capsys, "create", "--db", db, "Articles.Publish", "--allowed", "editor")
    assert code == 0
    assert out["name"] == "articles.publish"
    assert out["allowed"][0] == "editor"

    code, out = _run(capsys, "check", "--db", db, "articles.publish", "--roles", "editor")
    assert (code, out) == (0, {"allowed": True})

    code, out = _run(capsys, "check", "--db", db, "articles.publish", "--roles", "viewer")
    assert (code, out) == (1, {"allowed": False})


def test_unknown_roles_dropped_in_table_mode(tmp_path: Path, capsys) -> None:
    db = str(tmp_path / "caps.db")
    _run(capsys, "init", "--db", db)

    _run(capsys, "create", "--db", db, "posts.edit", "--allowed", "ghost")
    code, out = _run(capsys, "show", "--db", db, "posts.edit")
    assert code == 0
    assert "ghost" not in out["allowed"]

    _run(capsys, "role-add", "--db", db, "ghost")
    _run(capsys, "grant", "--db", db, "posts.edit", "ghost")
    code, out = _run(capsys, "show", "--db", db, "posts.edit")
    assert "ghost" in out["allowed"]


def test_identity_mode_and_matrix(tmp_path: Path, capsys) -> None:
    db = str(tmp_path / "caps.db")
    base = ["--db", db, "--role-refs", "identity", "--pack", "default"]

    _run(capsys, "grant", *base, "content.retrieve", "anonymous")
    code, out = _run(capsys, "matrix", *base, "content", "--actions", "retrieve,create")
    assert code == 0
    assert out["retrieve"] == {"*": True}
    assert out["create"] == {"role:administrator": True, "role:super-admin": True}


def test_missing_capability_exit_code(tmp_path: Path, capsys) -> None:
    db = str(tmp_path / "caps.db")
    _run(capsys, "init", "--db", db)

    assert main(["show", "--db", db, "nope.cap"]) == 3
    assert main(["delete", "--db", db, "nope.cap"]) == 3
    assert main(["create", "--db", db, "bad name"]) == 2
    err = capsys.readouterr().err
    assert "name:" in err


def test_load_and_propagate(tmp_path: Path, capsys) -> None:
    db = str(tmp_path / "caps.db")
    _run(capsys, "init", "--db", db, "--pack", "default")

    code, out = _run(capsys, "propagate", "--db", db)
    assert code == 0
    assert out["ok"] is True
    assert "capability.create" in out["written"]

    code, out = _run(capsys, "load", "--db", db, "--flush")
    assert code == 0
    assert "capability.create" in out["loaded"]


def test_pack_validate(capsys) -> None:
    code, out = _run(capsys, "pack-validate", "default")
    assert code == 0
    assert out["collections"] == ["content", "media"]
    names = [c["name"] for c in out["capabilities"]]
    assert "capability.sync" in names
