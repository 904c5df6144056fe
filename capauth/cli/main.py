from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator, List

from capauth.cli.client_cmds import register_client_commands
from capauth.core.capabilities.artifacts import AccessRule
from capauth.core.capabilities.exceptions import (
    CapabilityError,
    CapabilityNotFoundError,
    CapabilityValidationError,
    StoreError,
)
from capauth.core.capabilities.pack import load_capability_pack, resolve_capability_pack_path
from capauth.core.capabilities.service import CapabilityService, open_sqlite_service
from capauth.core.security.roles import RESERVED_ROLES
from capauth.core.storage.sqlite_store import SQLiteCapabilityStore
from capauth.utils.json_safe import to_jsonable

PACK_DIR = Path(__file__).resolve().parents[2] / "capability_packs"


def _print_json(obj: object) -> None:
    print(json.dumps(to_jsonable(obj), indent=2, sort_keys=True))


def _csv(raw: str | None) -> List[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


def _load_pack(ref: str | None, allow_paths: bool = True):
    if not ref:
        return None
    path = resolve_capability_pack_path(ref, base_dir=str(PACK_DIR), allow_arbitrary_paths=allow_paths)
    return load_capability_pack(path)


@contextmanager
def _service(args: argparse.Namespace, *, load: bool = True) -> Iterator[CapabilityService]:
    """Open the SQLite-backed service named by --db and close it afterwards."""

    svc = open_sqlite_service(
        args.db,
        role_refs=args.role_refs,
        pack=_load_pack(getattr(args, "pack", None)),
        timeout=args.timeout if args.timeout and args.timeout > 0 else None,
        load=load,
    )
    try:
        yield svc
    finally:
        svc.close()


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the capauth API server.

    Security notes:
    - If CAPAUTH_API_KEYS is set, requests must provide X-CapAuth-API-Key.
    - Bind to 127.0.0.1 by default (safer than 0.0.0.0).
    """

    import uvicorn

    from capauth.api.server import ServiceConfig, create_app

    cfg = ServiceConfig.from_env()
    overrides = {}
    if args.db:
        overrides["db_path"] = Path(args.db)
    if args.pack:
        overrides["capability_pack"] = args.pack
    if overrides:
        cfg = replace(cfg, **overrides)

    app = create_app(cfg)
    uvicorn.run(app, host=args.host, port=int(args.port), log_level=args.log_level)
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    """Create the schema, optionally seed roles, and load the pack defaults."""

    store = SQLiteCapabilityStore(Path(args.db))
    store.init_schema()
    for role in (*sorted(RESERVED_ROLES), *_csv(args.roles)):
        store.ensure_role(role)
    with _service(args) as svc:
        _print_json({"db": os.path.abspath(args.db), "capabilities": svc.registry.names()})
    return 0


def cmd_role_add(args: argparse.Namespace) -> int:
    """Register role names in the roles table (role_refs=table mode)."""

    store = SQLiteCapabilityStore(Path(args.db))
    refs = {name: store.ensure_role(name) for name in args.names}
    _print_json(refs)
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    with _service(args) as svc:
        caps = svc.visible(_csv(args.roles)) if args.roles is not None else svc.list(prefix=args.prefix)
        _print_json([c.to_dict() for c in caps])
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    with _service(args) as svc:
        _print_json(svc.retrieve(args.name))
    return 0


def cmd_create(args: argparse.Namespace) -> int:
    body = {
        "name": args.name,
        "allowed": _csv(args.allowed),
        "excluded": _csv(args.excluded),
        "priority": args.priority,
    }
    with _service(args) as svc:
        _print_json(svc.create(body) if args.cmd == "create" else svc.update(args.name, body))
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    with _service(args) as svc:
        svc.delete(args.name)
        _print_json({"deleted": args.name})
    return 0


def cmd_role_change(args: argparse.Namespace) -> int:
    with _service(args) as svc:
        op = getattr(svc, args.cmd)
        _print_json(op(args.name, args.role))
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Exit code 0 when allowed, 1 when denied."""

    with _service(args) as svc:
        allowed = svc.check(_csv(args.roles), _csv(args.capabilities), strict=not args.any)
    _print_json({"allowed": allowed})
    return 0 if allowed else 1


def cmd_matrix(args: argparse.Namespace) -> int:
    with _service(args) as svc:
        _print_json(svc.matrix(args.collection, _csv(args.actions) or None))
    return 0


def cmd_access_list(args: argparse.Namespace) -> int:
    raw_rules = json.loads(args.rules) if args.rules else []
    with _service(args) as svc:
        rules = [AccessRule.from_mapping(r) for r in raw_rules]
        _print_json(svc.access_list(rules, args.read or "", args.write or ""))
    return 0


def cmd_load(args: argparse.Namespace) -> int:
    with _service(args, load=False) as svc:
        _print_json(svc.load(flush=args.flush))
    return 0


def cmd_propagate(args: argparse.Namespace) -> int:
    with _service(args) as svc:
        report = svc.propagate()
        _print_json(report)
    return 0 if report.ok else 2


def cmd_pack_validate(args: argparse.Namespace) -> int:
    """Parse a capability pack and print the normalized definitions."""

    pack = _load_pack(args.pack)
    _print_json(
        {
            "pack_id": pack.pack_id,
            "capabilities": [c.to_dict() for c in pack.capabilities],
            "collections": list(pack.collections),
            "collection_actions": list(pack.collection_actions),
        }
    )
    return 0


def _add_store_args(p: argparse.ArgumentParser, *, pack: bool = True) -> None:
    p.add_argument("--db", required=True, help="Path to SQLite DB file")
    p.add_argument(
        "--role-refs",
        choices=("table", "identity"),
        default=os.environ.get("CAPAUTH_ROLE_REFS", "table"),
        help="How role names map to stored references",
    )
    p.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="Store deadline in seconds (0 disables)",
    )
    if pack:
        p.add_argument("--pack", default=None, help="Capability pack name or path (seeds defaults)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="capauth", description="Capability authorization engine")
    p.add_argument(
        "--log-level",
        dest="cli_log_level",
        default=os.environ.get("CAPAUTH_LOG_LEVEL", "WARNING"),
        help="Python logging level for engine messages",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    ini = sub.add_parser("init", help="Initialize a SQLite capability store")
    _add_store_args(ini)
    ini.add_argument("--roles", default="", help="Comma-separated role names to register")
    ini.set_defaults(func=cmd_init)

    ra = sub.add_parser("role-add", help="Register role names in the store")
    _add_store_args(ra, pack=False)
    ra.add_argument("names", nargs="+")
    ra.set_defaults(func=cmd_role_add)

    ls = sub.add_parser("list", help="List capabilities")
    _add_store_args(ls)
    ls.add_argument("--prefix", default=None, help="Only names starting with prefix")
    ls.add_argument("--roles", default=None, help="Only capabilities these roles hold")
    ls.set_defaults(func=cmd_list)

    sh = sub.add_parser("show", help="Show one capability")
    _add_store_args(sh)
    sh.add_argument("name")
    sh.set_defaults(func=cmd_show)

    for cmd, help_text in (
        ("create", "Create (or overwrite) a capability"),
        ("update", "Replace the role lists of an existing capability"),
    ):
        c = sub.add_parser(cmd, help=help_text)
        _add_store_args(c)
        c.add_argument("name")
        c.add_argument("--allowed", default="", help="Comma-separated allowed roles")
        c.add_argument("--excluded", default="", help="Comma-separated excluded roles")
        c.add_argument("--priority", type=int, default=0, help="Load order (lower first)")
        c.set_defaults(func=cmd_create)

    d = sub.add_parser("delete", help="Delete a capability")
    _add_store_args(d)
    d.add_argument("name")
    d.set_defaults(func=cmd_delete)

    for cmd in ("grant", "revoke", "restrict", "unrestrict"):
        r = sub.add_parser(cmd, help=f"{cmd.capitalize()} a role on a capability")
        _add_store_args(r)
        r.add_argument("name")
        r.add_argument("role")
        r.set_defaults(func=cmd_role_change)

    ck = sub.add_parser("check", help="Check capabilities for roles (exit 0 allowed, 1 denied)")
    _add_store_args(ck)
    ck.add_argument("capabilities", help="Comma-separated capability names")
    ck.add_argument("--roles", default="", help="Comma-separated roles")
    ck.add_argument("--any", action="store_true", help="Permissive check (any one suffices)")
    ck.set_defaults(func=cmd_check)

    mx = sub.add_parser("matrix", help="Print a collection permission matrix")
    _add_store_args(mx)
    mx.add_argument("collection")
    mx.add_argument("--actions", default=None, help="Comma-separated actions")
    mx.set_defaults(func=cmd_matrix)

    al = sub.add_parser("access-list", help="Build an object access list")
    _add_store_args(al)
    al.add_argument("--rules", default=None, help="JSON list of explicit rules")
    al.add_argument("--read", default=None, help="Capability granting read")
    al.add_argument("--write", default=None, help="Capability granting write")
    al.set_defaults(func=cmd_access_list)

    ld = sub.add_parser("load", help="Load the store and print the load report")
    _add_store_args(ld)
    ld.add_argument("--flush", action="store_true", help="Clear the registry first")
    ld.set_defaults(func=cmd_load)

    pr = sub.add_parser("propagate", help="Write every capability back to the store")
    _add_store_args(pr)
    pr.set_defaults(func=cmd_propagate)

    pv = sub.add_parser("pack-validate", help="Parse a capability pack and print it")
    pv.add_argument("pack", help="Pack name (under capability_packs/) or path")
    pv.set_defaults(func=cmd_pack_validate)

    # --- API server ---
    sv = sub.add_parser("serve", help="Run the capauth FastAPI server")
    sv.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    sv.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")
    sv.add_argument("--db", default=None, help="SQLite DB path (default: CAPAUTH_DB_PATH)")
    sv.add_argument("--pack", default=None, help="Capability pack (default: CAPAUTH_CAPABILITY_PACK)")
    sv.add_argument("--uvicorn-log-level", dest="log_level", default="info", help="Uvicorn log level")
    sv.set_defaults(func=cmd_serve)

    # --- API client ---
    register_client_commands(sub)

    return p


def main(argv: List[str] | None = None) -> int:
    """CLI entry."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=str(getattr(args, "cli_log_level", None) or "WARNING").upper())
    try:
        return int(args.func(args))
    except CapabilityNotFoundError as e:
        print(f"error: {e}", file=sys.stderr)
        return 3
    except CapabilityValidationError as e:
        print(f"error: {e}", file=sys.stderr)
        for issue in e.issues:
            print(f"  {issue.field}: {issue.message}", file=sys.stderr)
        return 2
    except (StoreError, CapabilityError, FileNotFoundError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
