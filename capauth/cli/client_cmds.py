from __future__ import annotations

import argparse
import json
import sys

from capauth.client.http import API_KEY_HEADER, CapAuthHttpClient, HttpResponse


def _print_json(obj: object) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _client(args: argparse.Namespace) -> CapAuthHttpClient:
    return CapAuthHttpClient(args.url, api_key=args.api_key, timeout=args.timeout)


def _emit(r: HttpResponse) -> int:
    """Print a response; non-2xx bodies go to stderr with exit code 2."""

    if r.status >= 400:
        print(r.text(), file=sys.stderr)
        return 2
    body = r.json()
    if body is not None:
        _print_json(body)
    return 0


def _csv(raw: str | None) -> list[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


def cmd_client_health(args: argparse.Namespace) -> int:
    return _emit(_client(args).health())


def cmd_client_list(args: argparse.Namespace) -> int:
    return _emit(_client(args).list_capabilities(prefix=args.prefix, visible=args.visible))


def cmd_client_get(args: argparse.Namespace) -> int:
    return _emit(_client(args).get_capability(args.name))


def cmd_client_create(args: argparse.Namespace) -> int:
    c = _client(args)
    return _emit(
        c.create_capability(
            args.name, _csv(args.allowed), _csv(args.excluded), priority=args.priority
        )
    )


def cmd_client_update(args: argparse.Namespace) -> int:
    c = _client(args)
    return _emit(
        c.update_capability(
            args.name, _csv(args.allowed), _csv(args.excluded), priority=args.priority
        )
    )


def cmd_client_delete(args: argparse.Namespace) -> int:
    return _emit(_client(args).delete_capability(args.name))


def cmd_client_role(args: argparse.Namespace) -> int:
    """grant / revoke / restrict / unrestrict a role on a capability."""
    return _emit(_client(args).change_role(args.client_cmd, args.name, args.role))


def cmd_client_check(args: argparse.Namespace) -> int:
    """POST /check. Exit code 0 when allowed, 1 when denied."""

    c = _client(args)
    roles = _csv(args.roles) if args.roles is not None else None
    r = c.check(_csv(args.capabilities), roles=roles, strict=not args.any)
    if r.status >= 400:
        return _emit(r)
    body = r.json() or {}
    _print_json(body)
    return 0 if body.get("allowed") else 1


def cmd_client_matrix(args: argparse.Namespace) -> int:
    return _emit(_client(args).matrix(args.collection, _csv(args.actions) or None))


def cmd_client_access_list(args: argparse.Namespace) -> int:
    rules = json.loads(args.rules) if args.rules else []
    return _emit(
        _client(args).access_list(
            rules, read_capability=args.read or "", write_capability=args.write or ""
        )
    )


def cmd_client_load(args: argparse.Namespace) -> int:
    return _emit(_client(args).load(flush=args.flush))


def cmd_client_propagate(args: argparse.Namespace) -> int:
    return _emit(_client(args).propagate())


def register_client_commands(sub: argparse._SubParsersAction) -> None:
    """Register the `client` command group."""

    client = sub.add_parser("client", help="capauth API client (talk to a running server)")
    client.add_argument("--url", default="http://127.0.0.1:8080", help="Base API URL")
    client.add_argument("--api-key", default=None, help=f"API key ({API_KEY_HEADER})")
    client.add_argument("--timeout", type=float, default=30.0, help="Request timeout seconds")
    csub = client.add_subparsers(dest="client_cmd", required=True)

    h = csub.add_parser("health", help="Check server health")
    h.set_defaults(func=cmd_client_health)

    ls = csub.add_parser("list", help="List capabilities")
    ls.add_argument("--prefix", default=None, help="Only names starting with prefix")
    ls.add_argument("--visible", action="store_true", help="Only capabilities the caller holds")
    ls.set_defaults(func=cmd_client_list)

    g = csub.add_parser("get", help="Show one capability")
    g.add_argument("name")
    g.set_defaults(func=cmd_client_get)

    for cmd, func, help_text in (
        ("create", cmd_client_create, "Create (or overwrite) a capability"),
        ("update", cmd_client_update, "Replace the role lists of a capability"),
    ):
        p = csub.add_parser(cmd, help=help_text)
        p.add_argument("name")
        p.add_argument("--allowed", default="", help="Comma-separated allowed roles")
        p.add_argument("--excluded", default="", help="Comma-separated excluded roles")
        p.add_argument("--priority", type=int, default=0, help="Load order (lower first)")
        p.set_defaults(func=func)

    d = csub.add_parser("delete", help="Delete a capability")
    d.add_argument("name")
    d.set_defaults(func=cmd_client_delete)

    for action in ("grant", "revoke", "restrict", "unrestrict"):
        p = csub.add_parser(action, help=f"{action.capitalize()} a role on a capability")
        p.add_argument("name")
        p.add_argument("role")
        p.set_defaults(func=cmd_client_role)

    ck = csub.add_parser("check", help="Check capabilities (exit 0 allowed, 1 denied)")
    ck.add_argument("capabilities", help="Comma-separated capability names")
    ck.add_argument("--roles", default=None, help="Comma-separated roles (default: caller's)")
    ck.add_argument("--any", action="store_true", help="Permissive check (any one suffices)")
    ck.set_defaults(func=cmd_client_check)

    mx = csub.add_parser("matrix", help="Show a collection permission matrix")
    mx.add_argument("collection")
    mx.add_argument("--actions", default=None, help="Comma-separated actions")
    mx.set_defaults(func=cmd_client_matrix)

    al = csub.add_parser("access-list", help="Build an object access list")
    al.add_argument("--rules", default=None, help="JSON list of explicit rules")
    al.add_argument("--read", default=None, help="Capability granting read")
    al.add_argument("--write", default=None, help="Capability granting write")
    al.set_defaults(func=cmd_client_access_list)

    ld = csub.add_parser("load", help="Reload the registry from the store")
    ld.add_argument("--flush", action="store_true", help="Clear the registry first")
    ld.set_defaults(func=cmd_client_load)

    pr = csub.add_parser("propagate", help="Write the registry to the store")
    pr.set_defaults(func=cmd_client_propagate)
