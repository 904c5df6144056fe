from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

from capauth.core.security.capabilities import CapabilityDef, canonical_capability_name

from .exceptions import CapabilityValidationError, ValidationIssue
from .hooks import DEFAULT_COLLECTION_ACTIONS, CapabilityListener, CollectionCapabilities


@dataclass(frozen=True, slots=True)
class CapabilityPack:
    """Seed capability definitions loaded from a YAML/JSON file.

    Supported schema (YAML subset or JSON)

    capabilities:
      articles.publish:
        allowed:
          - editor
        excluded:
          - contributor
        priority: 10
    collections:
      - articles
    collection_actions:
      - create
      - retrieve

    Security notes:
    - Treat capability pack files as trusted configuration.
    - In the API, do NOT allow arbitrary filesystem paths by default.
    """

    pack_id: str
    capabilities: Tuple[CapabilityDef, ...] = field(default_factory=tuple)
    collections: Tuple[str, ...] = field(default_factory=tuple)
    collection_actions: Tuple[str, ...] = DEFAULT_COLLECTION_ACTIONS

    def listener(self) -> "CapabilityPackListener":
        return CapabilityPackListener(self)


class CapabilityPackListener(CapabilityListener):
    """Offers a pack's definitions as ensure-defaults during load."""

    def __init__(self, pack: CapabilityPack):
        self.pack = pack
        self._collections = CollectionCapabilities(
            pack.collections, actions=pack.collection_actions
        )

    def ensure_defaults(self) -> Iterable[CapabilityDef]:
        return [*self.pack.capabilities, *self._collections.ensure_defaults()]


_KEY_RE = re.compile(r"^(?P<key>\"[^\"]*\"|'[^']*'|[^\s].*?):(?:\s+(?P<rest>.*))?$")


def _unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        return text[1:-1]
    return text


def _strip_comment(line: str) -> str:
    # Comments start at a '#' preceded by whitespace or at line start.
    return re.split(r"(?:^|\s)#", line, maxsplit=1)[0].rstrip()


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip(" "))


def _parse_minimal_yaml(text: str) -> Dict[str, Any]:
    """Parse the YAML subset used by capability packs.

    Supports nested mappings by indentation, block lists ("- item"), inline
    empty lists ("[]") and scalar strings. Keys may contain ':' (e.g.
    "export:document") as long as the separator is followed by whitespace or
    ends the line. This is not a general YAML parser.

    Time:  O(n)
    Space: O(n)
    """

    lines = [ln for ln in (_strip_comment(l) for l in text.splitlines()) if ln.strip()]
    root: Dict[str, Any] = {}
    stack: List[Tuple[int, Dict[str, Any]]] = [(-1, root)]

    i = 0
    while i < len(lines):
        line = lines[i]
        indent = _indent(line)
        stripped = line.strip()

        while len(stack) > 1 and indent <= stack[-1][0]:
            stack.pop()
        cur = stack[-1][1]

        if stripped.startswith("-"):
            raise ValueError(f"Unexpected list item: {line}")

        m = _KEY_RE.match(stripped)
        if m is None:
            raise ValueError(f"Invalid line (expected key: value): {line}")
        key = _unquote(m.group("key"))
        rest = (m.group("rest") or "").strip()

        if rest == "[]":
            cur[key] = []
            i += 1
            continue

        if rest:
            cur[key] = _unquote(rest)
            i += 1
            continue

        # Block value: a list if the next deeper line is a list item, else a mapping.
        items: List[str] = []
        j = i + 1
        while j < len(lines) and _indent(lines[j]) > indent and lines[j].strip().startswith("-"):
            items.append(_unquote(lines[j].strip()[1:]))
            j += 1

        if items:
            cur[key] = items
            i = j
            continue

        child: Dict[str, Any] = {}
        cur[key] = child
        stack.append((indent, child))
        i += 1

    return root


def _parse_json(text: str) -> Dict[str, Any]:
    obj = json.loads(text)
    if not isinstance(obj, dict):
        raise ValueError("Capability pack JSON must be an object")
    return obj


def _str_list(value: Any, where: str) -> List[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(x, str) for x in value):
        raise ValueError(f"{where} must be a list of strings")
    return list(value)


def parse_capability_pack(data: Dict[str, Any], *, pack_id: str) -> CapabilityPack:
    """Validate pack data into a CapabilityPack.

    Raises
    - CapabilityValidationError: a capability name is malformed.
    - ValueError: structural problems.
    """

    raw_caps = data.get("capabilities") or {}
    if not isinstance(raw_caps, dict):
        raise ValueError("capabilities must be a mapping of name -> definition")

    defs: List[CapabilityDef] = []
    issues: List[ValidationIssue] = []
    for raw_name, body in raw_caps.items():
        body = body if isinstance(body, dict) else {}
        try:
            name = canonical_capability_name(raw_name)
        except CapabilityValidationError as e:
            issues.extend(e.issues)
            continue
        try:
            priority = int(body.get("priority") or 0)
        except (TypeError, ValueError):
            raise ValueError(f"capabilities.{raw_name}.priority must be an integer")
        defs.append(
            CapabilityDef(
                name=name,
                allowed=_str_list(body.get("allowed"), f"capabilities.{raw_name}.allowed"),
                excluded=_str_list(body.get("excluded"), f"capabilities.{raw_name}.excluded"),
                priority=priority,
            )
        )
    if issues:
        raise CapabilityValidationError(issues)

    collections = _str_list(data.get("collections"), "collections")
    actions = _str_list(data.get("collection_actions"), "collection_actions") or list(
        DEFAULT_COLLECTION_ACTIONS
    )

    return CapabilityPack(
        pack_id=pack_id,
        capabilities=tuple(defs),
        collections=tuple(collections),
        collection_actions=tuple(a.lower() for a in actions),
    )


def load_capability_pack(path: str) -> CapabilityPack:
    """Load a capability pack from YAML/JSON.

    Time:  O(n)
    Space: O(n)
    """

    p = Path(path)
    text = p.read_text(encoding="utf-8")
    suffix = p.suffix.lower()

    if suffix == ".json":
        data = _parse_json(text)
    elif suffix in {".yaml", ".yml"}:
        data = _parse_minimal_yaml(text)
    else:
        try:
            data = _parse_json(text)
        except ValueError:
            data = _parse_minimal_yaml(text)

    return parse_capability_pack(data, pack_id=p.stem)


def resolve_capability_pack_path(
    pack: str,
    *,
    base_dir: str,
    allow_arbitrary_paths: bool = False,
) -> str:
    """Resolve a capability pack reference to a safe filesystem path.

    - If pack is an existing path and allow_arbitrary_paths is True, return it.
    - Otherwise, treat pack as a name within base_dir ("default" -> default.yaml).

    Security notes:
    - Prevent path traversal by forcing resolution under base_dir.
    """

    p = Path(pack)
    if allow_arbitrary_paths and p.exists():
        return str(p)

    base = Path(base_dir).resolve()
    candidate = (base / pack).resolve()
    if base not in candidate.parents:
        raise ValueError("capability pack path traversal blocked")

    if not candidate.exists() and candidate.suffix == "":
        for ext in (".yaml", ".yml", ".json"):
            c2 = Path(str(candidate) + ext)
            if c2.exists():
                candidate = c2
                break
    if not candidate.exists():
        raise FileNotFoundError(str(candidate))
    return str(candidate)
