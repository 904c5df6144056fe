from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from capauth.core.capabilities.exceptions import CapabilityValidationError, ValidationIssue

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.:\-]*$")

# Leading namespace characters stripped from capability names.
_NAMESPACE_CHARS = "_."


def canonical_capability_name(raw: Any) -> str:
    """Return the canonical registry key for a capability name.

    Canonical form: surrounding whitespace removed, leading '_' / '.' removed,
    lowercased. ASCII only, no whitespace, no empty dot-segments.

    Raises
    - CapabilityValidationError: name is missing, empty, or ambiguous.
    """

    if not isinstance(raw, str):
        raise CapabilityValidationError(
            [ValidationIssue(field="name", message="capability name must be a string")]
        )

    name = raw.strip().lstrip(_NAMESPACE_CHARS).lower()
    if not name:
        raise CapabilityValidationError(
            [ValidationIssue(field="name", message="capability name must be non-empty")]
        )

    if not name.isascii():
        raise CapabilityValidationError(
            [ValidationIssue(field="name", message=f"capability name must be ASCII: {raw!r}")]
        )

    if not _NAME_RE.match(name) or ".." in name or name.endswith("."):
        raise CapabilityValidationError(
            [ValidationIssue(field="name", message=f"malformed capability name: {raw!r}")]
        )

    return name


def try_canonical_name(raw: Any) -> Optional[str]:
    """Canonical name, or None when the name is invalid."""
    try:
        return canonical_capability_name(raw)
    except CapabilityValidationError:
        return None


def _role_list(raw: Any) -> Tuple[str, ...]:
    # Non-string and blank entries are discarded, never rejected.
    if isinstance(raw, str):
        items: List[Any] = [raw]
    elif raw is None or isinstance(raw, (bytes, Mapping)):
        items = []
    else:
        try:
            items = list(raw)
        except TypeError:
            items = []

    out: List[str] = []
    seen = set()
    for item in items:
        if not isinstance(item, str):
            continue
        role = item.strip()
        if not role or role in seen:
            continue
        seen.add(role)
        out.append(role)
    return tuple(out)


@dataclass(frozen=True)
class CapabilityDef:
    """
    Immutable capability definition.

    Security invariants
    - Immutable and hashable; role collections are ordered, de-duplicated tuples
    - Role entries are plain strings; anything else is dropped on construction

    Invariants involving reserved roles are enforced by the normalizer, not here.
    """

    name: str
    allowed: Tuple[str, ...] = field(default_factory=tuple)
    excluded: Tuple[str, ...] = field(default_factory=tuple)
    priority: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.name, str):
            raise TypeError("Capability name must be a string")

        object.__setattr__(self, "allowed", _role_list(self.allowed))
        object.__setattr__(self, "excluded", _role_list(self.excluded))

        try:
            priority = int(self.priority or 0)
        except (TypeError, ValueError):
            priority = 0
        object.__setattr__(self, "priority", priority)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, name: Optional[str] = None) -> "CapabilityDef":
        """Build a definition from a loosely-typed mapping (JSON, packs, API bodies)."""
        raw_name = name if name is not None else data.get("name", "")
        return cls(
            name=raw_name if isinstance(raw_name, str) else "",
            allowed=data.get("allowed") or (),
            excluded=data.get("excluded") or (),
            priority=data.get("priority") or 0,
        )

    def with_name(self, name: str) -> "CapabilityDef":
        return CapabilityDef(
            name=name, allowed=self.allowed, excluded=self.excluded, priority=self.priority
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "allowed": list(self.allowed),
            "excluded": list(self.excluded),
            "priority": self.priority,
        }


def as_name_list(value: Any) -> List[str]:
    """Normalize a capability-name argument to a list at the call boundary.

    A single string becomes a one-element list; non-string entries are dropped.
    """

    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, Iterable):
        return [v for v in value if isinstance(v, str)]
    return []
