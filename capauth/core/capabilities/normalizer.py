from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Union

from capauth.core.security.capabilities import CapabilityDef, canonical_capability_name
from capauth.core.security.roles import ADMINISTRATOR, BANNED, SUPER_ADMIN

RawDefinition = Union[CapabilityDef, Mapping[str, Any]]


def _dedupe(items: Iterable[str]) -> List[str]:
    out: List[str] = []
    seen = set()
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


def _coerce(raw: Any) -> CapabilityDef:
    if isinstance(raw, CapabilityDef):
        return raw
    if isinstance(raw, Mapping):
        return CapabilityDef.from_mapping(raw)
    return CapabilityDef(name="")


def normalize(raw: RawDefinition) -> CapabilityDef:
    """Enforce the reserved-role invariants on a capability definition.

    Rules
    - super-admin is always allowed and can never be excluded
    - administrator is allowed unless explicitly excluded
    - banned is always excluded
    - allowed and excluded are disjoint; both keep first-occurrence order

    Pure and total: never raises, performs no I/O, and
    normalize(normalize(x)) == normalize(x).

    Time:  O(a + e)
    Space: O(a + e)
    """

    d = _coerce(raw)

    excluded = [r for r in _dedupe([*d.excluded, BANNED]) if r != SUPER_ADMIN]
    excluded_set = set(excluded)
    allowed = [
        r for r in _dedupe([*d.allowed, ADMINISTRATOR, SUPER_ADMIN]) if r not in excluded_set
    ]

    return CapabilityDef(
        name=d.name,
        allowed=tuple(allowed),
        excluded=tuple(excluded),
        priority=d.priority,
    )


def validate_definition(raw: RawDefinition) -> CapabilityDef:
    """Input guard run before registration.

    Returns the normalized definition under its canonical name.

    Raises
    - CapabilityValidationError: missing or malformed name.
    """

    d = _coerce(raw)
    name = canonical_capability_name(
        raw.get("name") if isinstance(raw, Mapping) else getattr(raw, "name", None)
    )
    return normalize(d.with_name(name))
