from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional


class IdentityRoleResolver:
    """Role references are role names."""

    def names_for(self, refs: Iterable[str]) -> Dict[str, str]:
        return {r: r for r in refs}

    def refs_for(self, names: Iterable[str]) -> Dict[str, str]:
        return {n: n for n in names}


class MappingRoleResolver:
    """Resolver over a fixed ref -> name mapping.

    Unknown refs/names are simply absent from results.
    """

    def __init__(self, ref_to_name: Optional[Mapping[str, str]] = None):
        self._by_ref: Dict[str, str] = dict(ref_to_name or {})
        self._by_name: Dict[str, str] = {v: k for k, v in self._by_ref.items()}

    def add(self, ref: str, name: str) -> None:
        self._by_ref[ref] = name
        self._by_name[name] = ref

    def names_for(self, refs: Iterable[str]) -> Dict[str, str]:
        return {r: self._by_ref[r] for r in refs if r in self._by_ref}

    def refs_for(self, names: Iterable[str]) -> Dict[str, str]:
        return {n: self._by_name[n] for n in names if n in self._by_name}
