from __future__ import annotations

from dataclasses import fields, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping


def to_jsonable(obj: Any) -> Any:
    """
    Convert engine objects (definitions, reports, enums) to JSON-safe values.

    - Dataclasses become dicts of their public fields; an `ok` property is
      included when present (sync reports).
    - Sets become sorted lists so output is stable.
    - Anything unknown falls back to str().
    """
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj

    if isinstance(obj, Enum):
        return to_jsonable(obj.value)

    if isinstance(obj, Path):
        return str(obj)

    if is_dataclass(obj) and not isinstance(obj, type):
        out = {f.name: to_jsonable(getattr(obj, f.name)) for f in fields(obj) if not f.name.startswith("_")}
        ok = getattr(type(obj), "ok", None)
        if isinstance(ok, property):
            out["ok"] = bool(obj.ok)
        return out

    if isinstance(obj, Mapping):
        return {str(k): to_jsonable(v) for k, v in obj.items()}

    if isinstance(obj, (set, frozenset)):
        return sorted(to_jsonable(x) for x in obj)

    if isinstance(obj, (list, tuple)):
        return [to_jsonable(x) for x in obj]

    return str(obj)
