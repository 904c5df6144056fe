from __future__ import annotations

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Union


class ApiError(BaseModel):
    """Standard API error payload."""

    error: str
    detail: Optional[str] = None
    reasons: List[Dict[str, str]] = Field(default_factory=list)


class CapabilityIn(BaseModel):
    """Capability definition submitted by a caller (normalized server-side)."""

    name: str
    allowed: List[str] = Field(default_factory=list)
    excluded: List[str] = Field(default_factory=list)
    priority: int = 0


class CapabilityBody(BaseModel):
    """Replacement role lists for an existing capability."""

    allowed: List[str] = Field(default_factory=list)
    excluded: List[str] = Field(default_factory=list)
    priority: int = 0


class CapabilityOut(BaseModel):
    name: str
    allowed: List[str] = Field(default_factory=list)
    excluded: List[str] = Field(default_factory=list)
    priority: int = 0


class RoleIn(BaseModel):
    role: str


class CheckIn(BaseModel):
    """Permission check request.

    capabilities accepts a single name or a list. roles defaults to the
    calling actor's roles.
    """

    capabilities: Union[str, List[str]]
    roles: Optional[List[str]] = None
    strict: bool = True


class CheckOut(BaseModel):
    allowed: bool


class BulkCheckIn(BaseModel):
    """Named checks: {"key": {"capabilities": [...], "strict": true}}."""

    checks: Dict[str, Dict[str, Any]]
    roles: Optional[List[str]] = None


class BulkCheckOut(BaseModel):
    results: Dict[str, bool] = Field(default_factory=dict)


class AccessRuleIn(BaseModel):
    permission: str
    target: str
    identifier: Optional[str] = None
    allow: bool = True


class AccessListIn(BaseModel):
    rules: List[AccessRuleIn] = Field(default_factory=list)
    read_capability: str = ""
    write_capability: str = ""


class LoadIn(BaseModel):
    flush: bool = False


class LoadOut(BaseModel):
    loaded: List[str] = Field(default_factory=list)
    defaults_created: List[str] = Field(default_factory=list)
    unresolved_refs: Dict[str, List[str]] = Field(default_factory=dict)


class PropagateOut(BaseModel):
    ok: bool
    written: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    unresolved: Dict[str, List[str]] = Field(default_factory=dict)
    timed_out: bool = False
