from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional


@dataclass(frozen=True)
class ValidationIssue:
    """One reason a capability definition was rejected."""

    field: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "message": self.message}


class CapabilityError(Exception):
    """
    Base exception for all capability engine failures.
    """

    pass


class CapabilityValidationError(CapabilityError):
    """
    Raised when a capability name or definition is missing/malformed, or when
    a before-save listener rejects it.
    """

    def __init__(self, issues: Iterable[ValidationIssue], message: Optional[str] = None):
        self.issues: List[ValidationIssue] = list(issues)
        if message is None:
            message = "; ".join(i.message for i in self.issues) or "invalid capability"
        super().__init__(message)


class CapabilityNotFoundError(CapabilityError, KeyError):
    """
    Raised when retrieve/update/delete targets an unknown capability.

    Lookups used by permission checks never raise this; they return None.
    """

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"capability not found: {name}")

    def __str__(self) -> str:
        return f"capability not found: {self.name}"


class StoreError(CapabilityError):
    """
    Raised when the durable store fails (I/O, integrity, connectivity).
    """

    pass


class StoreTimeoutError(StoreError):
    """
    Raised when a store call boundary is reached after the deadline expired.
    """

    pass


class PermissionDenied(CapabilityError):
    """
    Raised by callers of the checker when a permission outcome is negative.

    The checker itself returns booleans and never raises this.
    """

    def __init__(self, capabilities: Iterable[str] = ()):
        self.capabilities = list(capabilities)
        super().__init__("permission denied")
