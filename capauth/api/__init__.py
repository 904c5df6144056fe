"""capauth API package.

A thin FastAPI transport over CapabilityService: capability CRUD, role
membership changes, permission checks and derived artifacts.
"""

from .server import create_app  # noqa: F401
