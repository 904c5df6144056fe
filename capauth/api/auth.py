from __future__ import annotations

import hmac
import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional

from capauth.core.security.principal import Principal


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated API caller.

    Security notes:
    - Do not trust caller-provided actor_id/roles.
    - Roles are granted by the server-side key mapping.
    - master is set only for the configured master key; it bypasses checks.
    """

    actor_id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)
    master: bool = False

    @property
    def principal(self) -> Principal:
        return Principal(principal_id=self.actor_id, roles=self.roles)


ANONYMOUS_ACTOR = Actor(actor_id="anonymous")


def _parse_api_keys(raw: str) -> Dict[str, Actor]:
    """Parse CAPAUTH_API_KEYS into an API key -> Actor mapping.

    Format (semicolon-separated entries):
      <APIKEY>:<ACTOR_ID>:<role1,role2>;

    Example:
      CAPAUTH_API_KEYS="k1:alice:administrator;k2:bob:editor,author"

    Security notes:
    - Env var is trusted server configuration.
    - Invalid entries are ignored (fail-closed by omission).
    """

    out: Dict[str, Actor] = {}
    for entry in (raw or "").split(";"):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":", 2)
        if len(parts) != 3:
            continue
        key, actor_id, roles_raw = parts[0].strip(), parts[1].strip(), parts[2].strip()
        if not key or not actor_id:
            continue
        roles = frozenset(r.strip() for r in roles_raw.split(",") if r.strip())
        out[key] = Actor(actor_id=actor_id, roles=roles)
    return out


@dataclass(frozen=True)
class AuthConfig:
    keys: Dict[str, Actor] = field(default_factory=dict)
    master_key: Optional[str] = None
    require_auth: bool = False

    @property
    def must_auth(self) -> bool:
        """Require auth if forced, or if any key is configured."""
        return self.require_auth or bool(self.keys) or bool(self.master_key)


def load_auth_config() -> AuthConfig:
    """Load API keys from the environment.

    - CAPAUTH_API_KEYS: key mapping (see _parse_api_keys)
    - CAPAUTH_MASTER_KEY: key granting master (override) access
    - CAPAUTH_REQUIRE_AUTH=1: refuse anonymous calls even with no keys
    """

    return AuthConfig(
        keys=_parse_api_keys(os.environ.get("CAPAUTH_API_KEYS", "")),
        master_key=os.environ.get("CAPAUTH_MASTER_KEY", "").strip() or None,
        require_auth=os.environ.get("CAPAUTH_REQUIRE_AUTH", "").strip()
        in {"1", "true", "TRUE", "yes", "YES"},
    )


def authenticate(api_key: Optional[str], config: AuthConfig) -> Optional[Actor]:
    """Authenticate an API key.

    Security notes:
    - Uses constant-time comparison to reduce timing side-channels.
    - Returns None on failure.
    """

    if not api_key:
        return None

    if config.master_key and hmac.compare_digest(config.master_key, api_key):
        return Actor(actor_id="master", master=True)

    # Constant-time compare: iterate all keys.
    found: Optional[Actor] = None
    for k, actor in config.keys.items():
        if hmac.compare_digest(k, api_key):
            found = actor
    return found
