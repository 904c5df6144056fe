from __future__ import annotations

from capauth.api.auth import AuthConfig, _parse_api_keys, authenticate, load_auth_config
from capauth.api.rate_limit import TokenBucketRateLimiter


def test_parse_api_keys_ignores_invalid_entries() -> None:
    keys = _parse_api_keys("k1:alice:administrator,editor; bad ;k2::x;k3:bob:")
    assert set(keys) == {"k1", "k3"}
    assert keys["k1"].roles == frozenset({"administrator", "editor"})
    assert keys["k3"].roles == frozenset()


def test_authenticate_keys_and_master() -> None:
    cfg = AuthConfig(keys=_parse_api_keys("k1:alice:editor"), master_key="m")

    assert authenticate("k1", cfg).actor_id == "alice"
    master = authenticate("m", cfg)
    assert master is not None and master.master is True
    assert authenticate("wrong", cfg) is None
    assert authenticate(None, cfg) is None


def test_auth_requirement_from_env(monkeypatch) -> None:
    for name in ("CAPAUTH_API_KEYS", "CAPAUTH_MASTER_KEY", "CAPAUTH_REQUIRE_AUTH"):
        monkeypatch.delenv(name, raising=False)
    assert load_auth_config().must_auth is False

    monkeypatch.setenv("CAPAUTH_REQUIRE_AUTH", "1")
    assert load_auth_config().must_auth is True

    monkeypatch.delenv("CAPAUTH_REQUIRE_AUTH")
    monkeypatch.setenv("CAPAUTH_MASTER_KEY", "m")
    assert load_auth_config().must_auth is True


def test_actor_principal_carries_roles() -> None:
    actor = _parse_api_keys("k:alice:editor")["k"]
    assert actor.principal.principal_id == "alice"
    assert actor.principal.roles == frozenset({"editor"})


def test_rate_limiter_costs_and_reset() -> None:
    limiter = TokenBucketRateLimiter(rpm=1, burst=3)

    assert limiter.check("a", cost=2).allowed is True
    denied = limiter.check("a", cost=2)
    assert denied.allowed is False
    assert denied.retry_after_seconds >= 1
    # Other identities have their own bucket.
    assert limiter.check("b").allowed is True

    limiter.reset("a")
    assert limiter.check("a", cost=2).allowed is True
