from __future__ import annotations

import pytest

from capauth.core.capabilities.checker import CapabilityChecker
from capauth.core.capabilities.registry import CapabilityRegistry
from capauth.core.security.principal import Principal, StaticRoleService, resolve_principal
from capauth.core.security.roles import ADMINISTRATOR, ANONYMOUS, BANNED, SUPER_ADMIN


@pytest.fixture
def registry():
    reg = CapabilityRegistry()
    reg.register("articles.publish", {"allowed": ["editor"]})
    reg.register("articles.read", {"allowed": [ANONYMOUS]})
    reg.register("settings.manage", {"excluded": [ADMINISTRATOR]})
    reg.register("danger.delete", {"excluded": [SUPER_ADMIN]})
    yield reg
    reg.dispatcher.close()


@pytest.fixture
def checker(registry: CapabilityRegistry) -> CapabilityChecker:
    return CapabilityChecker(registry)


def test_explicit_role_grant(checker: CapabilityChecker) -> None:
    assert checker.can(["editor"], "articles.publish") is True
    assert checker.can(["viewer"], "articles.publish") is False
    assert checker.can([SUPER_ADMIN], "articles.publish") is True


def test_super_admin_exclusion_is_ineffective(checker: CapabilityChecker) -> None:
    assert checker.can([SUPER_ADMIN], "danger.delete") is True


def test_administrator_allowed_unless_excluded(checker: CapabilityChecker) -> None:
    assert checker.can([ADMINISTRATOR], "articles.publish") is True
    assert checker.can([ADMINISTRATOR], "settings.manage") is False
    assert checker.can([SUPER_ADMIN], "settings.manage") is True


def test_default_deny_for_unknown_capability(checker: CapabilityChecker) -> None:
    assert checker.can(["editor", ADMINISTRATOR], "nonexistent.capability") is False
    assert checker.can([SUPER_ADMIN], "nonexistent.capability") is True


def test_role_comparison_is_exact(checker: CapabilityChecker) -> None:
    assert checker.can(["Editor"], "articles.publish") is False


def test_strict_requires_every_capability(checker: CapabilityChecker) -> None:
    caps = ["articles.publish", "settings.manage"]
    assert checker.can_all(["editor"], caps, strict=True) is False
    assert checker.can_all(["editor"], caps, strict=False) is True
    assert checker.can_all(["viewer"], caps, strict=False) is False


def test_empty_capability_list_is_never_satisfied(checker: CapabilityChecker) -> None:
    assert checker.can_all([SUPER_ADMIN], [], strict=True) is False
    assert checker.can_all([SUPER_ADMIN], [], strict=False) is False


def test_single_name_is_accepted(checker: CapabilityChecker) -> None:
    assert checker.can_all(["editor"], "articles.publish") is True


def test_override_bypasses_everything(checker: CapabilityChecker) -> None:
    assert checker.can_all([], ["nonexistent.capability"], override=True) is True


def test_banned_role_gets_nothing_from_the_banned_role_itself(checker: CapabilityChecker) -> None:
    assert checker.can([BANNED], "articles.publish") is False


def test_principal_checks_include_anonymous(checker: CapabilityChecker) -> None:
    nobody = Principal()
    assert checker.can_principal(nobody, "articles.read") is True
    assert checker.can_principal(nobody, "articles.publish") is False

    roles = StaticRoleService({"u1": ["editor"]})
    assert checker.can_principal(resolve_principal("u1", roles), "articles.publish") is True


def test_granted_to_and_roles_with(checker: CapabilityChecker) -> None:
    names = [c.name for c in checker.granted_to(["editor"])]
    assert names == ["articles.publish"]

    assert "editor" in checker.roles_with("articles.publish")
    assert checker.roles_with("") == ()
    assert checker.roles_with("unknown.cap") == ()


def test_bulk_check(checker: CapabilityChecker) -> None:
    out = checker.bulk_check(
        ["editor"],
        {
            "publish": {"capabilities": ["articles.publish"]},
            "either": {"capabilities": ["settings.manage", "articles.publish"], "strict": False},
            "both": {"capabilities": ["settings.manage", "articles.publish"]},
            "broken": "not-a-mapping",
        },
    )
    assert out == {"publish": True, "either": True, "both": False, "broken": False}


@pytest.mark.parametrize("strict", ["false", "true", 0, 1, None])
def test_bulk_check_denies_non_bool_strict(checker: CapabilityChecker, strict) -> None:
    out = checker.bulk_check(
        ["editor"],
        {"either": {"capabilities": ["settings.manage", "articles.publish"], "strict": strict}},
    )
    assert out == {"either": False}
