from __future__ import annotations

from itertools import combinations

import pytest

from crm_api.core.permissions import (
    EMPTY,
    FULL_ACCESS,
    ROLE_CAPABILITIES,
    is_allowed,
    parse_permission,
    resolve_permissions,
)


MODULES = ("clients", "opportunities", "rfps", "sows", "admin")
ACTIONS = ("read", "write", "*")


def test_single_role_resolves_to_its_configuration() -> None:
    merged = resolve_permissions(["Presales Member"])

    assert merged.allowed_modules == frozenset({"clients", "opportunities"})
    assert merged.permissions["opportunities"] == frozenset({"read", "write"})


def test_multiple_roles_merge_modules_and_actions() -> None:
    merged = resolve_permissions(["Sales Head", "Presales Lead"])

    assert merged.allowed_modules == frozenset({"clients", "opportunities"})
    assert merged.permissions["clients"] == frozenset({"read", "write"})
    assert merged.permissions["opportunities"] == frozenset({"read"})
    assert is_allowed(merged, "opportunities", "read")
    assert not is_allowed(merged, "opportunities", "write")


def test_admin_role_collapses_to_full_access() -> None:
    assert resolve_permissions(["User", "Admin"]) is FULL_ACCESS
    assert is_allowed(FULL_ACCESS, "anything", "delete")
    assert is_allowed(FULL_ACCESS, "admin", "*")


def test_unknown_and_empty_roles_grant_nothing() -> None:
    for roles in ([], ["Ghost"], ["User"]):
        merged = resolve_permissions(roles)
        assert merged.allowed_modules == EMPTY.allowed_modules
        for module in MODULES:
            for action in ACTIONS:
                assert not is_allowed(merged, module, action)


def test_adding_roles_never_removes_access() -> None:
    names = list(ROLE_CAPABILITIES)
    for size in range(1, len(names)):
        for subset in combinations(names, size):
            smaller = resolve_permissions(subset)
            for extra in names:
                larger = resolve_permissions([*subset, extra])
                for module in MODULES:
                    for action in ACTIONS:
                        if is_allowed(smaller, module, action):
                            assert is_allowed(larger, module, action), (subset, extra, module, action)


def test_module_listed_without_actions_denies_every_action() -> None:
    merged = resolve_permissions(["Sales Head"])

    assert not is_allowed(merged, "opportunities", "read")
    assert is_allowed(merged, "clients", "write")


def test_role_configuration_is_read_only() -> None:
    with pytest.raises(TypeError):
        ROLE_CAPABILITIES["Intern"] = EMPTY  # type: ignore[index]
    with pytest.raises(TypeError):
        ROLE_CAPABILITIES["Sales Head"].permissions["clients"] = frozenset()  # type: ignore[index]


def test_parse_permission_defaults_action_to_wildcard() -> None:
    assert parse_permission("clients:read") == ("clients", "read")
    assert parse_permission("admin") == ("admin", "*")


def test_permission_set_serializes_sorted() -> None:
    payload = resolve_permissions(["Presales Lead"]).to_dict()

    assert payload == {
        "allowedModules": ["clients", "opportunities"],
        "permissions": {"clients": ["read", "write"], "opportunities": ["read"]},
    }
