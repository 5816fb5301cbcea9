"""Role capability configuration and permission merging.

Each role name maps to the modules it can reach and the actions it may perform
per module. ``"*"`` is a wildcard for either. The mapping is frozen at import
time and shared by reference.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

WILDCARD = "*"


@dataclass(frozen=True)
class PermissionSet:
    allowed_modules: frozenset[str] = frozenset()
    permissions: Mapping[str, frozenset[str]] = field(default_factory=lambda: MappingProxyType({}))

    def to_dict(self) -> dict[str, object]:
        return {
            "allowedModules": sorted(self.allowed_modules),
            "permissions": {module: sorted(actions) for module, actions in sorted(self.permissions.items())},
        }


def _capabilities(modules: Iterable[str], permissions: Mapping[str, Iterable[str]]) -> PermissionSet:
    return PermissionSet(
        allowed_modules=frozenset(modules),
        permissions=MappingProxyType({module: frozenset(actions) for module, actions in permissions.items()}),
    )


ROLE_CAPABILITIES: Mapping[str, PermissionSet] = MappingProxyType(
    {
        "Presales Member": _capabilities(
            ["clients", "opportunities"],
            {"clients": ["read", "write"], "opportunities": ["read", "write"]},
        ),
        "Presales Lead": _capabilities(
            ["clients", "opportunities"],
            {"clients": ["read", "write"], "opportunities": ["read"]},
        ),
        "Sales Head": _capabilities(
            ["clients"],
            {"clients": ["read", "write"], "opportunities": []},
        ),
        "Admin": _capabilities([WILDCARD], {WILDCARD: [WILDCARD]}),
        "User": _capabilities([], {}),
    }
)

FULL_ACCESS = _capabilities([WILDCARD], {WILDCARD: [WILDCARD]})
EMPTY = PermissionSet()


def resolve_permissions(
    role_names: Iterable[str],
    capabilities: Mapping[str, PermissionSet] = ROLE_CAPABILITIES,
) -> PermissionSet:
    """Merge the capability sets of ``role_names``.

    Unknown roles contribute nothing. A role granting ``*`` on ``*`` collapses
    the result to full access.
    """
    modules: set[str] = set()
    merged: dict[str, set[str]] = {}
    for name in role_names:
        config = capabilities.get(name, EMPTY)
        if WILDCARD in config.permissions.get(WILDCARD, frozenset()):
            return FULL_ACCESS
        modules.update(config.allowed_modules)
        for module, actions in config.permissions.items():
            merged.setdefault(module, set()).update(actions)
    return _capabilities(modules, merged)


def is_allowed(merged: PermissionSet, module: str, action: str) -> bool:
    module_ok = WILDCARD in merged.allowed_modules or module in merged.allowed_modules
    if not module_ok:
        return False
    if WILDCARD in merged.permissions.get(WILDCARD, frozenset()):
        return True
    actions = merged.permissions.get(module, frozenset())
    return WILDCARD in actions or action in actions


def parse_permission(required: str) -> tuple[str, str]:
    module, _, action = required.partition(":")
    return module, action or WILDCARD
