from collections.abc import Callable

from fastapi import Depends

from crm_api.core.auth import Principal, get_current_user
from crm_api.core.errors import AuthorizationError
from crm_api.core.permissions import is_allowed, parse_permission


def require_permissions(*permissions: str) -> Callable[..., Principal]:
    def checker(user: Principal = Depends(get_current_user)) -> Principal:
        for required in permissions:
            module, action = parse_permission(required)
            if not is_allowed(user.permissions, module, action):
                raise AuthorizationError(
                    "Insufficient permissions",
                    code="insufficient_permissions",
                    details={
                        "required_permission": required,
                        "roles": user.roles,
                        "permissions": user.permissions.to_dict(),
                    },
                )
        return user

    return checker


def require_admin_or_self(user: Principal, user_id: int) -> None:
    if not user.is_admin and user.id != user_id:
        raise AuthorizationError("You are not authorized to access this user", code="not_owner")
