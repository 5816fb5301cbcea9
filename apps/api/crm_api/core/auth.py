from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.requests import Request

from crm_api.accounts.models import User
from crm_api.core.database import get_db
from crm_api.core.errors import AuthenticationError
from crm_api.core.permissions import PermissionSet, resolve_permissions
from crm_api.core.security import decode_token


logger = logging.getLogger("crm_api.auth")


@dataclass
class Principal:
    id: int
    email: str
    full_name: str
    roles: list[str]
    permissions: PermissionSet = field(default_factory=PermissionSet)

    @property
    def is_admin(self) -> bool:
        return "*" in self.permissions.allowed_modules


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        raise AuthenticationError("Missing bearer token", code="missing_token")
    token = auth_header[7:].strip()
    if not token:
        raise AuthenticationError("Missing bearer token", code="missing_token")
    return token


def authenticate(session: Session, token: str) -> Principal:
    payload = decode_token(token)
    subject = payload.get("id", payload.get("sub"))
    try:
        user_id = int(subject)
    except (TypeError, ValueError) as exc:
        raise AuthenticationError("Invalid token subject", code="invalid_token") from exc

    user = session.scalar(select(User).where(User.id == user_id))
    if user is None:
        raise AuthenticationError("User not found", code="user_not_found")
    if not user.is_active:
        raise AuthenticationError("User account is inactive", code="user_inactive")

    roles = user.role_names
    return Principal(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        roles=roles,
        permissions=resolve_permissions(roles),
    )


def get_current_user(request: Request, db: Session = Depends(get_db)) -> Principal:
    try:
        principal = authenticate(db, _bearer_token(request))
    except AuthenticationError as exc:
        logger.info("auth.rejected", extra={"path": request.url.path, "error": exc.code})
        raise

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = principal.id
    request.state.user = principal
    return principal
