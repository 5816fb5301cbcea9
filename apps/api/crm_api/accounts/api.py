from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from crm_api.accounts.schemas import LoginRequest, RegionCreate, UserRegister, UserStatusUpdate, UserUpdate
from crm_api.accounts.service import geography_service, role_service, user_service
from crm_api.core.auth import Principal, get_current_user
from crm_api.core.database import get_db
from crm_api.core.pagination import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, page_response
from crm_api.core.rbac import require_permissions
from crm_api.core.responses import ok


auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
users_router = APIRouter(prefix="/api/users", tags=["accounts.users"])
roles_router = APIRouter(prefix="/api/roles", tags=["accounts.roles"])
regions_router = APIRouter(prefix="/api/regions", tags=["accounts.regions"])
countries_router = APIRouter(prefix="/api/countries", tags=["accounts.countries"])

require_admin = require_permissions("admin")


@auth_router.post("/login")
def login(dto: LoginRequest, db: Session = Depends(get_db)) -> dict[str, Any]:
    return ok(user_service.login(db, dto), "Login successful")


@auth_router.get("/me")
def me(db: Session = Depends(get_db), user: Principal = Depends(get_current_user)) -> dict[str, Any]:
    return ok(user_service.me(db, user))


@users_router.post("", status_code=status.HTTP_201_CREATED)
def register_user(
    dto: UserRegister,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_admin),
) -> dict[str, Any]:
    return ok(user_service.register(db, user, dto), "User registered successfully")


@users_router.get("")
def list_users(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    search: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _user: Principal = Depends(require_admin),
) -> dict[str, Any]:
    items, meta = user_service.list_users(db, page=page, limit=limit, search=search)
    return page_response(items, meta)


@users_router.get("/{user_id}")
def get_user(
    user_id: int,
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(user_service.get_user(db, user, user_id))


@users_router.put("/{user_id}")
def update_user(
    user_id: int,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(user_service.update_user(db, user, user_id, dto), "User updated successfully")


@users_router.post("/{user_id}/status")
def set_user_status(
    user_id: int,
    dto: UserStatusUpdate,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_admin),
) -> dict[str, Any]:
    return ok(user_service.set_status(db, user, user_id, dto.status), f"User marked {dto.status}")


@users_router.delete("/{user_id}")
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_admin),
) -> dict[str, Any]:
    user_service.delete_user(db, user, user_id)
    return ok(message="User deleted successfully")


@roles_router.get("")
def list_roles(db: Session = Depends(get_db), _user: Principal = Depends(require_admin)) -> dict[str, Any]:
    return ok(role_service.list_roles(db))


@roles_router.get("/{role_id}")
def get_role(role_id: int, db: Session = Depends(get_db), _user: Principal = Depends(require_admin)) -> dict[str, Any]:
    return ok(role_service.get_role(db, role_id))


@regions_router.get("")
def list_regions(db: Session = Depends(get_db), _user: Principal = Depends(get_current_user)) -> dict[str, Any]:
    return ok(geography_service.list_regions(db))


@regions_router.get("/with-countries")
def list_regions_with_countries(
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(geography_service.list_regions_with_countries(db))


@regions_router.get("/country/{country_id}")
def list_regions_for_country(
    country_id: int,
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(geography_service.regions_for_country(db, country_id))


@regions_router.post("", status_code=status.HTTP_201_CREATED)
def create_region(
    dto: RegionCreate,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_admin),
) -> dict[str, Any]:
    return ok(geography_service.create_region(db, user, dto), "Region created successfully")


@countries_router.get("")
def list_countries(db: Session = Depends(get_db), _user: Principal = Depends(get_current_user)) -> dict[str, Any]:
    return ok(geography_service.list_countries(db))


@countries_router.get("/region/{region_id}")
def get_country_for_region(
    region_id: int,
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(geography_service.country_for_region(db, region_id))


@countries_router.get("/{country_id}")
def get_country(
    country_id: int,
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(geography_service.get_country(db, country_id))
