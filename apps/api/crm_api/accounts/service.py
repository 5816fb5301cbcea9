from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_api import audit
from crm_api.accounts.models import Country, Region, Role, User
from crm_api.accounts.schemas import (
    CountryRead,
    CurrentUserRead,
    LoginRequest,
    LoginResponse,
    RegionCreate,
    RegionRead,
    RegionSummary,
    RegionWithCountry,
    RoleWithCapabilities,
    UserRead,
    UserRegister,
    UserRegistered,
    UserUpdate,
)
from crm_api.core.auth import Principal
from crm_api.core.config import get_settings
from crm_api.core.database import unit_of_work
from crm_api.core.errors import AuthenticationError, AuthorizationError, ConflictError, NotFoundError, ValidationError
from crm_api.core.pagination import PageMeta, paginate
from crm_api.core.permissions import ROLE_CAPABILITIES, resolve_permissions
from crm_api.core.rbac import require_admin_or_self
from crm_api.core.security import hash_password, issue_token, verify_password


logger = logging.getLogger("crm_api.accounts")

ADMIN_ONLY_FIELDS = ("status", "roles", "region_ids")


def user_read(user: User) -> UserRead:
    return UserRead(
        id=user.id,
        full_name=user.full_name,
        email=user.email,
        status=user.status,
        roles=user.role_names,
        regions=[RegionSummary.model_validate(region) for region in user.regions],
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def current_user_read(user: User) -> CurrentUserRead:
    return CurrentUserRead(
        **user_read(user).model_dump(),
        permissions=resolve_permissions(user.role_names).to_dict(),
    )


class UserService:
    def login(self, session: Session, dto: LoginRequest) -> LoginResponse:
        user = session.scalar(select(User).where(func.lower(User.email) == dto.email.lower()))
        if user is None or not verify_password(dto.password, user.password_hash):
            logger.info("auth.login_failed", extra={"error": "invalid_credentials"})
            raise AuthenticationError("Invalid email or password", code="invalid_credentials")
        if not user.is_active:
            raise AuthorizationError("Account is inactive", code="account_inactive")

        token = issue_token(user.id, user.email, user.role_names)
        logger.info("auth.login", extra={"user_id": user.id})
        return LoginResponse(token=token, user=current_user_read(user))

    def me(self, session: Session, actor: Principal) -> CurrentUserRead:
        return current_user_read(self._get(session, actor.id))

    def _get(self, session: Session, user_id: int) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", code="user_not_found")
        return user

    def _roles(self, session: Session, names: list[str]) -> list[Role]:
        wanted = list(dict.fromkeys(name.strip() for name in names if name.strip()))
        roles = session.scalars(select(Role).where(Role.name.in_(wanted))).all()
        missing = sorted(set(wanted) - {role.name for role in roles})
        if missing:
            raise ValidationError("Unknown role name(s)", code="invalid_role", details={"roles": missing})
        return list(roles)

    def _regions(self, session: Session, region_ids: list[int]) -> list[Region]:
        wanted = list(dict.fromkeys(region_ids))
        regions = session.scalars(select(Region).where(Region.id.in_(wanted))).all()
        missing = sorted(set(wanted) - {region.id for region in regions})
        if missing:
            raise ValidationError("Unknown region id(s)", code="invalid_region", details={"region_ids": missing})
        return list(regions)

    def register(self, session: Session, actor: Principal, dto: UserRegister) -> UserRegistered:
        email = dto.email.lower()
        if session.scalar(select(User.id).where(func.lower(User.email) == email)) is not None:
            raise ConflictError("Email already registered", code="duplicate_email")

        temporary_password = get_settings().temporary_password
        try:
            with unit_of_work(session):
                user = User(
                    full_name=dto.full_name.strip(),
                    email=email,
                    password_hash=hash_password(temporary_password),
                    status=dto.status,
                )
                user.roles = self._roles(session, dto.roles or ["User"])
                user.regions = self._regions(session, dto.region_ids)
                session.add(user)
                session.flush()
                user_id = user.id
        except IntegrityError as exc:
            raise ConflictError("Email already registered", code="duplicate_email") from exc

        user = self._get(session, user_id)
        audit.record(actor.id, "user", user_id, "create", after={"email": email, "roles": user.role_names})
        logger.info("user.registered", extra={"user_id": actor.id, "entity_id": user_id})
        return UserRegistered(
            user=user_read(user),
            token=issue_token(user.id, user.email, user.role_names),
            temporary_password=temporary_password,
            note="The user must change the temporary password after first login",
        )

    def list_users(self, session: Session, *, page: int, limit: int, search: str | None = None) -> tuple[list[UserRead], PageMeta]:
        stmt = select(User)
        if search:
            pattern = f"%{search.strip()}%"
            stmt = stmt.where(User.full_name.ilike(pattern) | User.email.ilike(pattern))
        rows, meta = paginate(session, stmt.order_by(User.created_at.desc(), User.id.desc()), page=page, limit=limit)
        return [user_read(row[0]) for row in rows], meta

    def get_user(self, session: Session, actor: Principal, user_id: int) -> UserRead:
        require_admin_or_self(actor, user_id)
        return user_read(self._get(session, user_id))

    def update_user(self, session: Session, actor: Principal, user_id: int, dto: UserUpdate) -> UserRead:
        require_admin_or_self(actor, user_id)
        changes = dto.model_dump(exclude_unset=True)
        restricted = [name for name in ADMIN_ONLY_FIELDS if changes.get(name) is not None]
        if restricted and not actor.is_admin:
            raise AuthorizationError(
                "Only administrators can change status, roles or regions",
                code="admin_only_fields",
                details={"fields": restricted},
            )

        user = self._get(session, user_id)
        if dto.email is not None and dto.email.lower() != user.email:
            taken = session.scalar(select(User.id).where(func.lower(User.email) == dto.email.lower(), User.id != user_id))
            if taken is not None:
                raise ConflictError("Email already registered", code="duplicate_email")

        try:
            with unit_of_work(session):
                if dto.full_name is not None:
                    user.full_name = dto.full_name.strip()
                if dto.email is not None:
                    user.email = dto.email.lower()
                if dto.password is not None:
                    user.password_hash = hash_password(dto.password)
                if dto.status is not None:
                    user.status = dto.status
                if dto.roles is not None:
                    user.roles = self._roles(session, dto.roles)
                if dto.region_ids is not None:
                    user.regions = self._regions(session, dto.region_ids)
        except IntegrityError as exc:
            raise ConflictError("Email already registered", code="duplicate_email") from exc

        session.refresh(user)
        audit.record(actor.id, "user", user_id, "update", after={key: value for key, value in changes.items() if key != "password"})
        logger.info("user.updated", extra={"user_id": actor.id, "entity_id": user_id})
        return user_read(user)

    def set_status(self, session: Session, actor: Principal, user_id: int, status: str) -> UserRead:
        user = self._get(session, user_id)
        before = user.status
        with unit_of_work(session):
            user.status = status
        session.refresh(user)
        audit.record(actor.id, "user", user_id, "status", before={"status": before}, after={"status": status})
        logger.info("user.status_changed", extra={"user_id": actor.id, "entity_id": user_id, "status": status})
        return user_read(user)

    def delete_user(self, session: Session, actor: Principal, user_id: int) -> None:
        if actor.id == user_id:
            raise ValidationError("You cannot delete your own account", code="self_delete")
        user = self._get(session, user_id)
        with unit_of_work(session):
            user.roles = []
            user.regions = []
            session.flush()
            session.delete(user)
        audit.record(actor.id, "user", user_id, "delete")
        logger.info("user.deleted", extra={"user_id": actor.id, "entity_id": user_id})


class RoleService:
    def _with_capabilities(self, role: Role) -> RoleWithCapabilities:
        capabilities = ROLE_CAPABILITIES.get(role.name)
        return RoleWithCapabilities(
            id=role.id,
            name=role.name,
            description=role.description,
            created_at=role.created_at,
            capabilities=capabilities.to_dict() if capabilities is not None else {},
        )

    def list_roles(self, session: Session) -> list[RoleWithCapabilities]:
        rows = session.scalars(select(Role).order_by(Role.name.asc())).all()
        return [self._with_capabilities(row) for row in rows]

    def get_role(self, session: Session, role_id: int) -> RoleWithCapabilities:
        role = session.get(Role, role_id)
        if role is None:
            raise NotFoundError("Role not found", code="role_not_found")
        return self._with_capabilities(role)


class GeographyService:
    def list_regions(self, session: Session) -> list[RegionRead]:
        rows = session.scalars(select(Region).where(Region.is_active.is_(True)).order_by(Region.name.asc())).all()
        return [RegionRead.model_validate(row) for row in rows]

    def list_regions_with_countries(self, session: Session) -> list[RegionWithCountry]:
        rows = session.execute(
            select(Region, Country.name, Country.code)
            .outerjoin(Country, Country.id == Region.country_id)
            .where(Region.is_active.is_(True))
            .order_by(Region.name.asc())
        ).all()
        return [
            RegionWithCountry(
                **RegionRead.model_validate(region).model_dump(),
                country_name=country_name,
                country_code=country_code,
            )
            for region, country_name, country_code in rows
        ]

    def regions_for_country(self, session: Session, country_id: int) -> list[RegionRead]:
        rows = session.scalars(
            select(Region)
            .where(Region.country_id == country_id, Region.is_active.is_(True))
            .order_by(Region.name.asc())
        ).all()
        return [RegionRead.model_validate(row) for row in rows]

    def create_region(self, session: Session, actor: Principal, dto: RegionCreate) -> RegionRead:
        name = dto.name.strip()
        if not name:
            raise ValidationError("Region name is required", code="region_name_required")
        if session.get(Country, dto.country_id) is None:
            raise ConflictError("The specified country does not exist", code="invalid_country")
        if session.scalar(select(Region.id).where(func.lower(Region.name) == name.lower())) is not None:
            raise ConflictError("A region with this name already exists", code="duplicate_region")

        try:
            with unit_of_work(session):
                region = Region(name=name, country_id=dto.country_id, is_active=dto.is_active)
                session.add(region)
                session.flush()
                result = RegionRead.model_validate(region)
        except IntegrityError as exc:
            raise ConflictError("A region with this name already exists", code="duplicate_region") from exc

        audit.record(actor.id, "region", result.id, "create", after=dto.model_dump())
        logger.info("region.created", extra={"user_id": actor.id, "entity_id": result.id})
        return result

    def list_countries(self, session: Session) -> list[CountryRead]:
        rows = session.scalars(select(Country).where(Country.is_active.is_(True)).order_by(Country.name.asc())).all()
        return [CountryRead.model_validate(row) for row in rows]

    def get_country(self, session: Session, country_id: int) -> CountryRead:
        country = session.get(Country, country_id)
        if country is None:
            raise NotFoundError("Country not found", code="country_not_found")
        return CountryRead.model_validate(country)

    def country_for_region(self, session: Session, region_id: int) -> CountryRead:
        region = session.get(Region, region_id)
        if region is None:
            raise NotFoundError("Region not found", code="region_not_found")
        return CountryRead.model_validate(region.country)


user_service = UserService()
role_service = RoleService()
geography_service = GeographyService()
