from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api import audit
from crm_api.accounts.models import Country, Region, Role, User
from crm_api.core.config import get_settings
from crm_api.core.database import Base, get_db
from crm_api.core.security import hash_password, issue_token, verify_password
from crm_api.main import app
from crm_api.middleware.rate_limit import reset_rate_limiter


ROLE_NAMES = ("Admin", "Presales Lead", "Presales Member", "Sales Head", "User")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    session.add_all(Role(name=name) for name in ROLE_NAMES)
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("TEMPORARY_PASSWORD", "Welcome@2026")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_user(db: Session, email: str, roles: list[str], *, status: str = "active") -> User:
    user = User(
        full_name=email.split("@")[0].title(),
        email=email,
        password_hash=hash_password("Secret123!"),
        status=status,
    )
    user.roles = list(db.scalars(select(Role).where(Role.name.in_(roles))).all())
    db.add(user)
    db.commit()
    return user


def _headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user.id, user.email, user.role_names)}"}


@pytest.fixture()
def admin(db_session: Session) -> User:
    return _seed_user(db_session, "admin@example.com", ["Admin"])


@pytest.fixture()
def member(db_session: Session) -> User:
    return _seed_user(db_session, "member@example.com", ["Presales Member", "Sales Head"])


@pytest.fixture()
def india(db_session: Session) -> Country:
    country = Country(name="India", code="IN")
    db_session.add(country)
    db_session.commit()
    return country


def test_login_returns_token_and_merged_permissions(client: TestClient, member: User) -> None:
    response = client.post("/api/auth/login", json={"email": "MEMBER@example.com", "password": "Secret123!"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["token"]
    assert data["user"]["email"] == "member@example.com"
    assert data["user"]["roles"] == ["Presales Member", "Sales Head"]
    assert data["user"]["permissions"]["allowedModules"] == ["clients", "opportunities"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
    assert me.status_code == 200
    assert me.json()["data"]["id"] == member.id


def test_login_rejects_bad_credentials_and_inactive_accounts(client: TestClient, db_session: Session, member: User) -> None:
    wrong = client.post("/api/auth/login", json={"email": "member@example.com", "password": "nope"})
    assert wrong.status_code == 401
    assert wrong.json()["code"] == "invalid_credentials"

    unknown = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "Secret123!"})
    assert unknown.status_code == 401
    assert unknown.json()["message"] == wrong.json()["message"]

    _seed_user(db_session, "parked@example.com", ["User"], status="inactive")
    inactive = client.post("/api/auth/login", json={"email": "parked@example.com", "password": "Secret123!"})
    assert inactive.status_code == 403
    assert inactive.json()["code"] == "account_inactive"


def test_tokens_for_inactive_users_are_rejected(client: TestClient, db_session: Session) -> None:
    parked = _seed_user(db_session, "parked@example.com", ["Admin"], status="inactive")

    response = client.get("/api/auth/me", headers=_headers(parked))

    assert response.status_code == 401
    assert response.json()["code"] == "user_inactive"


def test_garbage_token_is_unauthorized(client: TestClient) -> None:
    response = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    assert response.json()["code"] == "invalid_token"


def test_admin_registers_user_with_temporary_password(
    client: TestClient, db_session: Session, admin: User, india: Country
) -> None:
    region = Region(name="South", country_id=india.id)
    db_session.add(region)
    db_session.commit()

    response = client.post(
        "/api/users",
        json={
            "full_name": "New Hire",
            "email": "New.Hire@example.com",
            "roles": ["Presales Lead"],
            "region_ids": [region.id],
        },
        headers=_headers(admin),
    )

    assert response.status_code == 201, response.text
    data = response.json()["data"]
    assert data["temporary_password"] == "Welcome@2026"
    assert data["token"]
    assert data["user"]["email"] == "new.hire@example.com"
    assert data["user"]["roles"] == ["Presales Lead"]
    assert [item["name"] for item in data["user"]["regions"]] == ["South"]

    stored = db_session.get(User, data["user"]["id"])
    assert stored is not None
    assert verify_password("Welcome@2026", stored.password_hash)

    duplicate = client.post(
        "/api/users",
        json={"full_name": "Again", "email": "new.hire@example.com"},
        headers=_headers(admin),
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "duplicate_email"


def test_register_rejects_unknown_roles_and_non_admins(client: TestClient, admin: User, member: User) -> None:
    bad_role = client.post(
        "/api/users",
        json={"full_name": "X", "email": "x@example.com", "roles": ["Wizard"]},
        headers=_headers(admin),
    )
    assert bad_role.status_code == 400
    assert bad_role.json()["code"] == "invalid_role"

    forbidden = client.post(
        "/api/users",
        json={"full_name": "Y", "email": "y@example.com"},
        headers=_headers(member),
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "insufficient_permissions"


def test_self_update_cannot_touch_admin_fields(client: TestClient, admin: User, member: User) -> None:
    renamed = client.put(f"/api/users/{member.id}", json={"full_name": "Renamed Member"}, headers=_headers(member))
    assert renamed.status_code == 200
    assert renamed.json()["data"]["full_name"] == "Renamed Member"

    escalation = client.put(f"/api/users/{member.id}", json={"roles": ["Admin"]}, headers=_headers(member))
    assert escalation.status_code == 403
    assert escalation.json()["code"] == "admin_only_fields"

    other = client.get(f"/api/users/{admin.id}", headers=_headers(member))
    assert other.status_code == 403
    assert other.json()["code"] == "not_owner"

    promoted = client.put(f"/api/users/{member.id}", json={"roles": ["Presales Lead"]}, headers=_headers(admin))
    assert promoted.status_code == 200
    assert promoted.json()["data"]["roles"] == ["Presales Lead"]


def test_password_change_allows_new_login(client: TestClient, member: User) -> None:
    response = client.put(f"/api/users/{member.id}", json={"password": "Changed123!"}, headers=_headers(member))
    assert response.status_code == 200

    login = client.post("/api/auth/login", json={"email": "member@example.com", "password": "Changed123!"})
    assert login.status_code == 200


def test_admin_manages_status_listing_and_deletion(client: TestClient, admin: User, member: User) -> None:
    listed = client.get("/api/users", params={"limit": 1}, headers=_headers(admin)).json()
    assert listed["pagination"]["total"] == 2
    assert len(listed["data"]) == 1

    deactivated = client.post(f"/api/users/{member.id}/status", json={"status": "inactive"}, headers=_headers(admin))
    assert deactivated.status_code == 200
    assert deactivated.json()["data"]["status"] == "inactive"

    self_delete = client.delete(f"/api/users/{admin.id}", headers=_headers(admin))
    assert self_delete.status_code == 400
    assert self_delete.json()["code"] == "self_delete"

    deleted = client.delete(f"/api/users/{member.id}", headers=_headers(admin))
    assert deleted.status_code == 200
    assert client.get(f"/api/users/{member.id}", headers=_headers(admin)).status_code == 404


def test_roles_expose_capabilities(client: TestClient, db_session: Session, admin: User) -> None:
    roles = client.get("/api/roles", headers=_headers(admin)).json()["data"]
    assert [role["name"] for role in roles] == sorted(ROLE_NAMES)

    lead_id = db_session.scalar(select(Role.id).where(Role.name == "Presales Lead"))
    lead = client.get(f"/api/roles/{lead_id}", headers=_headers(admin)).json()["data"]
    assert lead["capabilities"]["permissions"]["opportunities"] == ["read"]

    assert client.get("/api/roles/999", headers=_headers(admin)).json()["code"] == "role_not_found"


def test_region_creation_and_lookups(client: TestClient, admin: User, member: User, india: Country) -> None:
    created = client.post("/api/regions", json={"name": "North", "country_id": india.id}, headers=_headers(admin))
    assert created.status_code == 201
    region_id = created.json()["data"]["id"]

    duplicate = client.post("/api/regions", json={"name": "north", "country_id": india.id}, headers=_headers(admin))
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "duplicate_region"

    missing_country = client.post("/api/regions", json={"name": "East", "country_id": 999}, headers=_headers(admin))
    assert missing_country.status_code == 409
    assert missing_country.json()["code"] == "invalid_country"

    not_admin = client.post("/api/regions", json={"name": "West", "country_id": india.id}, headers=_headers(member))
    assert not_admin.status_code == 403

    with_countries = client.get("/api/regions/with-countries", headers=_headers(member)).json()["data"]
    assert with_countries == [
        {
            "id": region_id,
            "name": "North",
            "country_id": india.id,
            "is_active": True,
            "created_at": with_countries[0]["created_at"],
            "country_name": "India",
            "country_code": "IN",
        }
    ]

    by_country = client.get(f"/api/regions/country/{india.id}", headers=_headers(member)).json()["data"]
    assert [item["name"] for item in by_country] == ["North"]

    country = client.get(f"/api/countries/region/{region_id}", headers=_headers(member)).json()["data"]
    assert country["code"] == "IN"

    countries = client.get("/api/countries", headers=_headers(member)).json()["data"]
    assert [item["name"] for item in countries] == ["India"]
    assert client.get("/api/countries/999", headers=_headers(member)).json()["code"] == "country_not_found"
