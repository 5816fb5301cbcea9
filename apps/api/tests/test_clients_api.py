from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api import audit
from crm_api.accounts.models import Role, User
from crm_api.core.auth import Principal
from crm_api.core.config import get_settings
from crm_api.core.database import Base, get_db
from crm_api.core.errors import ConflictError
from crm_api.core.permissions import resolve_permissions
from crm_api.core.security import hash_password, issue_token
from crm_api.crm.models import Client, ClientAddress, ClientContact
from crm_api.crm.schemas import ClientCreate, ContactInput
from crm_api.crm.service import client_service
from crm_api.main import app
from crm_api.middleware.rate_limit import reset_rate_limiter


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
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    yield
    audit.audit_entries.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_user(db: Session, email: str, roles: list[str]) -> User:
    role_rows = []
    for name in roles:
        role = db.scalar(select(Role).where(Role.name == name))
        if role is None:
            role = Role(name=name)
            db.add(role)
        role_rows.append(role)
    user = User(full_name=email.split("@")[0].title(), email=email, password_hash=hash_password("Secret123!"))
    user.roles = role_rows
    db.add(user)
    db.commit()
    return user


def _headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user.id, user.email, user.role_names)}"}


@pytest.fixture()
def admin(db_session: Session) -> User:
    return _seed_user(db_session, "admin@example.com", ["Admin"])


def _client_payload(owner_id: int, **overrides) -> dict:
    payload = {
        "client_name": "Acme Corp",
        "email": "hello@acme.com",
        "industry": "Manufacturing",
        "status": "active",
        "user_id": owner_id,
        "contacts": [
            {"name": "Ana Ruiz", "email": "ana@acme.com", "designation": "CTO"},
            {"name": "Bo Chen", "phone": "+1-555-0100"},
        ],
        "addresses": [
            {"address_line1": "1 Main St", "city": "Austin", "country": "USA", "is_primary": True},
            {"address_line1": "9 Side Rd", "city": "Dallas", "country": "USA", "is_primary": True},
        ],
    }
    payload.update(overrides)
    return payload


def test_create_client_assigns_code_and_returns_full_record(client: TestClient, admin: User) -> None:
    response = client.post("/api/clients", json=_client_payload(admin.id), headers=_headers(admin))

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"] == {"client_id": 1, "client_code": "CL-00001"}

    detail = client.get("/api/clients/1", headers=_headers(admin)).json()["data"]
    assert detail["client_name"] == "Acme Corp"
    assert detail["account_owner"] == "Admin"
    assert [contact["name"] for contact in detail["contacts"]] == ["Ana Ruiz", "Bo Chen"]
    primary = [address for address in detail["addresses"] if address["is_primary"]]
    assert len(primary) == 1
    assert primary[0]["address_line1"] == "1 Main St"
    assert audit.audit_entries[-1]["action"] == "create"


def test_later_marked_address_becomes_the_only_primary(client: TestClient, admin: User) -> None:
    created = client.post(
        "/api/clients",
        json={
            "client_name": "Acme",
            "user_id": admin.id,
            "addresses": [
                {"address_line1": "1 Main St", "country": "USA"},
                {"address_line1": "2 Oak Ave", "country": "USA", "is_primary": True},
            ],
        },
        headers=_headers(admin),
    )
    assert created.status_code == 201
    client_id = created.json()["data"]["client_id"]
    assert created.json()["data"]["client_code"]

    addresses = client.get(f"/api/clients/{client_id}", headers=_headers(admin)).json()["data"]["addresses"]

    assert [(item["address_line1"], item["is_primary"]) for item in addresses] == [
        ("2 Oak Ave", True),
        ("1 Main St", False),
    ]


def test_first_address_is_promoted_when_none_is_primary(client: TestClient, admin: User, db_session: Session) -> None:
    payload = _client_payload(
        admin.id,
        addresses=[
            {"address_line1": "1 Main St", "country": "USA"},
            {"address_line1": "9 Side Rd", "country": "USA"},
        ],
    )
    client.post("/api/clients", json=payload, headers=_headers(admin))

    flags = db_session.scalars(select(ClientAddress.is_primary).order_by(ClientAddress.address_id)).all()
    assert flags == [True, False]


def test_update_replaces_contacts_and_addresses(client: TestClient, admin: User, db_session: Session) -> None:
    client.post("/api/clients", json=_client_payload(admin.id), headers=_headers(admin))

    response = client.put(
        "/api/clients/1",
        json={
            "client_name": "Acme Holdings",
            "status": "inactive",
            "contacts": [{"name": "Cy Patel"}],
            "addresses": [{"address_line1": "5 New Ave", "country": "Canada"}],
        },
        headers=_headers(admin),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["client_name"] == "Acme Holdings"
    assert data["status"] == "inactive"
    assert data["user_id"] == admin.id
    assert [contact["name"] for contact in data["contacts"]] == ["Cy Patel"]
    assert [address["address_line1"] for address in data["addresses"]] == ["5 New Ave"]
    assert data["addresses"][0]["is_primary"] is True
    assert db_session.scalar(select(func.count(ClientContact.contact_id))) == 1


def test_list_clients_paginates_with_consistent_totals(client: TestClient, admin: User) -> None:
    for index in range(12):
        payload = _client_payload(admin.id, client_name=f"Client {index:02d}", contacts=[], addresses=[])
        if index % 4 == 0:
            payload["status"] = "inactive"
        client.post("/api/clients", json=payload, headers=_headers(admin))

    page_two = client.get("/api/clients", params={"page": 2, "limit": 5}, headers=_headers(admin)).json()
    assert len(page_two["data"]) == 5
    assert page_two["pagination"] == {
        "total": 12,
        "totalPages": 3,
        "currentPage": 2,
        "pageSize": 5,
        "hasNextPage": True,
        "hasPreviousPage": True,
    }

    last = client.get("/api/clients", params={"page": 3, "limit": 5}, headers=_headers(admin)).json()
    assert len(last["data"]) == 2
    assert last["pagination"]["hasNextPage"] is False

    inactive = client.get("/api/clients", params={"status": "inactive"}, headers=_headers(admin)).json()
    assert inactive["pagination"]["total"] == 3
    assert len(inactive["data"]) == 3
    assert {item["status"] for item in inactive["data"]} == {"inactive"}


def test_list_reports_contact_count(client: TestClient, admin: User) -> None:
    client.post("/api/clients", json=_client_payload(admin.id), headers=_headers(admin))

    items = client.get("/api/clients", params={"search": "acme"}, headers=_headers(admin)).json()["data"]

    assert items[0]["contact_count"] == 2
    assert items[0]["account_owner"] == "Admin"


def test_client_routes_require_client_permissions(client: TestClient, db_session: Session, admin: User) -> None:
    plain = _seed_user(db_session, "plain@example.com", ["User"])
    sales_head = _seed_user(db_session, "head@example.com", ["Sales Head"])

    assert client.get("/api/clients").status_code == 401

    denied = client.get("/api/clients", headers=_headers(plain))
    assert denied.status_code == 403
    assert denied.json()["code"] == "insufficient_permissions"
    assert denied.json()["details"]["required_permission"] == "clients:read"

    created = client.post("/api/clients", json=_client_payload(admin.id), headers=_headers(sales_head))
    assert created.status_code == 201
    assert client.get("/api/opportunities", headers=_headers(sales_head)).status_code == 403


def test_missing_client_returns_not_found_envelope(client: TestClient, admin: User) -> None:
    response = client.get("/api/clients/404", headers=_headers(admin))

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "client_not_found"
    assert body["correlation_id"]


def test_invalid_payload_is_rejected(client: TestClient, admin: User) -> None:
    response = client.post("/api/clients", json={"user_id": admin.id}, headers=_headers(admin))

    assert response.status_code == 422
    assert response.json()["code"] == "request_validation_failed"


def test_delete_client_removes_children(client: TestClient, admin: User, db_session: Session) -> None:
    client.post("/api/clients", json=_client_payload(admin.id), headers=_headers(admin))

    response = client.delete("/api/clients/1", headers=_headers(admin))

    assert response.status_code == 200
    assert db_session.scalar(select(func.count(Client.client_id))) == 0
    assert db_session.scalar(select(func.count(ClientContact.contact_id))) == 0
    assert db_session.scalar(select(func.count(ClientAddress.address_id))) == 0


def test_failed_child_insert_leaves_no_client_row(db_session: Session, admin: User) -> None:
    actor = Principal(
        id=admin.id,
        email=admin.email,
        full_name=admin.full_name,
        roles=["Admin"],
        permissions=resolve_permissions(["Admin"]),
    )
    dto = ClientCreate.model_construct(
        client_name="Broken Co",
        user_id=admin.id,
        contacts=[ContactInput.model_construct(name=None)],
        addresses=[],
    )

    with pytest.raises(ConflictError):
        client_service.create_client(db_session, actor, dto)

    assert db_session.scalar(select(func.count(Client.client_id))) == 0
    assert db_session.scalar(select(func.count(ClientContact.contact_id))) == 0


def test_json_import_reports_row_failures(client: TestClient, admin: User) -> None:
    response = client.post(
        "/api/clients/import",
        json={
            "clients": [
                {"client_name": "Imported One", "email": "one@example.com"},
                {"client_name": "  ", "email": "two@example.com"},
                {"client_name": "Imported Three"},
            ]
        },
        headers=_headers(admin),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total"] == 3
    assert data["success"] == 2
    assert data["failed"] == 1
    assert data["status"] == "partially_succeeded"
    assert data["errors"][0]["row"] == 2
    assert data["errors"][0]["index"] == 1

    listed = client.get("/api/clients", headers=_headers(admin)).json()
    assert listed["pagination"]["total"] == 2
    assert {item["user_id"] for item in listed["data"]} == {admin.id}
