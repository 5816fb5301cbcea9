from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api import audit
from crm_api.accounts.models import Role, User
from crm_api.core.config import get_settings
from crm_api.core.database import Base, get_db
from crm_api.core.security import hash_password, issue_token
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
def clear_state(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    audit.audit_entries.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def headers(db_session: Session) -> dict[str, str]:
    role = Role(name="Presales Member")
    user = User(full_name="Cora Trace", email="trace@example.com", password_hash=hash_password("Secret123!"))
    user.roles = [role]
    db_session.add_all([role, user])
    db_session.commit()
    return {"Authorization": f"Bearer {issue_token(user.id, user.email, user.role_names)}"}


def _create_client(client: TestClient, headers: dict[str, str], correlation_id: str):
    return client.post(
        "/api/clients",
        json={"client_name": "Traced Co", "user_id": 1},
        headers={**headers, "X-Correlation-Id": correlation_id},
    )


def test_generated_correlation_id_returned_in_header_and_error_envelope(
    client: TestClient, headers: dict[str, str]
) -> None:
    response = client.get("/api/clients/404", headers=headers)
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient, headers: dict[str, str]) -> None:
    response = client.get("/api/clients/404", headers={**headers, "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.headers.get("x-request-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_auth_errors_carry_correlation_id(client: TestClient) -> None:
    response = client.get("/api/clients", headers={"X-Correlation-Id": "no-token-1"})
    assert response.status_code == 401
    assert response.json()["code"] == "missing_token"
    assert response.json()["correlation_id"] == "no-token-1"


def test_audit_uses_request_correlation_id(client: TestClient, headers: dict[str, str]) -> None:
    response = _create_client(client, headers, "corr-audit-1")
    assert response.status_code == 201

    client_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "client"]
    assert client_audits
    assert client_audits[-1]["correlation_id"] == "corr-audit-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    headers: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = _create_client(client, headers, "corr-rate-1")
    assert first.status_code == 201

    second = _create_client(client, headers, "corr-rate-1")
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
