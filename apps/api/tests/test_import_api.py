from __future__ import annotations

import io
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import DataError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api import audit
from crm_api.accounts.models import Role, User
from crm_api.core.config import get_settings
from crm_api.core.database import Base, get_db
from crm_api.core.errors import ValidationError
from crm_api.core.security import hash_password, issue_token
from crm_api.crm.import_export import normalize_header, parse_tabular
from crm_api.crm.models import Opportunity
from crm_api.crm.service import opportunity_service
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
def user(db_session: Session) -> User:
    role = Role(name="Presales Member")
    account = User(full_name="Ira Importer", email="import@example.com", password_hash=hash_password("Secret123!"))
    account.roles = [role]
    db_session.add_all([role, account])
    db_session.commit()
    return account


@pytest.fixture()
def headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user.id, user.email, user.role_names)}"}


CSV_WITH_ONE_BAD_ROW = (
    "Opportunity Name,Client Name,Close Date,Amount,Pipeline Status\n"
    "Alpha,Acme,2026-12-01,1000,Open\n"
    "Beta,Acme,,2000,Open\n"
    "Gamma,Globex,2027-01-15,3000,Won\n"
).encode("utf-8")


def test_csv_import_keeps_good_rows_and_reports_bad_ones(
    client: TestClient, headers: dict[str, str], db_session: Session, user: User
) -> None:
    response = client.post(
        "/api/opportunities/import",
        files={"file": ("pipeline.csv", CSV_WITH_ONE_BAD_ROW, "text/csv")},
        headers=headers,
    )

    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data["total"] == 3
    assert data["success"] == 2
    assert data["failed"] == 1
    assert data["status"] == "partially_succeeded"
    assert len(data["errors"]) == 1
    error = data["errors"][0]
    assert error["index"] == 1
    assert error["row"] == 2
    assert "close_date" in error["error"]
    assert error["data"]["opportunity_name"] == "Beta"

    names = db_session.scalars(select(Opportunity.opportunity_name).order_by(Opportunity.id)).all()
    assert names == ["Alpha", "Gamma"]
    owners = set(db_session.scalars(select(Opportunity.user_id)).all())
    assert owners == {user.id}
    stages = set(db_session.scalars(select(Opportunity.approval_stage)).all())
    assert stages == {"LEVEL_1_RFB"}


def test_xlsx_import(client: TestClient, headers: dict[str, str], db_session: Session) -> None:
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["opportunity_name", "client_name", "close_date", "amount", "lead_source"])
    sheet.append(["Delta", "Umbrella", "2026-09-30", 4200, "Partner"])
    sheet.append([None, None, None, None, None])
    sheet.append(["Echo", "Umbrella", "2026-10-30", 800, "Cold Call"])
    buffer = io.BytesIO()
    workbook.save(buffer)

    response = client.post(
        "/api/opportunities/import",
        files={
            "file": (
                "pipeline.xlsx",
                buffer.getvalue(),
                "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            )
        },
        headers=headers,
    )

    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data == {"total": 2, "success": 2, "failed": 0, "status": "succeeded", "errors": []}
    assert db_session.scalar(select(func.count(Opportunity.id))) == 2


def test_all_rows_failing_reports_failed_status(client: TestClient, headers: dict[str, str]) -> None:
    content = b"opportunity_name,client_name\nOnly Name,\n,Only Client\n"

    data = client.post(
        "/api/opportunities/import",
        files={"file": ("bad.csv", content, "text/csv")},
        headers=headers,
    ).json()["data"]

    assert data["status"] == "failed"
    assert data["success"] == 0
    assert [error["row"] for error in data["errors"]] == [1, 2]


def test_unsupported_extension_is_rejected(client: TestClient, headers: dict[str, str]) -> None:
    response = client.post(
        "/api/opportunities/import",
        files={"file": ("pipeline.json", b"[]", "application/json")},
        headers=headers,
    )

    assert response.status_code == 400
    assert response.json()["code"] == "unsupported_file_type"


def test_missing_file_is_rejected(client: TestClient, headers: dict[str, str]) -> None:
    response = client.post("/api/opportunities/import", headers=headers)

    assert response.status_code == 400
    assert response.json()["code"] == "no_file"


def test_header_only_file_is_empty() -> None:
    with pytest.raises(ValidationError) as excinfo:
        parse_tabular("empty.csv", b"opportunity_name,client_name\n")

    assert excinfo.value.code == "empty_import"


def test_headers_are_normalized() -> None:
    assert normalize_header("  Close-Date ") == "close_date"
    assert normalize_header("Presales POC") == "presales_poc"
    assert normalize_header(None) == ""


def test_store_error_fails_only_that_row(
    client: TestClient, headers: dict[str, str], db_session: Session, monkeypatch: pytest.MonkeyPatch
) -> None:
    create = opportunity_service.create_opportunity

    def create_or_reject(session, actor, dto):  # type: ignore[no-untyped-def]
        if dto.opportunity_name == "Beta":
            raise DataError("INSERT INTO opportunities", {}, Exception("value too long for type character varying(255)"))
        return create(session, actor, dto)

    monkeypatch.setattr(opportunity_service, "create_opportunity", create_or_reject)
    content = (
        b"opportunity_name,client_name,close_date,amount\n"
        b"Alpha,Acme,2026-12-01,1000\n"
        b"Beta,Acme,2026-12-02,2000\n"
        b"Gamma,Acme,2026-12-03,3000\n"
    )

    response = client.post(
        "/api/opportunities/import",
        files={"file": ("pipeline.csv", content, "text/csv")},
        headers=headers,
    )

    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert (data["total"], data["success"], data["failed"]) == (3, 2, 1)
    assert data["status"] == "partially_succeeded"
    assert data["errors"][0]["row"] == 2
    assert data["errors"][0]["error"] == "row could not be saved"
    names = db_session.scalars(select(Opportunity.opportunity_name).order_by(Opportunity.id)).all()
    assert names == ["Alpha", "Gamma"]


def test_oversized_cells_fail_validation_per_row(client: TestClient, headers: dict[str, str]) -> None:
    content = (
        "opportunity_name,client_name,close_date,amount\n"
        f"{'n' * 300},Acme,2026-12-01,1000\n"
        "Fits,Acme,2026-12-01,1000\n"
    ).encode("utf-8")

    data = client.post(
        "/api/opportunities/import",
        files={"file": ("wide.csv", content, "text/csv")},
        headers=headers,
    ).json()["data"]

    assert data["success"] == 1
    assert data["errors"][0]["index"] == 0
    assert "opportunity_name" in data["errors"][0]["error"]
