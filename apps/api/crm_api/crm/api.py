from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, Response
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from crm_api.core.auth import Principal, get_current_user
from crm_api.core.database import get_db
from crm_api.core.errors import ValidationError
from crm_api.core.pagination import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, page_response
from crm_api.core.rbac import require_permissions
from crm_api.core.responses import ok
from crm_api.crm.import_export import bulk_importer, import_template_csv
from crm_api.crm.proposals import rfp_service, sow_service
from crm_api.crm.reports import reporting_service
from crm_api.crm.schemas import (
    ClientCreate,
    ClientImportRequest,
    ClientStatus,
    ClientUpdate,
    OpportunityCreate,
    OpportunityUpdate,
    RFPCreate,
    RFPUpdate,
    SOWCreate,
    SortOrder,
)
from crm_api.crm.service import client_service, opportunity_service
from crm_api.documents import IncomingFile, normalize_category


clients_router = APIRouter(prefix="/api/clients", tags=["crm.clients"])
opportunities_router = APIRouter(prefix="/api/opportunities", tags=["crm.opportunities"])
rfps_router = APIRouter(prefix="/api/rfps", tags=["crm.rfps"])
sows_router = APIRouter(prefix="/api/sows", tags=["crm.sows"])
reports_router = APIRouter(prefix="/api", tags=["crm.reports"])


def _page(page: int = Query(default=1, ge=1), limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)) -> tuple[int, int]:
    return page, limit


def _incoming(uploads: list[UploadFile] | None, category: str) -> list[IncomingFile]:
    files: list[IncomingFile] = []
    for upload in uploads or []:
        if not upload.filename:
            continue
        files.append(
            IncomingFile(
                filename=upload.filename,
                content_type=upload.content_type or "application/octet-stream",
                content=upload.file.read(),
                category=normalize_category(category),
            )
        )
    return files


def document_uploads(
    commercial: list[UploadFile] | None = File(default=None, alias="documents.commercial"),
    proposal: list[UploadFile] | None = File(default=None, alias="documents.proposal"),
    presentation: list[UploadFile] | None = File(default=None, alias="documents.presentation"),
    qa_document: list[UploadFile] | None = File(default=None, alias="documents.qa_document"),
    other: list[UploadFile] | None = File(default=None, alias="documents.other"),
    documents: list[UploadFile] | None = File(default=None, alias="documents"),
) -> list[IncomingFile]:
    """Collect ``documents.<category>`` parts; a bare ``documents`` part is filed as ``other``."""
    return [
        *_incoming(commercial, "commercial"),
        *_incoming(proposal, "proposal"),
        *_incoming(presentation, "presentation"),
        *_incoming(qa_document, "qa_document"),
        *_incoming(other, "other"),
        *_incoming(documents, "other"),
    ]


def _request_error(exc: PydanticValidationError) -> RequestValidationError:
    return RequestValidationError(exc.errors(include_url=False, include_context=False))


def rfp_form(
    title: str | None = Form(default=None),
    rfp_type: str | None = Form(default=None, alias="rfpType"),
    rfp_status: str | None = Form(default=None, alias="rfpStatus"),
    rfp_description: str | None = Form(default=None, alias="rfpDescription"),
    solution_description: str | None = Form(default=None, alias="solutionDescription"),
    submission_deadline: datetime | None = Form(default=None, alias="submissionDeadline"),
    bid_manager: str | None = Form(default=None, alias="bidManager"),
    submission_mode: str | None = Form(default=None, alias="submissionMode"),
    portal_url: str | None = Form(default=None, alias="portalUrl"),
    question_submission_date: datetime | None = Form(default=None, alias="questionSubmissionDate"),
    response_submission_date: datetime | None = Form(default=None, alias="responseSubmissionDate"),
    comments: str | None = Form(default=None),
    opportunity_id: int | None = Form(default=None, alias="opportunityId"),
) -> dict[str, Any]:
    fields = {
        "title": title,
        "rfp_type": rfp_type,
        "rfp_status": rfp_status,
        "rfp_description": rfp_description,
        "solution_description": solution_description,
        "submission_deadline": submission_deadline,
        "bid_manager": bid_manager,
        "submission_mode": submission_mode,
        "portal_url": portal_url,
        "question_submission_date": question_submission_date,
        "response_submission_date": response_submission_date,
        "comments": comments,
        "opportunity_id": opportunity_id,
    }
    return {key: value for key, value in fields.items() if value is not None and value != ""}


def sow_form(
    sow_title: str = Form(...),
    opportunity_id: int = Form(...),
    rfp_id: int = Form(...),
    user_id: int | None = Form(default=None),
    release_version: str | None = Form(default=None),
    contract_currency: str = Form(default="USD"),
    contract_value: str = Form(default="0"),
    target_kickoff_date: str | None = Form(default=None),
    linked_proposal_reference: str | None = Form(default=None),
    scope_overview: str | None = Form(default=None),
) -> SOWCreate:
    try:
        return SOWCreate.model_validate(
            {
                "sow_title": sow_title,
                "opportunity_id": opportunity_id,
                "rfp_id": rfp_id,
                "user_id": user_id,
                "release_version": release_version,
                "contract_currency": contract_currency,
                "contract_value": contract_value or "0",
                "target_kickoff_date": target_kickoff_date or None,
                "linked_proposal_reference": linked_proposal_reference,
                "scope_overview": scope_overview,
            }
        )
    except PydanticValidationError as exc:
        raise _request_error(exc) from exc


def _download(path: Any, mime_type: str, filename: str) -> FileResponse:
    return FileResponse(path, media_type=mime_type, filename=filename)


# Clients


@clients_router.get("")
def list_clients(
    paging: tuple[int, int] = Depends(_page),
    status_filter: ClientStatus | None = Query(default=None, alias="status"),
    industry: str | None = Query(default=None),
    search: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _user: Principal = Depends(require_permissions("clients:read")),
) -> dict[str, Any]:
    page, limit = paging
    items, meta = client_service.list_clients(
        db, page=page, limit=limit, status=status_filter, industry=industry, search=search
    )
    return page_response(items, meta)


@clients_router.post("", status_code=status.HTTP_201_CREATED)
def create_client(
    dto: ClientCreate,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_permissions("clients:write")),
) -> dict[str, Any]:
    return ok(client_service.create_client(db, user, dto), "Client created successfully")


@clients_router.post("/import")
def import_clients(
    dto: ClientImportRequest,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_permissions("clients:write")),
) -> dict[str, Any]:
    return ok(bulk_importer.import_clients(db, user, dto.clients))


@clients_router.get("/{client_id}")
def get_client(
    client_id: int,
    db: Session = Depends(get_db),
    _user: Principal = Depends(require_permissions("clients:read")),
) -> dict[str, Any]:
    return ok(client_service.get_client(db, client_id))


@clients_router.put("/{client_id}")
def update_client(
    client_id: int,
    dto: ClientUpdate,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_permissions("clients:write")),
) -> dict[str, Any]:
    return ok(client_service.update_client(db, user, client_id, dto), "Client updated successfully")


@clients_router.delete("/{client_id}")
def delete_client(
    client_id: int,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_permissions("clients:write")),
) -> dict[str, Any]:
    client_service.delete_client(db, user, client_id)
    return ok(message="Client deleted successfully")


# Opportunities


@opportunities_router.get("")
def list_opportunities(
    paging: tuple[int, int] = Depends(_page),
    pipeline_status: str | None = Query(default=None),
    approval_stage: str | None = Query(default=None),
    user_id: int | None = Query(default=None),
    search: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _user: Principal = Depends(require_permissions("opportunities:read")),
) -> dict[str, Any]:
    page, limit = paging
    items, meta = opportunity_service.list_opportunities(
        db,
        page=page,
        limit=limit,
        pipeline_status=pipeline_status,
        approval_stage=approval_stage,
        user_id=user_id,
        search=search,
    )
    return page_response(items, meta)


@opportunities_router.post("", status_code=status.HTTP_201_CREATED)
def create_opportunity(
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_permissions("opportunities:write")),
) -> dict[str, Any]:
    return ok(opportunity_service.create_opportunity(db, user, dto), "Opportunity created successfully")


@opportunities_router.get("/template")
def download_import_template(
    _user: Principal = Depends(require_permissions("opportunities:read")),
) -> Response:
    return Response(
        content=import_template_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="opportunity_import_template.csv"'},
    )


@opportunities_router.post("/import")
def import_opportunities(
    file: UploadFile | None = File(default=None),
    db: Session = Depends(get_db),
    user: Principal = Depends(require_permissions("opportunities:write")),
) -> dict[str, Any]:
    if file is None or not file.filename:
        raise ValidationError("No file uploaded", code="no_file")
    return ok(bulk_importer.import_opportunities(db, user, file.filename, file.file.read()))


@opportunities_router.get("/user")
def list_my_opportunities(
    db: Session = Depends(get_db),
    user: Principal = Depends(require_permissions("opportunities:read")),
) -> dict[str, Any]:
    return ok(opportunity_service.list_by_user(db, user.id))


@opportunities_router.get("/user/{user_id}")
def list_opportunities_by_user(
    user_id: int,
    db: Session = Depends(get_db),
    _user: Principal = Depends(require_permissions("opportunities:read")),
) -> dict[str, Any]:
    return ok(opportunity_service.list_by_user(db, user_id))


@opportunities_router.get("/status/{pipeline_status}")
def list_opportunities_by_status(
    pipeline_status: str,
    db: Session = Depends(get_db),
    _user: Principal = Depends(require_permissions("opportunities:read")),
) -> dict[str, Any]:
    return ok(opportunity_service.list_by_pipeline_status(db, pipeline_status))


@opportunities_router.get("/{opportunity_id}")
def get_opportunity(
    opportunity_id: int,
    db: Session = Depends(get_db),
    _user: Principal = Depends(require_permissions("opportunities:read")),
) -> dict[str, Any]:
    return ok(opportunity_service.get_opportunity(db, opportunity_id))


@opportunities_router.put("/{opportunity_id}")
def update_opportunity(
    opportunity_id: int,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_permissions("opportunities:write")),
) -> dict[str, Any]:
    return ok(
        opportunity_service.update_opportunity(db, user, opportunity_id, dto),
        "Opportunity updated successfully",
    )


@opportunities_router.delete("/{opportunity_id}")
def delete_opportunity(
    opportunity_id: int,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_permissions("opportunities:write")),
) -> dict[str, Any]:
    opportunity_service.delete_opportunity(db, user, opportunity_id)
    return ok(message="Opportunity deleted successfully")


# RFPs


@rfps_router.get("")
def list_rfps(
    paging: tuple[int, int] = Depends(_page),
    opportunity_id: int | None = Query(default=None),
    rfp_status: str | None = Query(default=None),
    search: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    page, limit = paging
    items, meta = rfp_service.list_rfps(
        db, page=page, limit=limit, opportunity_id=opportunity_id, rfp_status=rfp_status, search=search
    )
    return page_response(items, meta)


@rfps_router.post("", status_code=status.HTTP_201_CREATED)
def create_rfp(
    fields: dict[str, Any] = Depends(rfp_form),
    files: list[IncomingFile] = Depends(document_uploads),
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        dto = RFPCreate.model_validate(fields)
    except PydanticValidationError as exc:
        raise _request_error(exc) from exc
    return ok(rfp_service.create_rfp(db, user, dto, files), "RFP created successfully")


@rfps_router.get("/opportunity/{opportunity_id}")
def get_latest_rfp_for_opportunity(
    opportunity_id: int,
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(rfp_service.get_latest_for_opportunity(db, opportunity_id))


@rfps_router.get("/{rfp_id}")
def get_rfp(
    rfp_id: int,
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(rfp_service.get_rfp(db, rfp_id))


@rfps_router.put("/{rfp_id}")
def update_rfp(
    rfp_id: int,
    fields: dict[str, Any] = Depends(rfp_form),
    files: list[IncomingFile] = Depends(document_uploads),
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    fields.pop("opportunity_id", None)
    try:
        dto = RFPUpdate.model_validate(fields)
    except PydanticValidationError as exc:
        raise _request_error(exc) from exc
    return ok(rfp_service.update_rfp(db, user, rfp_id, dto, files), "RFP updated successfully")


@rfps_router.delete("/{rfp_id}")
def delete_rfp(
    rfp_id: int,
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    rfp_service.delete_rfp(db, user, rfp_id)
    return ok(message="RFP deleted successfully")


@rfps_router.get("/{rfp_id}/documents/{document_id}/download", response_model=None)
def download_rfp_document(
    rfp_id: int,
    document_id: int,
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> FileResponse:
    document, path = rfp_service.document_path(db, rfp_id, document_id)
    return _download(path, document.mime_type, document.original_filename)


# SOWs


@sows_router.get("")
def list_sows(
    paging: tuple[int, int] = Depends(_page),
    opportunity_id: int | None = Query(default=None),
    rfp_id: int | None = Query(default=None),
    user_id: int | None = Query(default=None),
    search: str | None = Query(default=None),
    sort_by: str = Query(default="created_at"),
    order: SortOrder = Query(default="desc"),
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    page, limit = paging
    items, meta = sow_service.list_sows(
        db,
        page=page,
        limit=limit,
        opportunity_id=opportunity_id,
        rfp_id=rfp_id,
        user_id=user_id,
        search=search,
        sort_by=sort_by,
        order=order,
    )
    return page_response(items, meta)


@sows_router.post("", status_code=status.HTTP_201_CREATED)
def create_sow(
    dto: SOWCreate = Depends(sow_form),
    files: list[IncomingFile] = Depends(document_uploads),
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(sow_service.create_sow(db, user, dto, files), "SOW created successfully")


@sows_router.get("/{sow_id}")
def get_sow(
    sow_id: int,
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(sow_service.get_sow(db, sow_id))


@sows_router.delete("/{sow_id}")
def delete_sow(
    sow_id: int,
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    sow_service.delete_sow(db, user, sow_id)
    return ok(message="SOW deleted successfully")


@sows_router.post("/{sow_id}/documents", status_code=status.HTTP_201_CREATED)
def upload_sow_documents(
    sow_id: int,
    files: list[IncomingFile] = Depends(document_uploads),
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    documents = sow_service.upload_documents(db, user, sow_id, files)
    return ok(documents, f"{len(documents)} document(s) uploaded successfully")


@sows_router.get("/{sow_id}/documents")
def list_sow_documents(
    sow_id: int,
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(sow_service.list_documents(db, sow_id))


@sows_router.get("/{sow_id}/documents/{document_id}/download", response_model=None)
def download_sow_document(
    sow_id: int,
    document_id: int,
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> FileResponse:
    document, path = sow_service.document_path(db, sow_id, document_id)
    return _download(path, document.mime_type, document.original_filename)


@sows_router.delete("/{sow_id}/documents/{document_id}")
def delete_sow_document(
    sow_id: int,
    document_id: int,
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    sow_service.delete_document(db, user, sow_id, document_id)
    return ok(message="Document deleted successfully")


# Reports


@reports_router.get("/dashboard/stats")
def dashboard_stats(
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(reporting_service.dashboard_stats(db).model_dump(by_alias=True, mode="json"))


@reports_router.get("/sales-performance")
def sales_performance(
    presales_poc: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _user: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    return ok(reporting_service.sales_performance(db, presales_poc).model_dump(by_alias=True, mode="json"))
