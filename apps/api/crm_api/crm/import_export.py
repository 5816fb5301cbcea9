from __future__ import annotations

import csv
import io
import logging
from pathlib import Path
from typing import Any

from openpyxl import load_workbook
from opentelemetry import trace
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_api.core.auth import Principal
from crm_api.core.errors import CRMError, ValidationError
from crm_api.crm.schemas import ClientCreate, ImportResult, ImportRowError, OpportunityCreate
from crm_api.crm.service import ClientService, OpportunityService, client_service, opportunity_service
from crm_api.metrics import observe_import_row


logger = logging.getLogger("crm_api.crm.import")
tracer = trace.get_tracer("crm_api.crm.import")

SUPPORTED_EXTENSIONS = (".csv", ".xlsx")

OPPORTUNITY_TEMPLATE_COLUMNS = (
    "opportunity_name",
    "client_name",
    "close_date",
    "amount_currency",
    "amount",
    "opportunity_type",
    "lead_source",
    "triaged_status",
    "pipeline_status",
    "win_probability",
    "start_date",
    "sales_owner",
    "technical_poc",
    "presales_poc",
)

OPPORTUNITY_TEMPLATE_EXAMPLE = (
    "Cloud Migration",
    "Acme Corp",
    "2026-12-31",
    "USD",
    "150000",
    "New Business",
    "Referral",
    "Qualified",
    "Open",
    "40",
    "2026-11-01",
    "Jane Doe",
    "John Smith",
    "Priya Rao",
)


def normalize_header(raw: Any) -> str:
    return str(raw or "").strip().lower().replace(" ", "_").replace("-", "_")


def _clean(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _records(headers: list[str], rows: list[list[Any]]) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    for row in rows:
        values = [_clean(value) for value in row]
        if all(value is None for value in values):
            continue
        record = {
            header: values[position] if position < len(values) else None
            for position, header in enumerate(headers)
            if header
        }
        records.append(record)
    return records


def _parse_csv(content: bytes) -> list[dict[str, Any]]:
    reader = csv.reader(io.StringIO(content.decode("utf-8-sig")))
    rows = list(reader)
    if not rows:
        return []
    return _records([normalize_header(cell) for cell in rows[0]], rows[1:])


def _parse_xlsx(content: bytes) -> list[dict[str, Any]]:
    workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    try:
        sheet = workbook.worksheets[0]
        rows = [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()
    if not rows:
        return []
    return _records([normalize_header(cell) for cell in rows[0]], rows[1:])


def parse_tabular(filename: str, content: bytes) -> list[dict[str, Any]]:
    """Read the first sheet (or the CSV body) into header-keyed records.

    Raises ``ValidationError`` for an unsupported extension, an unreadable
    file, or a file without data rows.
    """
    extension = Path(filename or "").suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise ValidationError(
            "Unsupported file type. Upload a .csv or .xlsx file",
            code="unsupported_file_type",
            details={"filename": filename},
        )
    try:
        records = _parse_csv(content) if extension == ".csv" else _parse_xlsx(content)
    except (UnicodeDecodeError, csv.Error, OSError, ValueError, KeyError) as exc:
        raise ValidationError("The uploaded file could not be parsed", code="unparseable_file", details=str(exc)) from exc
    if not records:
        raise ValidationError("The uploaded file contains no records", code="empty_import")
    return records


def _error_message(exc: Exception) -> str:
    if isinstance(exc, PydanticValidationError):
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = str(first.get("msg", "invalid row"))
        return f"{location}: {message}" if location else message
    if isinstance(exc, SQLAlchemyError):
        return "row could not be saved"
    return str(exc)


def _status(total: int, success: int) -> str:
    if total and success == total:
        return "succeeded"
    if success:
        return "partially_succeeded"
    return "failed"


def _json_safe(record: dict[str, Any]) -> dict[str, Any]:
    return {key: value if isinstance(value, (str, int, float, bool)) or value is None else str(value) for key, value in record.items()}


class BulkImporter:
    def __init__(
        self,
        clients: ClientService = client_service,
        opportunities: OpportunityService = opportunity_service,
    ) -> None:
        self.clients = clients
        self.opportunities = opportunities

    def _run(self, entity: str, records: list[dict[str, Any]], apply_row: Any) -> ImportResult:
        errors: list[ImportRowError] = []
        success = 0
        with tracer.start_as_current_span(f"crm.import.{entity}") as span:
            span.set_attribute("crm.import.total", len(records))
            for index, record in enumerate(records):
                try:
                    apply_row(record)
                except (PydanticValidationError, CRMError, SQLAlchemyError) as exc:
                    if isinstance(exc, SQLAlchemyError):
                        logger.warning(
                            "import.row_failed", exc_info=exc, extra={"entity": entity, "error": type(exc).__name__}
                        )
                    errors.append(
                        ImportRowError(index=index, row=index + 1, error=_error_message(exc), data=_json_safe(record))
                    )
                    observe_import_row(entity, "failed")
                    continue
                success += 1
                observe_import_row(entity, "succeeded")
            span.set_attribute("crm.import.failed", len(errors))

        result = ImportResult(
            total=len(records),
            success=success,
            failed=len(errors),
            status=_status(len(records), success),
            errors=errors,
        )
        logger.info(
            "import.finished",
            extra={
                "entity": entity,
                "total": result.total,
                "success": result.success,
                "failed": result.failed,
                "status": result.status,
            },
        )
        return result

    def import_opportunities(self, session: Session, actor: Principal, filename: str, content: bytes) -> ImportResult:
        records = parse_tabular(filename, content)

        def apply_row(record: dict[str, Any]) -> None:
            payload = {key: value for key, value in record.items() if value is not None}
            dto = OpportunityCreate.model_validate(payload)
            self.opportunities.create_opportunity(session, actor, dto)

        return self._run("opportunity", records, apply_row)

    def import_clients(self, session: Session, actor: Principal, records: list[dict[str, Any]]) -> ImportResult:
        if not records:
            raise ValidationError("No clients supplied", code="empty_import")

        def apply_row(record: dict[str, Any]) -> None:
            payload = {key: _clean(value) for key, value in record.items()}
            payload = {key: value for key, value in payload.items() if value is not None}
            payload.setdefault("user_id", actor.id)
            dto = ClientCreate.model_validate(payload)
            self.clients.create_client(session, actor, dto)

        return self._run("client", records, apply_row)


def import_template_csv() -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(OPPORTUNITY_TEMPLATE_COLUMNS)
    writer.writerow(OPPORTUNITY_TEMPLATE_EXAMPLE)
    return output.getvalue()


bulk_importer = BulkImporter()
