from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from types import MappingProxyType
from typing import Any

from sqlalchemy import Select, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_api import audit
from crm_api.accounts.models import User
from crm_api.core.auth import Principal
from crm_api.core.database import unit_of_work
from crm_api.core.errors import ConflictError, NotFoundError, ValidationError
from crm_api.core.pagination import PageMeta, paginate
from crm_api.crm.models import RFP, SOW, Opportunity, RFPDocument, SOWDocument
from crm_api.crm.schemas import (
    DocumentRead,
    RFPCreate,
    RFPListItem,
    RFPRead,
    RFPUpdate,
    SOWCreate,
    SOWDocumentRead,
    SOWRead,
)
from crm_api.crm.service import APPROVAL_STAGE_SOW, row_dict
from crm_api.documents import IncomingFile, rfp_document_store, sow_document_store, validate_uploads
from crm_api.metrics import observe_approval_stage_transition


logger = logging.getLogger("crm_api.crm.proposals")

RFP_SUBMITTED = "Submitted"

SOW_SORT_COLUMNS: Mapping[str, Any] = MappingProxyType(
    {
        "sow_id": SOW.id,
        "sow_title": SOW.sow_title,
        "created_at": SOW.created_at,
        "contract_value": SOW.contract_value,
        "opportunity_id": SOW.opportunity_id,
        "rfp_id": SOW.rfp_id,
    }
)
DEFAULT_SOW_SORT = "created_at"


def group_documents(documents: Sequence[Any], schema: type[DocumentRead]) -> dict[str, list[Any]]:
    grouped: dict[str, list[Any]] = {}
    for document in documents:
        grouped.setdefault(document.document_type or "other", []).append(schema.model_validate(document))
    return grouped


def _invalid_opportunity() -> ConflictError:
    return ConflictError("The specified opportunity does not exist", code="invalid_opportunity")


class RFPService:
    store = rfp_document_store

    def create_rfp(
        self,
        session: Session,
        actor: Principal,
        dto: RFPCreate,
        files: Sequence[IncomingFile] = (),
    ) -> RFPRead:
        validate_uploads(files)
        try:
            with self.store.staging() as staging, unit_of_work(session):
                if session.get(Opportunity, dto.opportunity_id) is None:
                    raise _invalid_opportunity()
                rfp = RFP(**dto.model_dump(), created_by=actor.id)
                session.add(rfp)
                session.flush()
                self._advance_on_submission(session, rfp)
                for incoming in files:
                    stored = staging.save(incoming)
                    session.add(
                        RFPDocument(
                            rfp_id=rfp.id,
                            original_filename=stored.original_filename,
                            stored_filename=stored.stored_filename,
                            mime_type=stored.mime_type,
                            size=stored.size,
                            document_type=stored.category,
                        )
                    )
                session.flush()
                rfp_id = rfp.id
        except IntegrityError as exc:
            raise self._translate_integrity_error(exc) from exc

        audit.record(actor.id, "rfp", rfp_id, "create", after=dto.model_dump(mode="json"))
        logger.info("rfp.created", extra={"rfp_id": rfp_id, "file_count": len(files), "user_id": actor.id})
        return self.get_rfp(session, rfp_id)

    def update_rfp(
        self,
        session: Session,
        actor: Principal,
        rfp_id: int,
        dto: RFPUpdate,
        files: Sequence[IncomingFile] = (),
    ) -> RFPRead:
        validate_uploads(files)
        rfp = session.get(RFP, rfp_id)
        if rfp is None:
            raise NotFoundError("RFP not found", code="rfp_not_found")

        changes = {key: value for key, value in dto.model_dump(exclude_unset=True).items() if value is not None}
        try:
            with self.store.staging() as staging, unit_of_work(session):
                for key, value in changes.items():
                    setattr(rfp, key, value)
                session.flush()
                if changes.get("rfp_status") == RFP_SUBMITTED:
                    self._advance_on_submission(session, rfp)
                for incoming in files:
                    stored = staging.save(incoming)
                    session.add(
                        RFPDocument(
                            rfp_id=rfp.id,
                            original_filename=stored.original_filename,
                            stored_filename=stored.stored_filename,
                            mime_type=stored.mime_type,
                            size=stored.size,
                            document_type=stored.category,
                        )
                    )
                session.flush()
        except IntegrityError as exc:
            raise self._translate_integrity_error(exc) from exc

        audit.record(actor.id, "rfp", rfp_id, "update", after={key: str(value) for key, value in changes.items()})
        logger.info("rfp.updated", extra={"rfp_id": rfp_id, "file_count": len(files), "user_id": actor.id})
        return self.get_rfp(session, rfp_id)

    def _advance_on_submission(self, session: Session, rfp: RFP) -> None:
        if rfp.rfp_status != RFP_SUBMITTED or rfp.opportunity_id is None:
            return
        opportunity = session.get(Opportunity, rfp.opportunity_id)
        if opportunity is None:
            raise _invalid_opportunity()
        opportunity.approval_stage = APPROVAL_STAGE_SOW
        observe_approval_stage_transition(APPROVAL_STAGE_SOW)
        logger.info(
            "rfp.submitted",
            extra={"rfp_id": rfp.id, "opportunity_id": opportunity.id, "approval_stage": APPROVAL_STAGE_SOW},
        )

    def _translate_integrity_error(self, exc: IntegrityError) -> ConflictError:
        detail = str(exc.orig)
        if "opportunity" in detail or "FOREIGN KEY" in detail.upper():
            return _invalid_opportunity()
        return ConflictError("RFP could not be saved", code="rfp_conflict", details=detail)

    def _read(self, session: Session, rfp: RFP) -> RFPRead:
        opportunity_name = session.scalar(select(Opportunity.opportunity_name).where(Opportunity.id == rfp.opportunity_id))
        created_by_name = (
            session.scalar(select(User.full_name).where(User.id == rfp.created_by)) if rfp.created_by else None
        )
        return RFPRead.model_validate(
            {
                **row_dict(rfp),
                "opportunity_name": opportunity_name,
                "created_by_name": created_by_name,
                "documents": group_documents(rfp.documents, DocumentRead),
            }
        )

    def get_rfp(self, session: Session, rfp_id: int) -> RFPRead:
        rfp = session.get(RFP, rfp_id)
        if rfp is None:
            raise NotFoundError("RFP not found", code="rfp_not_found")
        return self._read(session, rfp)

    def get_latest_for_opportunity(self, session: Session, opportunity_id: int) -> RFPRead:
        rfp = session.scalar(
            select(RFP)
            .where(RFP.opportunity_id == opportunity_id)
            .order_by(RFP.created_at.desc(), RFP.id.desc())
            .limit(1)
        )
        if rfp is None:
            raise NotFoundError("No RFP found for this opportunity", code="rfp_not_found")
        return self._read(session, rfp)

    def list_rfps(
        self,
        session: Session,
        *,
        page: int,
        limit: int,
        opportunity_id: int | None = None,
        rfp_status: str | None = None,
        search: str | None = None,
    ) -> tuple[list[RFPListItem], PageMeta]:
        stmt: Select[Any] = select(RFP, Opportunity.opportunity_name).outerjoin(
            Opportunity, Opportunity.id == RFP.opportunity_id
        )
        if opportunity_id is not None:
            stmt = stmt.where(RFP.opportunity_id == opportunity_id)
        if rfp_status:
            stmt = stmt.where(RFP.rfp_status == rfp_status)
        if search:
            stmt = stmt.where(RFP.title.ilike(f"%{search.strip()}%"))

        rows, meta = paginate(session, stmt.order_by(RFP.created_at.desc(), RFP.id.desc()), page=page, limit=limit)
        items = [
            RFPListItem(
                id=rfp.id,
                title=rfp.title,
                rfp_status=rfp.rfp_status,
                submission_deadline=rfp.submission_deadline,
                opportunity_id=rfp.opportunity_id,
                opportunity_name=opportunity_name or "No Opportunity",
                created_at=rfp.created_at,
                files=[DocumentRead.model_validate(document) for document in rfp.documents],
            )
            for rfp, opportunity_name in rows
        ]
        return items, meta

    def delete_rfp(self, session: Session, actor: Principal, rfp_id: int) -> None:
        rfp = session.get(RFP, rfp_id)
        if rfp is None:
            raise NotFoundError("RFP not found", code="rfp_not_found")

        sows = session.scalars(select(SOW).where(SOW.rfp_id == rfp_id)).all()
        rfp_files = [document.stored_filename for document in rfp.documents]
        sow_files = [document.stored_filename for sow in sows for document in sow.documents]
        with unit_of_work(session):
            for sow in sows:
                session.delete(sow)
            session.flush()
            session.delete(rfp)

        self.store.remove(rfp_files)
        sow_document_store.remove(sow_files)
        audit.record(actor.id, "rfp", rfp_id, "delete")
        logger.info("rfp.deleted", extra={"rfp_id": rfp_id, "file_count": len(rfp_files), "user_id": actor.id})

    def document_path(self, session: Session, rfp_id: int, document_id: int) -> tuple[RFPDocument, Path]:
        document = session.scalar(
            select(RFPDocument).where(RFPDocument.id == document_id, RFPDocument.rfp_id == rfp_id)
        )
        if document is None:
            raise NotFoundError("Document not found", code="document_not_found")
        return document, self.store.path_for(document.stored_filename)


class SOWService:
    store = sow_document_store

    def create_sow(
        self,
        session: Session,
        actor: Principal,
        dto: SOWCreate,
        files: Sequence[IncomingFile] = (),
    ) -> SOWRead:
        validate_uploads(files)
        payload = dto.model_dump()
        payload["user_id"] = payload["user_id"] or actor.id
        if not dto.sow_title.strip():
            raise ValidationError("sow_title is required", code="sow_title_required")

        try:
            with self.store.staging() as staging, unit_of_work(session):
                if session.get(Opportunity, dto.opportunity_id) is None:
                    raise _invalid_opportunity()
                if session.get(RFP, dto.rfp_id) is None:
                    raise ConflictError("The specified RFP does not exist", code="invalid_rfp")
                sow = SOW(**payload)
                session.add(sow)
                session.flush()
                self._attach(session, staging, sow.id, actor.id, files)
                session.flush()
                sow_id = sow.id
        except IntegrityError as exc:
            raise ConflictError("SOW could not be saved", code="sow_conflict", details=str(exc.orig)) from exc

        audit.record(actor.id, "sow", sow_id, "create", after=dto.model_dump(mode="json"))
        logger.info("sow.created", extra={"sow_id": sow_id, "file_count": len(files), "user_id": actor.id})
        return self.get_sow(session, sow_id)

    def _attach(self, session: Session, staging: Any, sow_id: int, uploaded_by: int, files: Sequence[IncomingFile]) -> list[SOWDocument]:
        documents: list[SOWDocument] = []
        for incoming in files:
            stored = staging.save(incoming)
            document = SOWDocument(
                sow_id=sow_id,
                original_filename=stored.original_filename,
                stored_filename=stored.stored_filename,
                mime_type=stored.mime_type,
                size=stored.size,
                document_type=stored.category,
                uploaded_by=uploaded_by,
            )
            session.add(document)
            documents.append(document)
        return documents

    def get_sow(self, session: Session, sow_id: int) -> SOWRead:
        row = session.execute(
            select(SOW, Opportunity.opportunity_name, RFP.title, User.full_name)
            .outerjoin(Opportunity, Opportunity.id == SOW.opportunity_id)
            .outerjoin(RFP, RFP.id == SOW.rfp_id)
            .outerjoin(User, User.id == SOW.user_id)
            .where(SOW.id == sow_id)
        ).first()
        if row is None:
            raise NotFoundError("SOW not found", code="sow_not_found")
        sow, opportunity_name, rfp_title, created_by_name = row
        return SOWRead.model_validate(
            {
                **row_dict(sow),
                "opportunity_name": opportunity_name,
                "rfp_title": rfp_title,
                "created_by_name": created_by_name,
                "documents": group_documents(sow.documents, SOWDocumentRead),
            }
        )

    def list_sows(
        self,
        session: Session,
        *,
        page: int,
        limit: int,
        opportunity_id: int | None = None,
        rfp_id: int | None = None,
        user_id: int | None = None,
        search: str | None = None,
        sort_by: str = DEFAULT_SOW_SORT,
        order: str = "desc",
    ) -> tuple[list[SOWRead], PageMeta]:
        stmt: Select[Any] = select(SOW)
        if opportunity_id is not None:
            stmt = stmt.where(SOW.opportunity_id == opportunity_id)
        if rfp_id is not None:
            stmt = stmt.where(SOW.rfp_id == rfp_id)
        if user_id is not None:
            stmt = stmt.where(SOW.user_id == user_id)
        if search:
            pattern = f"%{search.strip()}%"
            stmt = stmt.where(or_(SOW.sow_title.ilike(pattern), SOW.scope_overview.ilike(pattern)))

        column = SOW_SORT_COLUMNS.get(sort_by, SOW_SORT_COLUMNS[DEFAULT_SOW_SORT])
        ordering = column.asc() if order == "asc" else column.desc()
        tiebreak = SOW.id.asc() if order == "asc" else SOW.id.desc()
        rows, meta = paginate(session, stmt.order_by(ordering, tiebreak), page=page, limit=limit)
        return [self.get_sow(session, row[0].id) for row in rows], meta

    def delete_sow(self, session: Session, actor: Principal, sow_id: int) -> None:
        sow = session.get(SOW, sow_id)
        if sow is None:
            raise NotFoundError("SOW not found", code="sow_not_found")
        stored = [document.stored_filename for document in sow.documents]
        with unit_of_work(session):
            session.delete(sow)
        self.store.remove(stored)
        audit.record(actor.id, "sow", sow_id, "delete")
        logger.info("sow.deleted", extra={"sow_id": sow_id, "file_count": len(stored), "user_id": actor.id})

    def upload_documents(
        self,
        session: Session,
        actor: Principal,
        sow_id: int,
        files: Sequence[IncomingFile],
    ) -> list[SOWDocumentRead]:
        if not files:
            raise ValidationError("No files uploaded", code="no_files")
        validate_uploads(files)
        if session.get(SOW, sow_id) is None:
            raise NotFoundError("SOW not found", code="sow_not_found")

        with self.store.staging() as staging, unit_of_work(session):
            documents = self._attach(session, staging, sow_id, actor.id, files)
            session.flush()
            result = [SOWDocumentRead.model_validate(document) for document in documents]

        audit.record(actor.id, "sow", sow_id, "documents.upload", after={"count": len(result)})
        logger.info("sow.documents_uploaded", extra={"sow_id": sow_id, "file_count": len(result), "user_id": actor.id})
        return result

    def list_documents(self, session: Session, sow_id: int) -> list[SOWDocumentRead]:
        if session.get(SOW, sow_id) is None:
            raise NotFoundError("SOW not found", code="sow_not_found")
        documents = session.scalars(
            select(SOWDocument).where(SOWDocument.sow_id == sow_id).order_by(SOWDocument.created_at.desc(), SOWDocument.id.desc())
        ).all()
        return [SOWDocumentRead.model_validate(document) for document in documents]

    def _get_document(self, session: Session, sow_id: int, document_id: int) -> SOWDocument:
        document = session.scalar(
            select(SOWDocument).where(SOWDocument.id == document_id, SOWDocument.sow_id == sow_id)
        )
        if document is None:
            raise NotFoundError("Document not found", code="document_not_found")
        return document

    def document_path(self, session: Session, sow_id: int, document_id: int) -> tuple[SOWDocument, Path]:
        document = self._get_document(session, sow_id, document_id)
        return document, self.store.path_for(document.stored_filename)

    def delete_document(self, session: Session, actor: Principal, sow_id: int, document_id: int) -> None:
        document = self._get_document(session, sow_id, document_id)
        stored_filename = document.stored_filename
        with unit_of_work(session):
            session.delete(document)
        self.store.remove([stored_filename])
        audit.record(actor.id, "sow_document", document_id, "delete")
        logger.info("sow.document_deleted", extra={"sow_id": sow_id, "entity_id": document_id, "user_id": actor.id})


rfp_service = RFPService()
sow_service = SOWService()
