from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import Select, func, inspect, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_api import audit
from crm_api.accounts.models import User
from crm_api.core.auth import Principal
from crm_api.core.database import unit_of_work
from crm_api.core.errors import ConflictError, NotFoundError, ValidationError
from crm_api.core.pagination import PageMeta, paginate
from crm_api.crm.models import RFP, SOW, Client, ClientAddress, ClientContact, Opportunity
from crm_api.crm.schemas import (
    AddressInput,
    ClientCreate,
    ClientListItem,
    ClientRead,
    ClientUpdate,
    ContactInput,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
)
from crm_api.documents import rfp_document_store, sow_document_store


logger = logging.getLogger("crm_api.crm")

APPROVAL_STAGE_RFB = "LEVEL_1_RFB"
APPROVAL_STAGE_SOW = "LEVEL_2_SOW"

NEXT_STEP_FIELDS = ("description", "assignee", "due_date", "status", "created_at", "updated_at")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def row_dict(instance: Any) -> dict[str, Any]:
    return {attr.key: getattr(instance, attr.key) for attr in inspect(instance).mapper.column_attrs}


def assign_primary_address(addresses: list[AddressInput]) -> list[dict[str, Any]]:
    """Return address payloads with exactly one ``is_primary`` flag set.

    The first address flagged primary keeps the flag; with none flagged the
    first address is promoted.
    """
    if not addresses:
        return []
    primary_index = next((index for index, item in enumerate(addresses) if item.is_primary), 0)
    return [
        {**item.model_dump(), "is_primary": index == primary_index}
        for index, item in enumerate(addresses)
    ]


def parse_next_steps(raw: Any, *, stamp: str | None = None) -> list[dict[str, Any]]:
    """Validate incoming next steps and stamp them for storage.

    Stored shape per step: ``description``, ``assignee``, ``due_date`` (ISO
    date or null), ``status`` and ISO-8601 UTC ``created_at``/``updated_at``.
    """
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("next_steps must be an array", code="invalid_next_steps")

    stamp = stamp or utc_timestamp()
    steps: list[dict[str, Any]] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(
                f"next_steps[{index}] must be an object",
                code="invalid_next_steps",
                details={"index": index},
            )
        description = item.get("description")
        if not isinstance(description, str) or not description.strip():
            raise ValidationError(
                f"next_steps[{index}] requires a description",
                code="invalid_next_steps",
                details={"index": index},
            )
        due_date = item.get("due_date")
        if due_date not in (None, ""):
            try:
                due_date = date.fromisoformat(str(due_date)[:10]).isoformat()
            except ValueError as exc:
                raise ValidationError(
                    f"next_steps[{index}].due_date must be an ISO date",
                    code="invalid_next_steps",
                    details={"index": index},
                ) from exc
        else:
            due_date = None
        steps.append(
            {
                "description": description.strip(),
                "assignee": item.get("assignee"),
                "due_date": due_date,
                "status": item.get("status") or "pending",
                "created_at": stamp,
                "updated_at": stamp,
            }
        )
    return steps


def load_next_steps(stored: str | None) -> list[dict[str, Any]]:
    if not stored:
        return []
    try:
        steps = json.loads(stored)
    except json.JSONDecodeError:
        logger.warning("opportunity.next_steps_unreadable", extra={"error": stored[:200]})
        return []
    return steps if isinstance(steps, list) else []


def dump_next_steps(steps: list[dict[str, Any]]) -> str:
    return json.dumps([{key: step.get(key) for key in NEXT_STEP_FIELDS} for step in steps])


def _client_code(client_id: int) -> str:
    return f"CL-{client_id:05d}"


def _ilike(value: str) -> str:
    return f"%{value.strip()}%"


class ClientService:
    def create_client(self, session: Session, actor: Principal, dto: ClientCreate) -> dict[str, Any]:
        try:
            with unit_of_work(session):
                client = Client(**dto.model_dump(exclude={"contacts", "addresses"}))
                session.add(client)
                session.flush()
                client.client_code = _client_code(client.client_id)
                self._insert_children(session, client, dto.contacts, dto.addresses)
                session.flush()
                result = {"client_id": client.client_id, "client_code": client.client_code}
        except IntegrityError as exc:
            raise ConflictError("Client could not be saved", code="client_conflict", details=str(exc.orig)) from exc

        audit.record(actor.id, "client", result["client_id"], "create", after=dto.model_dump(mode="json"))
        logger.info("client.created", extra={"client_id": result["client_id"], "user_id": actor.id})
        return result

    def update_client(self, session: Session, actor: Principal, client_id: int, dto: ClientUpdate) -> ClientRead:
        client = session.get(Client, client_id)
        if client is None:
            raise NotFoundError("Client not found", code="client_not_found")

        before = ClientRead.model_validate(client).model_dump(mode="json")
        try:
            with unit_of_work(session):
                for key, value in dto.model_dump(exclude={"contacts", "addresses"}).items():
                    if key == "user_id" and value is None:
                        continue
                    setattr(client, key, value)
                client.contacts.clear()
                client.addresses.clear()
                session.flush()
                self._insert_children(session, client, dto.contacts, dto.addresses)
                session.flush()
        except IntegrityError as exc:
            raise ConflictError("Client could not be saved", code="client_conflict", details=str(exc.orig)) from exc

        audit.record(actor.id, "client", client_id, "update", before=before, after=dto.model_dump(mode="json"))
        logger.info("client.updated", extra={"client_id": client_id, "user_id": actor.id})
        return self.get_client(session, client_id)

    def _insert_children(
        self,
        session: Session,
        client: Client,
        contacts: list[ContactInput],
        addresses: list[AddressInput],
    ) -> None:
        if contacts:
            session.add_all(ClientContact(client_id=client.client_id, **item.model_dump()) for item in contacts)
        if addresses:
            session.add_all(
                ClientAddress(client_id=client.client_id, **payload) for payload in assign_primary_address(addresses)
            )

    def get_client(self, session: Session, client_id: int) -> ClientRead:
        row = session.execute(
            select(Client, User.full_name)
            .outerjoin(User, User.id == Client.user_id)
            .where(Client.client_id == client_id)
        ).first()
        if row is None:
            raise NotFoundError("Client not found", code="client_not_found")
        client, owner_name = row

        contacts = session.scalars(
            select(ClientContact).where(ClientContact.client_id == client_id).order_by(ClientContact.contact_id)
        ).all()
        addresses = session.scalars(
            select(ClientAddress)
            .where(ClientAddress.client_id == client_id)
            .order_by(ClientAddress.is_primary.desc(), ClientAddress.address_id.asc())
        ).all()
        return ClientRead.model_validate(
            {**row_dict(client), "account_owner": owner_name, "contacts": contacts, "addresses": addresses}
        )

    def list_clients(
        self,
        session: Session,
        *,
        page: int,
        limit: int,
        status: str | None = None,
        industry: str | None = None,
        search: str | None = None,
    ) -> tuple[list[ClientListItem], PageMeta]:
        contact_count = (
            select(func.count(ClientContact.contact_id))
            .where(ClientContact.client_id == Client.client_id)
            .correlate(Client)
            .scalar_subquery()
        )
        stmt: Select[Any] = select(Client, User.full_name, contact_count.label("contact_count")).outerjoin(
            User, User.id == Client.user_id
        )
        if status:
            stmt = stmt.where(Client.status == status)
        if industry:
            stmt = stmt.where(Client.industry.ilike(_ilike(industry)))
        if search:
            pattern = _ilike(search)
            stmt = stmt.where(or_(Client.client_name.ilike(pattern), Client.email.ilike(pattern)))

        rows, meta = paginate(
            session,
            stmt.order_by(Client.created_at.desc(), Client.client_id.desc()),
            page=page,
            limit=limit,
        )
        items = [
            ClientListItem.model_validate(
                {**row_dict(client), "account_owner": owner_name, "contact_count": count or 0}
            )
            for client, owner_name, count in rows
        ]
        return items, meta

    def delete_client(self, session: Session, actor: Principal, client_id: int) -> None:
        client = session.get(Client, client_id)
        if client is None:
            raise NotFoundError("Client not found", code="client_not_found")
        with unit_of_work(session):
            session.delete(client)
        audit.record(actor.id, "client", client_id, "delete")
        logger.info("client.deleted", extra={"client_id": client_id, "user_id": actor.id})


class OpportunityService:
    def create_opportunity(self, session: Session, actor: Principal, dto: OpportunityCreate) -> OpportunityRead:
        steps = parse_next_steps(dto.next_steps)
        payload = dto.model_dump(exclude={"next_steps"})
        payload["user_id"] = payload["user_id"] or actor.id

        try:
            with unit_of_work(session):
                opportunity = Opportunity(
                    **payload,
                    approval_stage=APPROVAL_STAGE_RFB,
                    next_steps=dump_next_steps(steps),
                )
                session.add(opportunity)
                session.flush()
                opportunity_id = opportunity.id
        except IntegrityError as exc:
            raise ConflictError(
                "Opportunity could not be saved", code="opportunity_conflict", details=str(exc.orig)
            ) from exc

        audit.record(actor.id, "opportunity", opportunity_id, "create", after=dto.model_dump(mode="json"))
        logger.info("opportunity.created", extra={"opportunity_id": opportunity_id, "user_id": actor.id})
        return self.get_opportunity(session, opportunity_id)

    def update_opportunity(
        self,
        session: Session,
        actor: Principal,
        opportunity_id: int,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        new_steps = parse_next_steps(dto.next_steps)
        opportunity = session.get(Opportunity, opportunity_id)
        if opportunity is None:
            raise NotFoundError("Opportunity not found", code="opportunity_not_found")

        changes = {key: value for key, value in dto.model_dump(exclude={"next_steps"}).items() if value is not None}
        try:
            with unit_of_work(session):
                for key, value in changes.items():
                    setattr(opportunity, key, value)
                if new_steps:
                    opportunity.next_steps = dump_next_steps(load_next_steps(opportunity.next_steps) + new_steps)
                session.flush()
        except IntegrityError as exc:
            raise ConflictError(
                "Opportunity could not be saved", code="opportunity_conflict", details=str(exc.orig)
            ) from exc

        audit.record(
            actor.id,
            "opportunity",
            opportunity_id,
            "update",
            after={**{key: str(value) for key, value in changes.items()}, "next_steps_added": len(new_steps)},
        )
        logger.info("opportunity.updated", extra={"opportunity_id": opportunity_id, "user_id": actor.id})
        return self.get_opportunity(session, opportunity_id)

    def get_opportunity(self, session: Session, opportunity_id: int) -> OpportunityRead:
        opportunity = session.get(Opportunity, opportunity_id)
        if opportunity is None:
            raise NotFoundError("Opportunity not found", code="opportunity_not_found")
        return OpportunityRead.model_validate(opportunity)

    def list_opportunities(
        self,
        session: Session,
        *,
        page: int,
        limit: int,
        pipeline_status: str | None = None,
        approval_stage: str | None = None,
        user_id: int | None = None,
        search: str | None = None,
    ) -> tuple[list[OpportunityRead], PageMeta]:
        stmt: Select[Any] = select(Opportunity)
        if pipeline_status:
            stmt = stmt.where(Opportunity.pipeline_status == pipeline_status)
        if approval_stage:
            stmt = stmt.where(Opportunity.approval_stage == approval_stage)
        if user_id is not None:
            stmt = stmt.where(Opportunity.user_id == user_id)
        if search:
            pattern = _ilike(search)
            stmt = stmt.where(
                or_(Opportunity.opportunity_name.ilike(pattern), Opportunity.client_name.ilike(pattern))
            )

        rows, meta = paginate(
            session,
            stmt.order_by(Opportunity.created_at.desc(), Opportunity.id.desc()),
            page=page,
            limit=limit,
        )
        return [OpportunityRead.model_validate(row[0]) for row in rows], meta

    def list_by_user(self, session: Session, user_id: int) -> list[OpportunityRead]:
        rows = session.scalars(
            select(Opportunity)
            .where(Opportunity.user_id == user_id)
            .order_by(Opportunity.created_at.desc(), Opportunity.id.desc())
        ).all()
        return [OpportunityRead.model_validate(row) for row in rows]

    def list_by_pipeline_status(self, session: Session, pipeline_status: str) -> list[OpportunityRead]:
        rows = session.scalars(
            select(Opportunity)
            .where(Opportunity.pipeline_status == pipeline_status)
            .order_by(Opportunity.created_at.desc(), Opportunity.id.desc())
        ).all()
        return [OpportunityRead.model_validate(row) for row in rows]

    def delete_opportunity(self, session: Session, actor: Principal, opportunity_id: int) -> None:
        opportunity = session.get(Opportunity, opportunity_id)
        if opportunity is None:
            raise NotFoundError("Opportunity not found", code="opportunity_not_found")

        rfps = session.scalars(select(RFP).where(RFP.opportunity_id == opportunity_id)).all()
        sows = session.scalars(
            select(SOW).where(or_(SOW.opportunity_id == opportunity_id, SOW.rfp_id.in_([rfp.id for rfp in rfps])))
        ).all()
        rfp_files = [document.stored_filename for rfp in rfps for document in rfp.documents]
        sow_files = [document.stored_filename for sow in sows for document in sow.documents]

        with unit_of_work(session):
            for sow in sows:
                session.delete(sow)
            for rfp in rfps:
                session.delete(rfp)
            session.flush()
            session.delete(opportunity)

        rfp_document_store.remove(rfp_files)
        sow_document_store.remove(sow_files)
        audit.record(actor.id, "opportunity", opportunity_id, "delete")
        logger.info("opportunity.deleted", extra={"opportunity_id": opportunity_id, "user_id": actor.id})


client_service = ClientService()
opportunity_service = OpportunityService()
