from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


ClientStatus = Literal["active", "inactive", "pending"]
SortOrder = Literal["asc", "desc"]


class ContactInput(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=50)
    designation: str | None = Field(default=None, max_length=100)


class AddressInput(BaseModel):
    address_line1: str = Field(min_length=1, max_length=255)
    address_line2: str | None = Field(default=None, max_length=255)
    city: str | None = Field(default=None, max_length=100)
    region_state: str | None = Field(default=None, max_length=100)
    country: str = Field(min_length=1, max_length=100)
    postal_code: str | None = Field(default=None, max_length=20)
    is_primary: bool = False


class ClientCreate(BaseModel):
    client_name: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    website: str | None = Field(default=None, max_length=255)
    industry: str | None = Field(default=None, max_length=100)
    customer_type: str | None = Field(default=None, max_length=50)
    tax_id: str | None = Field(default=None, max_length=50)
    status: ClientStatus = "active"
    notes: str | None = None
    user_id: int
    contacts: list[ContactInput] = Field(default_factory=list)
    addresses: list[AddressInput] = Field(default_factory=list)


class ClientUpdate(ClientCreate):
    user_id: int | None = None


class ClientImportRequest(BaseModel):
    clients: list[dict[str, Any]] = Field(min_length=1)


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    contact_id: int
    name: str
    email: str | None
    phone: str | None
    designation: str | None


class AddressRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    address_id: int
    address_line1: str
    address_line2: str | None
    city: str | None
    region_state: str | None
    country: str
    postal_code: str | None
    is_primary: bool


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    client_id: int
    client_code: str | None
    client_name: str
    email: str | None
    website: str | None
    industry: str | None
    customer_type: str | None
    tax_id: str | None
    status: str
    notes: str | None
    user_id: int | None
    account_owner: str | None = None
    created_at: datetime
    updated_at: datetime
    contacts: list[ContactRead] = Field(default_factory=list)
    addresses: list[AddressRead] = Field(default_factory=list)


class ClientListItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    client_id: int
    client_code: str | None
    client_name: str
    email: str | None
    industry: str | None
    customer_type: str | None
    status: str
    user_id: int | None
    account_owner: str | None = None
    contact_count: int = 0
    created_at: datetime


class NextStep(BaseModel):
    description: str
    assignee: str | None = None
    due_date: date | None = None
    status: str = "pending"
    created_at: datetime
    updated_at: datetime


class OpportunityCreate(BaseModel):
    opportunity_name: str = Field(min_length=1, max_length=255)
    client_name: str = Field(min_length=1, max_length=255)
    close_date: date
    amount_currency: str = Field(default="USD", min_length=3, max_length=3)
    amount: Decimal = Field(ge=0, max_digits=15, decimal_places=2)
    opportunity_type: str | None = Field(default=None, max_length=100)
    lead_source: str | None = Field(default=None, max_length=100)
    triaged_status: str | None = Field(default=None, max_length=50)
    pipeline_status: str | None = Field(default=None, max_length=50)
    win_probability: int | None = Field(default=None, ge=0, le=100)
    user_id: int | None = None
    role_id: int | None = None
    start_date: date | None = None
    sales_owner: str | None = Field(default=None, max_length=100)
    technical_poc: str | None = Field(default=None, max_length=100)
    presales_poc: str | None = Field(default=None, max_length=100)
    # Validated by parse_next_steps.
    next_steps: Any = None


class OpportunityUpdate(BaseModel):
    opportunity_name: str | None = Field(default=None, min_length=1, max_length=255)
    client_name: str | None = Field(default=None, min_length=1, max_length=255)
    close_date: date | None = None
    amount_currency: str | None = Field(default=None, min_length=3, max_length=3)
    amount: Decimal | None = Field(default=None, ge=0, max_digits=15, decimal_places=2)
    opportunity_type: str | None = Field(default=None, max_length=100)
    lead_source: str | None = Field(default=None, max_length=100)
    triaged_status: str | None = Field(default=None, max_length=50)
    pipeline_status: str | None = Field(default=None, max_length=50)
    win_probability: int | None = Field(default=None, ge=0, le=100)
    approval_stage: str | None = Field(default=None, max_length=32)
    user_id: int | None = None
    role_id: int | None = None
    start_date: date | None = None
    sales_owner: str | None = Field(default=None, max_length=100)
    technical_poc: str | None = Field(default=None, max_length=100)
    presales_poc: str | None = Field(default=None, max_length=100)
    next_steps: Any = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    opportunity_name: str
    client_name: str
    close_date: date
    amount_currency: str
    amount: Decimal
    opportunity_type: str | None
    lead_source: str | None
    triaged_status: str | None
    pipeline_status: str | None
    win_probability: int | None
    approval_stage: str
    user_id: int | None
    role_id: int | None
    start_date: date | None
    sales_owner: str | None
    technical_poc: str | None
    presales_poc: str | None
    next_steps: list[NextStep] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @field_validator("next_steps", mode="before")
    @classmethod
    def _decode_next_steps(cls, value: Any) -> Any:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return json.loads(value)
        return value


class RFPCreate(BaseModel):
    title: str = ""
    rfp_type: str = "RFP"
    rfp_status: str = "Draft"
    rfp_description: str | None = None
    solution_description: str | None = None
    submission_deadline: datetime | None = None
    bid_manager: str | None = None
    submission_mode: str | None = None
    portal_url: str | None = None
    question_submission_date: datetime | None = None
    response_submission_date: datetime | None = None
    comments: str | None = None
    opportunity_id: int


class RFPUpdate(BaseModel):
    title: str | None = None
    rfp_type: str | None = None
    rfp_status: str | None = None
    rfp_description: str | None = None
    solution_description: str | None = None
    submission_deadline: datetime | None = None
    bid_manager: str | None = None
    submission_mode: str | None = None
    portal_url: str | None = None
    question_submission_date: datetime | None = None
    response_submission_date: datetime | None = None
    comments: str | None = None


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    original_filename: str
    stored_filename: str
    mime_type: str
    size: int
    document_type: str
    created_at: datetime


class SOWDocumentRead(DocumentRead):
    sow_id: int
    uploaded_by: int | None


class RFPRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    rfp_type: str
    rfp_status: str
    rfp_description: str | None
    solution_description: str | None
    submission_deadline: datetime | None
    bid_manager: str | None
    submission_mode: str | None
    portal_url: str | None
    question_submission_date: datetime | None
    response_submission_date: datetime | None
    comments: str | None
    created_by: int | None
    opportunity_id: int
    opportunity_name: str | None = None
    created_by_name: str | None = None
    created_at: datetime
    updated_at: datetime
    documents: dict[str, list[DocumentRead]] = Field(default_factory=dict)


class RFPListItem(BaseModel):
    id: int
    title: str
    rfp_status: str
    submission_deadline: datetime | None
    opportunity_id: int
    opportunity_name: str
    created_at: datetime
    files: list[DocumentRead] = Field(default_factory=list)


class SOWCreate(BaseModel):
    sow_title: str = Field(min_length=1)
    opportunity_id: int
    rfp_id: int
    user_id: int | None = None
    release_version: str | None = None
    contract_currency: str = Field(default="USD", min_length=3, max_length=3)
    contract_value: Decimal = Field(default=Decimal("0"), ge=0)
    target_kickoff_date: date | None = None
    linked_proposal_reference: str | None = None
    scope_overview: str | None = None


class SOWRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sow_title: str
    opportunity_id: int
    rfp_id: int
    user_id: int
    release_version: str | None
    contract_currency: str
    contract_value: Decimal
    target_kickoff_date: date | None
    linked_proposal_reference: str | None
    scope_overview: str | None
    opportunity_name: str | None = None
    rfp_title: str | None = None
    created_by_name: str | None = None
    created_at: datetime
    updated_at: datetime
    documents: dict[str, list[SOWDocumentRead]] = Field(default_factory=dict)


class ImportRowError(BaseModel):
    index: int
    row: int
    error: str
    data: dict[str, Any]


class ImportResult(BaseModel):
    total: int
    success: int
    failed: int
    status: Literal["succeeded", "partially_succeeded", "failed"]
    errors: list[ImportRowError] = Field(default_factory=list)
