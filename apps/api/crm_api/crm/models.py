from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crm_api.core.database import Base, utcnow


class Client(Base):
    __tablename__ = "clients"

    client_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_code: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True)
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    website: Mapped[str | None] = mapped_column(String(255), nullable=True)
    industry: Mapped[str | None] = mapped_column(String(100), nullable=True)
    customer_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    tax_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    contacts: Mapped[list[ClientContact]] = relationship(
        "ClientContact",
        back_populates="client",
        cascade="all, delete-orphan",
        order_by="ClientContact.contact_id",
    )
    addresses: Mapped[list[ClientAddress]] = relationship(
        "ClientAddress",
        back_populates="client",
        cascade="all, delete-orphan",
        order_by="ClientAddress.address_id",
    )


class ClientContact(Base):
    __tablename__ = "client_contacts"

    contact_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("clients.client_id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    designation: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    client: Mapped[Client] = relationship("Client", back_populates="contacts")


class ClientAddress(Base):
    __tablename__ = "client_addresses"
    __table_args__ = (
        Index(
            "uq_client_addresses_primary",
            "client_id",
            unique=True,
            postgresql_where=text("is_primary"),
            sqlite_where=text("is_primary"),
        ),
    )

    address_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("clients.client_id", ondelete="CASCADE"), nullable=False, index=True)
    address_line1: Mapped[str] = mapped_column(String(255), nullable=False)
    address_line2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    region_state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str] = mapped_column(String(100), nullable=False)
    postal_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    client: Mapped[Client] = relationship("Client", back_populates="addresses")


class Opportunity(Base):
    __tablename__ = "opportunities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    opportunity_name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    close_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD", server_default="USD")
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    opportunity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    lead_source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    triaged_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pipeline_status: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    win_probability: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approval_stage: Mapped[str] = mapped_column(String(32), nullable=False, default="LEVEL_1_RFB", server_default="LEVEL_1_RFB")
    user_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    role_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    sales_owner: Mapped[str | None] = mapped_column(String(100), nullable=True)
    technical_poc: Mapped[str | None] = mapped_column(String(100), nullable=True)
    presales_poc: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    next_steps: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class RFP(Base):
    __tablename__ = "rfps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    rfp_type: Mapped[str] = mapped_column(String(32), nullable=False, default="RFP")
    rfp_status: Mapped[str] = mapped_column(String(32), nullable=False, default="Draft")
    rfp_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    solution_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    submission_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    bid_manager: Mapped[str | None] = mapped_column(String(100), nullable=True)
    submission_mode: Mapped[str | None] = mapped_column(String(50), nullable=True)
    portal_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    question_submission_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    response_submission_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    opportunity_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("opportunities.id", ondelete="CASCADE", name="rfps_opportunity_id_fkey"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    documents: Mapped[list[RFPDocument]] = relationship(
        "RFPDocument",
        back_populates="rfp",
        cascade="all, delete-orphan",
        order_by="RFPDocument.id",
    )


class RFPDocument(Base):
    __tablename__ = "rfp_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rfp_id: Mapped[int] = mapped_column(Integer, ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False, index=True)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    stored_filename: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    document_type: Mapped[str] = mapped_column(String(32), nullable=False, default="other")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    rfp: Mapped[RFP] = relationship("RFP", back_populates="documents")


class SOW(Base):
    __tablename__ = "sows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sow_title: Mapped[str] = mapped_column(String(255), nullable=False)
    opportunity_id: Mapped[int] = mapped_column(Integer, ForeignKey("opportunities.id", ondelete="CASCADE"), nullable=False, index=True)
    rfp_id: Mapped[int] = mapped_column(Integer, ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    release_version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    contract_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    contract_value: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    target_kickoff_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    linked_proposal_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    scope_overview: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    documents: Mapped[list[SOWDocument]] = relationship(
        "SOWDocument",
        back_populates="sow",
        cascade="all, delete-orphan",
        order_by="SOWDocument.id",
    )


class SOWDocument(Base):
    __tablename__ = "sow_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sow_id: Mapped[int] = mapped_column(Integer, ForeignKey("sows.id", ondelete="CASCADE"), nullable=False, index=True)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    stored_filename: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    document_type: Mapped[str] = mapped_column(String(32), nullable=False, default="other")
    uploaded_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    sow: Mapped[SOW] = relationship("SOW", back_populates="documents")
