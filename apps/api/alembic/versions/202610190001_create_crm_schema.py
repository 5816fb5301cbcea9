"""create crm schema

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence
from datetime import datetime, timezone

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "countries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("code", sa.String(length=8), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "regions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("country_id", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["country_id"], ["countries.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_index("ix_regions_country_id", "regions", ["country_id"], unique=False)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("full_name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "user_roles",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("role_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "role_id"),
    )

    op.create_table(
        "user_regions",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("region_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["region_id"], ["regions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "region_id"),
    )

    op.create_table(
        "clients",
        sa.Column("client_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("client_code", sa.String(length=32), nullable=True),
        sa.Column("client_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("website", sa.String(length=255), nullable=True),
        sa.Column("industry", sa.String(length=100), nullable=True),
        sa.Column("customer_type", sa.String(length=50), nullable=True),
        sa.Column("tax_id", sa.String(length=50), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("client_id"),
        sa.UniqueConstraint("client_code"),
    )
    op.create_index("ix_clients_user_id", "clients", ["user_id"], unique=False)

    op.create_table(
        "client_contacts",
        sa.Column("contact_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("client_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("designation", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["clients.client_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("contact_id"),
    )
    op.create_index("ix_client_contacts_client_id", "client_contacts", ["client_id"], unique=False)

    op.create_table(
        "client_addresses",
        sa.Column("address_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("client_id", sa.Integer(), nullable=False),
        sa.Column("address_line1", sa.String(length=255), nullable=False),
        sa.Column("address_line2", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("region_state", sa.String(length=100), nullable=True),
        sa.Column("country", sa.String(length=100), nullable=False),
        sa.Column("postal_code", sa.String(length=20), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["clients.client_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("address_id"),
    )
    op.create_index("ix_client_addresses_client_id", "client_addresses", ["client_id"], unique=False)
    op.create_index(
        "uq_client_addresses_primary",
        "client_addresses",
        ["client_id"],
        unique=True,
        postgresql_where=sa.text("is_primary"),
        sqlite_where=sa.text("is_primary"),
    )

    op.create_table(
        "opportunities",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("opportunity_name", sa.String(length=255), nullable=False),
        sa.Column("client_name", sa.String(length=255), nullable=False),
        sa.Column("close_date", sa.Date(), nullable=False),
        sa.Column("amount_currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("opportunity_type", sa.String(length=100), nullable=True),
        sa.Column("lead_source", sa.String(length=100), nullable=True),
        sa.Column("triaged_status", sa.String(length=50), nullable=True),
        sa.Column("pipeline_status", sa.String(length=50), nullable=True),
        sa.Column("win_probability", sa.Integer(), nullable=True),
        sa.Column("approval_stage", sa.String(length=32), nullable=False, server_default="LEVEL_1_RFB"),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("role_id", sa.Integer(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("sales_owner", sa.String(length=100), nullable=True),
        sa.Column("technical_poc", sa.String(length=100), nullable=True),
        sa.Column("presales_poc", sa.String(length=100), nullable=True),
        sa.Column("next_steps", sa.Text(), nullable=False, server_default="[]"),
        *_timestamps(),
        sa.CheckConstraint("win_probability BETWEEN 0 AND 100", name="ck_opportunities_win_probability"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_opportunities_pipeline_status", "opportunities", ["pipeline_status"], unique=False)
    op.create_index("ix_opportunities_user_id", "opportunities", ["user_id"], unique=False)
    op.create_index("ix_opportunities_presales_poc", "opportunities", ["presales_poc"], unique=False)

    op.create_table(
        "rfps",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("rfp_type", sa.String(length=32), nullable=False, server_default="RFP"),
        sa.Column("rfp_status", sa.String(length=32), nullable=False, server_default="Draft"),
        sa.Column("rfp_description", sa.Text(), nullable=True),
        sa.Column("solution_description", sa.Text(), nullable=True),
        sa.Column("submission_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("bid_manager", sa.String(length=100), nullable=True),
        sa.Column("submission_mode", sa.String(length=50), nullable=True),
        sa.Column("portal_url", sa.String(length=500), nullable=True),
        sa.Column("question_submission_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_submission_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("opportunity_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["opportunity_id"], ["opportunities.id"], ondelete="CASCADE", name="rfps_opportunity_id_fkey"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rfps_opportunity_id", "rfps", ["opportunity_id"], unique=False)

    op.create_table(
        "rfp_documents",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("rfp_id", sa.Integer(), nullable=False),
        sa.Column("original_filename", sa.String(length=255), nullable=False),
        sa.Column("stored_filename", sa.String(length=255), nullable=False),
        sa.Column("mime_type", sa.String(length=100), nullable=False),
        sa.Column("size", sa.BigInteger(), nullable=False),
        sa.Column("document_type", sa.String(length=32), nullable=False, server_default="other"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["rfp_id"], ["rfps.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stored_filename"),
    )
    op.create_index("ix_rfp_documents_rfp_id", "rfp_documents", ["rfp_id"], unique=False)

    op.create_table(
        "sows",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("sow_title", sa.String(length=255), nullable=False),
        sa.Column("opportunity_id", sa.Integer(), nullable=False),
        sa.Column("rfp_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("release_version", sa.String(length=50), nullable=True),
        sa.Column("contract_currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("contract_value", sa.Numeric(15, 2), nullable=False, server_default="0"),
        sa.Column("target_kickoff_date", sa.Date(), nullable=True),
        sa.Column("linked_proposal_reference", sa.String(length=255), nullable=True),
        sa.Column("scope_overview", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["opportunity_id"], ["opportunities.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["rfp_id"], ["rfps.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sows_opportunity_id", "sows", ["opportunity_id"], unique=False)
    op.create_index("ix_sows_rfp_id", "sows", ["rfp_id"], unique=False)
    op.create_index("ix_sows_user_id", "sows", ["user_id"], unique=False)

    op.create_table(
        "sow_documents",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("sow_id", sa.Integer(), nullable=False),
        sa.Column("original_filename", sa.String(length=255), nullable=False),
        sa.Column("stored_filename", sa.String(length=255), nullable=False),
        sa.Column("mime_type", sa.String(length=100), nullable=False),
        sa.Column("size", sa.BigInteger(), nullable=False),
        sa.Column("document_type", sa.String(length=32), nullable=False, server_default="other"),
        sa.Column("uploaded_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["sow_id"], ["sows.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["uploaded_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stored_filename"),
    )
    op.create_index("ix_sow_documents_sow_id", "sow_documents", ["sow_id"], unique=False)

    now = datetime.now(timezone.utc)
    role_table = sa.table(
        "roles",
        sa.column("name", sa.String()),
        sa.column("description", sa.Text()),
        sa.column("created_at", sa.DateTime(timezone=True)),
    )
    op.bulk_insert(
        role_table,
        [
            {"name": "Presales Member", "description": "Works clients and opportunities", "created_at": now},
            {"name": "Presales Lead", "description": "Manages clients, reads opportunities", "created_at": now},
            {"name": "Sales Head", "description": "Manages clients", "created_at": now},
            {"name": "Admin", "description": "Full access", "created_at": now},
            {"name": "User", "description": "Authenticated user without module access", "created_at": now},
        ],
    )


def downgrade() -> None:
    op.drop_index("ix_sow_documents_sow_id", table_name="sow_documents")
    op.drop_table("sow_documents")
    op.drop_index("ix_sows_user_id", table_name="sows")
    op.drop_index("ix_sows_rfp_id", table_name="sows")
    op.drop_index("ix_sows_opportunity_id", table_name="sows")
    op.drop_table("sows")
    op.drop_index("ix_rfp_documents_rfp_id", table_name="rfp_documents")
    op.drop_table("rfp_documents")
    op.drop_index("ix_rfps_opportunity_id", table_name="rfps")
    op.drop_table("rfps")
    op.drop_index("ix_opportunities_presales_poc", table_name="opportunities")
    op.drop_index("ix_opportunities_user_id", table_name="opportunities")
    op.drop_index("ix_opportunities_pipeline_status", table_name="opportunities")
    op.drop_table("opportunities")
    op.drop_index("uq_client_addresses_primary", table_name="client_addresses")
    op.drop_index("ix_client_addresses_client_id", table_name="client_addresses")
    op.drop_table("client_addresses")
    op.drop_index("ix_client_contacts_client_id", table_name="client_contacts")
    op.drop_table("client_contacts")
    op.drop_index("ix_clients_user_id", table_name="clients")
    op.drop_table("clients")
    op.drop_table("user_regions")
    op.drop_table("user_roles")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.drop_index("ix_regions_country_id", table_name="regions")
    op.drop_table("regions")
    op.drop_table("countries")
    op.drop_table("roles")
