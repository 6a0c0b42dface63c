"""create crm tables

Revision ID: 202603010002
Revises: 202603010001
Create Date: 2026-03-01 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202603010002"
down_revision: str | None = "202603010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_client",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("city", sa.Text(), nullable=False),
        sa.Column("state", sa.String(length=8), nullable=False),
        sa.Column("region", sa.String(length=64), nullable=False),
        sa.Column("client_type", sa.String(length=2), nullable=False, server_default="PJ"),
        sa.Column("potential_ha", sa.Float(), nullable=True),
        sa.Column("farm_size_ha", sa.Float(), nullable=True),
        sa.Column("cnpj", sa.String(length=32), nullable=True),
        sa.Column("segment", sa.Text(), nullable=True),
        sa.Column("owner_seller_id", sa.Uuid(), nullable=False),
        sa.Column("name_normalized", sa.Text(), nullable=False, server_default=""),
        sa.Column("city_normalized", sa.Text(), nullable=False, server_default=""),
        sa.Column("cnpj_normalized", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["owner_seller_id"], ["user_account.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_client_owner_seller_id", "crm_client", ["owner_seller_id"], unique=False)
    op.create_index(
        "uq_crm_client_cnpj_normalized",
        "crm_client",
        ["cnpj_normalized"],
        unique=True,
        postgresql_where=sa.text("cnpj_normalized <> ''"),
        sqlite_where=sa.text("cnpj_normalized <> ''"),
    )
    op.create_index(
        "uq_crm_client_name_city_state_without_cnpj",
        "crm_client",
        ["name_normalized", "city_normalized", "state"],
        unique=True,
        postgresql_where=sa.text("cnpj_normalized = ''"),
        sqlite_where=sa.text("cnpj_normalized = ''"),
    )

    op.create_table(
        "crm_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("role", sa.Text(), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("owner_seller_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["crm_client.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["owner_seller_id"], ["user_account.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contact_client_id", "crm_contact", ["client_id"], unique=False)
    op.create_index("ix_crm_contact_owner_seller_id", "crm_contact", ["owner_seller_id"], unique=False)

    op.create_table(
        "crm_opportunity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False),
        sa.Column("probability", sa.Integer(), nullable=True),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("owner_seller_id", sa.Uuid(), nullable=False),
        sa.Column("proposal_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("follow_up_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expected_close_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_contact_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("crop", sa.Text(), nullable=True),
        sa.Column("season", sa.Text(), nullable=True),
        sa.Column("area_ha", sa.Float(), nullable=True),
        sa.Column("product_offered", sa.Text(), nullable=True),
        sa.Column("planting_forecast_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expected_ticket_per_ha", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["crm_client.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["owner_seller_id"], ["user_account.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_opportunity_stage", "crm_opportunity", ["stage"], unique=False)
    op.create_index("ix_crm_opportunity_client_id", "crm_opportunity", ["client_id"], unique=False)
    op.create_index("ix_crm_opportunity_owner_seller_id", "crm_opportunity", ["owner_seller_id"], unique=False)
    op.create_index("ix_crm_opportunity_follow_up_date", "crm_opportunity", ["follow_up_date"], unique=False)

    op.create_table(
        "crm_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("done", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("owner_seller_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["opportunity_id"], ["crm_opportunity.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["owner_seller_id"], ["user_account.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_activity_opportunity_id", "crm_activity", ["opportunity_id"], unique=False)
    op.create_index("ix_crm_activity_owner_seller_id", "crm_activity", ["owner_seller_id"], unique=False)

    op.create_table(
        "crm_goal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("target_value", sa.Float(), nullable=False),
        sa.Column("seller_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["seller_id"], ["user_account.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("seller_id", "month", name="uq_crm_goal_seller_month"),
    )
    op.create_index("ix_crm_goal_seller_id", "crm_goal", ["seller_id"], unique=False)

    op.create_table(
        "crm_timeline_event",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("client_id", sa.Uuid(), nullable=True),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["crm_client.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["opportunity_id"], ["crm_opportunity.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["user_id"], ["user_account.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_timeline_event_client_id", "crm_timeline_event", ["client_id"], unique=False)
    op.create_index("ix_crm_timeline_event_opportunity_id", "crm_timeline_event", ["opportunity_id"], unique=False)
    op.create_index("ix_crm_timeline_event_user_id", "crm_timeline_event", ["user_id"], unique=False)
    op.create_index("ix_crm_timeline_event_created_at", "crm_timeline_event", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_timeline_event_created_at", table_name="crm_timeline_event")
    op.drop_index("ix_crm_timeline_event_user_id", table_name="crm_timeline_event")
    op.drop_index("ix_crm_timeline_event_opportunity_id", table_name="crm_timeline_event")
    op.drop_index("ix_crm_timeline_event_client_id", table_name="crm_timeline_event")
    op.drop_table("crm_timeline_event")
    op.drop_index("ix_crm_goal_seller_id", table_name="crm_goal")
    op.drop_table("crm_goal")
    op.drop_index("ix_crm_activity_owner_seller_id", table_name="crm_activity")
    op.drop_index("ix_crm_activity_opportunity_id", table_name="crm_activity")
    op.drop_table("crm_activity")
    op.drop_index("ix_crm_opportunity_follow_up_date", table_name="crm_opportunity")
    op.drop_index("ix_crm_opportunity_owner_seller_id", table_name="crm_opportunity")
    op.drop_index("ix_crm_opportunity_client_id", table_name="crm_opportunity")
    op.drop_index("ix_crm_opportunity_stage", table_name="crm_opportunity")
    op.drop_table("crm_opportunity")
    op.drop_index("ix_crm_contact_owner_seller_id", table_name="crm_contact")
    op.drop_index("ix_crm_contact_client_id", table_name="crm_contact")
    op.drop_table("crm_contact")
    op.drop_index("uq_crm_client_name_city_state_without_cnpj", table_name="crm_client")
    op.drop_index("uq_crm_client_cnpj_normalized", table_name="crm_client")
    op.drop_index("ix_crm_client_owner_seller_id", table_name="crm_client")
    op.drop_table("crm_client")
