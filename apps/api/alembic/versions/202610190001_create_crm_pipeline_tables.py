"""create crm pipeline, stage, deal and activity tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_pipeline",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(length=7), nullable=False, server_default="#3B82F6"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "crm_pipeline_stage",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("color", sa.String(length=7), nullable=False, server_default="#6B7280"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("win_probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_won_stage", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_lost_stage", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_pipeline.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("win_probability BETWEEN 0 AND 100", name="ck_crm_pipeline_stage_win_probability"),
    )
    op.create_index("ix_crm_pipeline_stage_pipeline_id", "crm_pipeline_stage", ["pipeline_id"], unique=False)

    op.create_table(
        "crm_deal",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("pipeline_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("stage_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("client_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("contact_person", sa.String(length=255), nullable=True),
        sa.Column("contact_email", sa.String(length=255), nullable=True),
        sa.Column("contact_phone", sa.String(length=50), nullable=True),
        sa.Column("value", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="PLN"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("actual_close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_to", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("lost_reason", sa.Text(), nullable=True),
        sa.Column("won_invoice_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_pipeline.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_pipeline_stage.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("status IN ('open', 'won', 'lost')", name="ck_crm_deal_status"),
        sa.CheckConstraint("priority IN ('low', 'medium', 'high', 'critical')", name="ck_crm_deal_priority"),
        sa.CheckConstraint("value >= 0", name="ck_crm_deal_value_non_negative"),
    )
    op.create_index("ix_crm_deal_pipeline_id", "crm_deal", ["pipeline_id"], unique=False)
    op.create_index("ix_crm_deal_stage_position", "crm_deal", ["stage_id", "position"], unique=False)
    op.create_index("ix_crm_deal_client_id", "crm_deal", ["client_id"], unique=False)

    op.create_table(
        "crm_deal_activity",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("deal_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_activity_deal_id", "crm_deal_activity", ["deal_id"], unique=False)
    op.create_index("ix_crm_deal_activity_scheduled_at", "crm_deal_activity", ["scheduled_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_deal_activity_scheduled_at", table_name="crm_deal_activity")
    op.drop_index("ix_crm_deal_activity_deal_id", table_name="crm_deal_activity")
    op.drop_table("crm_deal_activity")
    op.drop_index("ix_crm_deal_client_id", table_name="crm_deal")
    op.drop_index("ix_crm_deal_stage_position", table_name="crm_deal")
    op.drop_index("ix_crm_deal_pipeline_id", table_name="crm_deal")
    op.drop_table("crm_deal")
    op.drop_index("ix_crm_pipeline_stage_pipeline_id", table_name="crm_pipeline_stage")
    op.drop_table("crm_pipeline_stage")
    op.drop_table("crm_pipeline")
