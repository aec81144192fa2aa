"""create step catalog, lead timeline and activity log

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "step_definitions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.Column("allowed_roles", sa.JSON(), nullable=False),
        sa.Column("remarks_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attachments_allowed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("customer_upload_allowed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_index"),
    )

    op.create_table(
        "step_required_documents",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("step_definition_id", sa.Uuid(), nullable=False),
        sa.Column("document_category", sa.String(length=64), nullable=False),
        sa.ForeignKeyConstraint(["step_definition_id"], ["step_definitions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("step_definition_id", "document_category", name="uq_step_required_document"),
    )

    op.create_table(
        "lead_steps",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("step_definition_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("completed_by", sa.String(length=128), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("attachments", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["lead_id"], ["leads.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["step_definition_id"], ["step_definitions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lead_id", "step_definition_id", name="uq_lead_step"),
    )
    op.create_index("ix_lead_steps_lead_status", "lead_steps", ["lead_id", "status"], unique=False)

    op.create_table(
        "activity_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=True),
        sa.Column("old_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_activity_log_id"), "activity_log", ["id"], unique=False)
    op.create_index("ix_activity_log_lead_created", "activity_log", ["lead_id", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_activity_log_lead_created", table_name="activity_log")
    op.drop_index(op.f("ix_activity_log_id"), table_name="activity_log")
    op.drop_table("activity_log")
    op.drop_index("ix_lead_steps_lead_status", table_name="lead_steps")
    op.drop_table("lead_steps")
    op.drop_table("step_required_documents")
    op.drop_table("step_definitions")
