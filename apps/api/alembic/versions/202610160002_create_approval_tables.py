"""create approval workflow tables

Revision ID: 202610160002
Revises: 202610160001
Create Date: 2026-10-16 09:30:00
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610160002"
down_revision: str | None = "202610160001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "approval_workflow",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["created_by"], ["auth_user.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_approval_workflow_entity_type", "approval_workflow", ["entity_type", "is_active"], unique=False)

    op.create_table(
        "approval_workflow_step",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("approver_id", sa.Uuid(), nullable=False),
        sa.Column("requires_all", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["workflow_id"], ["approval_workflow.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["approver_id"], ["auth_user.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workflow_id", "step_order", name="uq_approval_workflow_step_order"),
    )

    op.create_table(
        "approval_workflow_step_approver",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("step_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["step_id"], ["approval_workflow_step.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["auth_user.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("step_id", "user_id", name="uq_approval_workflow_step_approver"),
    )

    op.create_table(
        "approval_request",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("requester_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("request_data", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("current_step_id", sa.Uuid(), nullable=True),
        sa.Column("current_step_approvals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["workflow_id"], ["approval_workflow.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["requester_id"], ["auth_user.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["current_step_id"], ["approval_workflow_step.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'cancelled')",
            name="ck_approval_request_status",
        ),
    )
    op.create_index(
        "ix_approval_request_requester_created",
        "approval_request",
        ["requester_id", "created_at"],
        unique=False,
    )
    op.create_index("ix_approval_request_status_step", "approval_request", ["status", "current_step_id"], unique=False)

    op.create_table(
        "approval_action",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("request_id", sa.Uuid(), nullable=False),
        sa.Column("step_id", sa.Uuid(), nullable=False),
        sa.Column("approver_id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["request_id"], ["approval_request.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["step_id"], ["approval_workflow_step.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["approver_id"], ["auth_user.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_id", "step_id", "approver_id", name="uq_approval_action_decision"),
        sa.CheckConstraint("action IN ('approved', 'rejected')", name="ck_approval_action_action"),
    )


def downgrade() -> None:
    op.drop_table("approval_action")
    op.drop_index("ix_approval_request_status_step", table_name="approval_request")
    op.drop_index("ix_approval_request_requester_created", table_name="approval_request")
    op.drop_table("approval_request")
    op.drop_table("approval_workflow_step_approver")
    op.drop_table("approval_workflow_step")
    op.drop_index("ix_approval_workflow_entity_type", table_name="approval_workflow")
    op.drop_table("approval_workflow")
