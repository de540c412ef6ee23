"""Create context_bundle_pins

Revision ID: b2d4f6a8c0e1
Revises: a1c2e3f4b5d6
Create Date: 2026-10-19

Pins are keyed by (ticket_pk, artifact_id, role). A NULL role pins the
artifact for every role; NULLs never collide in the unique constraint, so the
service checks for an existing all-roles pin before inserting.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "b2d4f6a8c0e1"
down_revision = "a1c2e3f4b5d6"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "context_bundle_pins",
        sa.Column("pin_id", sa.String(length=36), primary_key=True),
        sa.Column("ticket_pk", sa.String(length=64), sa.ForeignKey("tickets.pk"), nullable=False),
        sa.Column(
            "artifact_id",
            sa.String(length=64),
            sa.ForeignKey("agent_artifacts.artifact_id"),
            nullable=False,
        ),
        sa.Column("role", sa.String(length=64), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=False, server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "ticket_pk",
            "artifact_id",
            "role",
            name="uq_context_bundle_pins_ticket_artifact_role",
        ),
    )
    op.create_index("ix_context_bundle_pins_ticket", "context_bundle_pins", ["ticket_pk"])


def downgrade() -> None:
    op.drop_index("ix_context_bundle_pins_ticket", table_name="context_bundle_pins")
    op.drop_table("context_bundle_pins")
