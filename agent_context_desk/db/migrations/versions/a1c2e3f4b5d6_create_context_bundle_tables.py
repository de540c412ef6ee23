"""Create context bundle, receipt, audit and collaborator tables

Revision ID: a1c2e3f4b5d6
Revises:
Create Date: 2026-10-19

context_bundles and bundle_receipts are append-only. On PostgreSQL a trigger
rejects UPDATEs on both tables in addition to the ORM-level guard.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "a1c2e3f4b5d6"
down_revision = None
branch_labels = None
depends_on = None


IMMUTABLE_TABLES = ("context_bundles", "bundle_receipts")


def upgrade() -> None:
    # Collaborator tables
    op.create_table(
        "tickets",
        sa.Column("pk", sa.String(length=64), primary_key=True),
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("display_id", sa.String(length=64), nullable=True),
        sa.Column("repo_full_name", sa.String(length=256), nullable=False),
        sa.Column("title", sa.String(length=512), nullable=False, server_default=""),
        sa.Column("body_md", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_tickets_repo_full_name", "tickets", ["repo_full_name"])
    op.create_index("ix_tickets_repo_id", "tickets", ["repo_full_name", "id"])

    op.create_table(
        "agent_artifacts",
        sa.Column("artifact_id", sa.String(length=64), primary_key=True),
        sa.Column("ticket_pk", sa.String(length=64), sa.ForeignKey("tickets.pk"), nullable=False),
        sa.Column("repo_full_name", sa.String(length=256), nullable=False),
        sa.Column("agent_type", sa.String(length=64), nullable=True),
        sa.Column("title", sa.String(length=512), nullable=False, server_default=""),
        sa.Column("body_md", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_agent_artifacts_ticket_pk", "agent_artifacts", ["ticket_pk"])

    op.create_table(
        "red_documents",
        sa.Column("red_id", sa.String(length=64), primary_key=True),
        sa.Column("repo_full_name", sa.String(length=256), nullable=False),
        sa.Column("ticket_pk", sa.String(length=64), sa.ForeignKey("tickets.pk"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("red_json", sa.JSON(), nullable=False),
        sa.Column("validation_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_red_documents_repo_ticket_version",
        "red_documents",
        ["repo_full_name", "ticket_pk", "version"],
    )

    op.create_table(
        "integration_manifests",
        sa.Column("manifest_id", sa.String(length=64), primary_key=True),
        sa.Column("repo_full_name", sa.String(length=256), nullable=False),
        sa.Column("schema_version", sa.String(length=16), nullable=False, server_default="v0"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("manifest_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_integration_manifests_repo_schema_version",
        "integration_manifests",
        ["repo_full_name", "schema_version", "version"],
    )

    op.create_table(
        "agent_instructions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("repo_full_name", sa.String(length=256), nullable=False),
        sa.Column("topic_id", sa.String(length=128), nullable=False),
        sa.Column("filename", sa.String(length=256), nullable=False),
        sa.Column("title", sa.String(length=512), nullable=False, server_default=""),
        sa.Column("content_md", sa.Text(), nullable=True),
        sa.Column("agent_types", sa.JSON(), nullable=False),
        sa.Column("always_apply", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_agent_instructions_repo_full_name", "agent_instructions", ["repo_full_name"])

    op.create_table(
        "agent_runs",
        sa.Column("run_id", sa.String(length=64), primary_key=True),
        sa.Column("agent_type", sa.String(length=64), nullable=False),
        sa.Column("repo_full_name", sa.String(length=256), nullable=True),
        sa.Column("ticket_pk", sa.String(length=64), sa.ForeignKey("tickets.pk"), nullable=True),
        sa.Column("ticket_number", sa.Integer(), nullable=True),
        sa.Column("display_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="created"),
        sa.Column("current_stage", sa.String(length=64), nullable=True),
        sa.Column("progress", sa.JSON(), nullable=True),
        sa.Column("provider", sa.String(length=64), nullable=True),
        sa.Column("model", sa.String(length=128), nullable=True),
        sa.Column("input_json", sa.JSON(), nullable=True),
        sa.Column("output_json", sa.JSON(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("pr_url", sa.String(length=2000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_agent_runs_ticket_pk", "agent_runs", ["ticket_pk"])

    op.create_table(
        "agent_run_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("run_id", sa.String(length=64), sa.ForeignKey("agent_runs.run_id"), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_agent_run_events_run_id", "agent_run_events", ["run_id"])

    # Context bundles
    op.create_table(
        "context_bundles",
        sa.Column("bundle_id", sa.String(length=36), primary_key=True),
        sa.Column("repo_full_name", sa.String(length=256), nullable=False),
        sa.Column("ticket_pk", sa.String(length=64), nullable=False),
        sa.Column("ticket_id", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("bundle_json", sa.JSON(), nullable=False),
        sa.Column("content_checksum", sa.String(length=64), nullable=False),
        sa.Column("bundle_checksum", sa.String(length=64), nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=False, server_default="system"),
        sa.Column("trace_id", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "repo_full_name",
            "ticket_pk",
            "role",
            "version",
            name="uq_context_bundles_repo_ticket_role_version",
        ),
    )
    op.create_index(
        "ix_context_bundles_content_checksum",
        "context_bundles",
        ["repo_full_name", "ticket_pk", "role", "content_checksum"],
    )
    op.create_index(
        "ix_context_bundles_ticket",
        "context_bundles",
        ["repo_full_name", "ticket_pk", "created_at"],
    )
    op.create_index("ix_context_bundles_trace_id", "context_bundles", ["trace_id"])

    op.create_table(
        "bundle_receipts",
        sa.Column("receipt_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "bundle_id",
            sa.String(length=36),
            sa.ForeignKey("context_bundles.bundle_id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("repo_full_name", sa.String(length=256), nullable=False),
        sa.Column("ticket_pk", sa.String(length=64), nullable=False),
        sa.Column("ticket_id", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=64), nullable=False),
        sa.Column("content_checksum", sa.String(length=64), nullable=False),
        sa.Column("bundle_checksum", sa.String(length=64), nullable=False),
        sa.Column("section_metrics", sa.JSON(), nullable=False),
        sa.Column("total_characters", sa.Integer(), nullable=False),
        sa.Column("red_reference", sa.JSON(), nullable=True),
        sa.Column("integration_manifest_reference", sa.JSON(), nullable=True),
        sa.Column("git_ref", sa.JSON(), nullable=False),
        sa.Column("artifact_references", sa.JSON(), nullable=False),
        sa.Column("selected_snippets", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Audit log
    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column(
            "actor_kind",
            sa.Enum("human", "agent", "system", name="audit_actor_kind", create_constraint=True),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("entity_kind", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("trace_id", sa.String(length=36), nullable=True),
    )
    op.create_index("ix_audit_log_ts", "audit_log", ["ts"])
    op.create_index("ix_audit_log_actor_id", "audit_log", ["actor_id"])
    op.create_index("ix_audit_log_action", "audit_log", ["action"])
    op.create_index("ix_audit_log_entity_kind", "audit_log", ["entity_kind"])
    op.create_index("ix_audit_log_entity_id", "audit_log", ["entity_id"])
    op.create_index("ix_audit_log_trace_id", "audit_log", ["trace_id"])
    op.create_index("ix_audit_log_entity", "audit_log", ["entity_kind", "entity_id"])
    op.create_index("ix_audit_log_actor", "audit_log", ["actor_kind", "actor_id"])

    if op.get_bind().dialect.name == "postgresql":
        op.execute(
            """
            CREATE OR REPLACE FUNCTION reject_context_bundle_update() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION '% rows are immutable', TG_TABLE_NAME;
            END;
            $$ LANGUAGE plpgsql
            """
        )
        for table in IMMUTABLE_TABLES:
            op.execute(
                f"CREATE TRIGGER {table}_no_update BEFORE UPDATE ON {table} "
                "FOR EACH ROW EXECUTE FUNCTION reject_context_bundle_update()"
            )


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        for table in IMMUTABLE_TABLES:
            op.execute(f"DROP TRIGGER IF EXISTS {table}_no_update ON {table}")
        op.execute("DROP FUNCTION IF EXISTS reject_context_bundle_update()")

    op.drop_table("audit_log")
    sa.Enum(name="audit_actor_kind").drop(op.get_bind(), checkfirst=True)
    op.drop_table("bundle_receipts")
    op.drop_table("context_bundles")
    op.drop_table("agent_run_events")
    op.drop_table("agent_runs")
    op.drop_table("agent_instructions")
    op.drop_table("integration_manifests")
    op.drop_table("red_documents")
    op.drop_table("agent_artifacts")
    op.drop_table("tickets")
