"""
Collaborator tables read while building context bundles.

Tickets, agent artifacts, requirement expansion documents (REDs),
integration manifests, agent instructions and agent runs are written by other
parts of the dashboard. The bundle subsystem only reads them.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.sql import func

from ..bundles.primitives import isoformat
from .base import Base


class TicketModel(Base):
    """A kanban ticket."""

    __tablename__ = "tickets"

    pk = Column(String(64), primary_key=True)
    # Human-facing ticket number, unique per repo (e.g. "0042")
    id = Column(String(64), nullable=False)
    display_id = Column(String(64), nullable=True)
    repo_full_name = Column(String(256), nullable=False, index=True)
    title = Column(String(512), nullable=False, default="")
    body_md = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (Index("ix_tickets_repo_id", "repo_full_name", "id"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pk": self.pk,
            "id": self.id,
            "display_id": self.display_id,
            "repo_full_name": self.repo_full_name,
            "title": self.title,
            "body_md": self.body_md,
            "created_at": isoformat(self.created_at),
        }


class AgentArtifactModel(Base):
    """Markdown report an agent attached to a ticket."""

    __tablename__ = "agent_artifacts"

    artifact_id = Column(String(64), primary_key=True)
    ticket_pk = Column(String(64), ForeignKey("tickets.pk"), nullable=False, index=True)
    repo_full_name = Column(String(256), nullable=False)
    agent_type = Column(String(64), nullable=True)
    title = Column(String(512), nullable=False, default="")
    body_md = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class RedDocumentModel(Base):
    """Requirement Expansion Document: versioned, validated ticket requirements."""

    __tablename__ = "red_documents"

    red_id = Column(String(64), primary_key=True)
    repo_full_name = Column(String(256), nullable=False)
    ticket_pk = Column(String(64), ForeignKey("tickets.pk"), nullable=False)
    version = Column(Integer, nullable=False)
    red_json = Column(JSON, nullable=False, default=dict)
    # valid | invalid | pending
    validation_status = Column(String(16), nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        Index("ix_red_documents_repo_ticket_version", "repo_full_name", "ticket_pk", "version"),
    )


class IntegrationManifestModel(Base):
    """Project-level manifest (goal, stack, conventions) for a repository."""

    __tablename__ = "integration_manifests"

    manifest_id = Column(String(64), primary_key=True)
    repo_full_name = Column(String(256), nullable=False)
    schema_version = Column(String(16), nullable=False, default="v0")
    version = Column(Integer, nullable=False)
    manifest_json = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        Index(
            "ix_integration_manifests_repo_schema_version",
            "repo_full_name",
            "schema_version",
            "version",
        ),
    )


class AgentInstructionModel(Base):
    """Instruction topic applied to agents working in a repository."""

    __tablename__ = "agent_instructions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repo_full_name = Column(String(256), nullable=False, index=True)
    topic_id = Column(String(128), nullable=False)
    filename = Column(String(256), nullable=False)
    title = Column(String(512), nullable=False, default="")
    content_md = Column(Text, nullable=True)
    # Agent run types this topic applies to; "all" matches every type
    agent_types = Column(JSON, nullable=False, default=list)
    always_apply = Column(Boolean, nullable=False, default=False)


class AgentRunModel(Base):
    """One execution of an agent against a ticket."""

    __tablename__ = "agent_runs"

    run_id = Column(String(64), primary_key=True)
    agent_type = Column(String(64), nullable=False)
    repo_full_name = Column(String(256), nullable=True)
    ticket_pk = Column(String(64), ForeignKey("tickets.pk"), nullable=True, index=True)
    ticket_number = Column(Integer, nullable=True)
    display_id = Column(String(64), nullable=True)
    status = Column(String(32), nullable=False, default="created")
    current_stage = Column(String(64), nullable=True)
    progress = Column(JSON, nullable=True)
    provider = Column(String(64), nullable=True)
    model = Column(String(128), nullable=True)
    input_json = Column(JSON, nullable=True)
    output_json = Column(JSON, nullable=True)
    summary = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    pr_url = Column(String(2000), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)


class AgentRunEventModel(Base):
    """Append-only event emitted by an agent run."""

    __tablename__ = "agent_run_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(64), ForeignKey("agent_runs.run_id"), nullable=False, index=True)
    type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
