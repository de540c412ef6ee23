"""
Context bundle and receipt tables.

Both tables are append-only: rows are inserted once, in the same transaction,
and any attempt to flush an UPDATE raises ``ImmutabilityError``.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..bundles.errors import ImmutabilityError
from ..bundles.primitives import isoformat
from .base import Base


class ContextBundleModel(Base):
    """A point-in-time snapshot of everything shown to one agent role."""

    __tablename__ = "context_bundles"

    bundle_id = Column(String(36), primary_key=True)

    # Identity
    repo_full_name = Column(String(256), nullable=False)
    ticket_pk = Column(String(64), nullable=False)
    ticket_id = Column(String(64), nullable=False)
    role = Column(String(64), nullable=False)
    version = Column(Integer, nullable=False)

    # Canonical payload, including its "meta" section
    bundle_json = Column(JSON, nullable=False)

    content_checksum = Column(String(64), nullable=False)
    bundle_checksum = Column(String(64), nullable=False)

    created_by = Column(String(128), nullable=False, default="system")
    trace_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    receipt = relationship(
        "BundleReceiptModel",
        back_populates="bundle",
        uselist=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "repo_full_name",
            "ticket_pk",
            "role",
            "version",
            name="uq_context_bundles_repo_ticket_role_version",
        ),
        Index(
            "ix_context_bundles_content_checksum",
            "repo_full_name",
            "ticket_pk",
            "role",
            "content_checksum",
        ),
        Index("ix_context_bundles_ticket", "repo_full_name", "ticket_pk", "created_at"),
    )

    def to_summary(self) -> Dict[str, Any]:
        """Identity and checksums without the payload."""
        return {
            "bundle_id": self.bundle_id,
            "repo_full_name": self.repo_full_name,
            "ticket_pk": self.ticket_pk,
            "ticket_id": self.ticket_id,
            "role": self.role,
            "version": self.version,
            "content_checksum": self.content_checksum,
            "bundle_checksum": self.bundle_checksum,
            "created_by": self.created_by,
            "trace_id": self.trace_id,
            "created_at": isoformat(self.created_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        result = self.to_summary()
        result["bundle_json"] = self.bundle_json
        return result


class BundleReceiptModel(Base):
    """Integrity and provenance record stored alongside exactly one bundle."""

    __tablename__ = "bundle_receipts"

    receipt_id = Column(String(36), primary_key=True)
    bundle_id = Column(
        String(36),
        ForeignKey("context_bundles.bundle_id"),
        nullable=False,
        unique=True,
    )

    # Denormalized identity for receipt-only queries
    repo_full_name = Column(String(256), nullable=False)
    ticket_pk = Column(String(64), nullable=False)
    ticket_id = Column(String(64), nullable=False)
    role = Column(String(64), nullable=False)

    content_checksum = Column(String(64), nullable=False)
    bundle_checksum = Column(String(64), nullable=False)

    section_metrics = Column(JSON, nullable=False, default=dict)
    total_characters = Column(Integer, nullable=False)

    # Provenance
    red_reference = Column(JSON, nullable=True)
    integration_manifest_reference = Column(JSON, nullable=True)
    git_ref = Column(JSON, nullable=False)
    artifact_references = Column(JSON, nullable=False, default=list)
    selected_snippets = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    bundle = relationship("ContextBundleModel", back_populates="receipt")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receipt_id": self.receipt_id,
            "bundle_id": self.bundle_id,
            "repo_full_name": self.repo_full_name,
            "ticket_pk": self.ticket_pk,
            "ticket_id": self.ticket_id,
            "role": self.role,
            "content_checksum": self.content_checksum,
            "bundle_checksum": self.bundle_checksum,
            "section_metrics": self.section_metrics,
            "total_characters": self.total_characters,
            "red_reference": self.red_reference,
            "integration_manifest_reference": self.integration_manifest_reference,
            "git_ref": self.git_ref,
            "artifact_references": self.artifact_references,
            "selected_snippets": self.selected_snippets,
            "created_at": isoformat(self.created_at),
        }


@event.listens_for(ContextBundleModel, "before_update")
def _refuse_bundle_update(mapper, connection, target: ContextBundleModel) -> None:
    raise ImmutabilityError("ContextBundle", target.bundle_id)


@event.listens_for(BundleReceiptModel, "before_update")
def _refuse_receipt_update(mapper, connection, target: BundleReceiptModel) -> None:
    raise ImmutabilityError("BundleReceipt", target.receipt_id)
