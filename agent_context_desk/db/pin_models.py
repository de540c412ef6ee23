"""
Artifact pins.

A pin forces an artifact into the ranked selection for a ticket, either for
one role or, with a NULL role, for every role. Pins are the only rows in the
bundle subsystem that may be deleted.
"""

from typing import Any, Dict

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.sql import func

from ..bundles.primitives import isoformat
from .base import Base


class ArtifactPinModel(Base):
    """An artifact pinned into a ticket's context bundle selection."""

    __tablename__ = "context_bundle_pins"

    pin_id = Column(String(36), primary_key=True)
    ticket_pk = Column(String(64), ForeignKey("tickets.pk"), nullable=False)
    artifact_id = Column(String(64), ForeignKey("agent_artifacts.artifact_id"), nullable=False)
    # NULL pins the artifact for every role
    role = Column(String(64), nullable=True)
    created_by = Column(String(128), nullable=False, default="system")
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "ticket_pk", "artifact_id", "role", name="uq_context_bundle_pins_ticket_artifact_role"
        ),
        Index("ix_context_bundle_pins_ticket", "ticket_pk"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pin_id": self.pin_id,
            "ticket_pk": self.ticket_pk,
            "artifact_id": self.artifact_id,
            "role": self.role,
            "created_by": self.created_by,
            "created_at": isoformat(self.created_at),
        }
