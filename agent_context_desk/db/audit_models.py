"""
Audit Log Database Models.

Every stored context bundle leaves an audit entry recording who created it,
what identity and checksums it carries, and the trace it belonged to.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Index,
    String,
    Text,
)
from sqlalchemy.sql import func

from ..bundles.primitives import isoformat
from .base import Base


audit_actor_kind_enum = Enum(
    "human",
    "agent",
    "system",
    name="audit_actor_kind",
)


class AuditLogModel(Base):
    """Audit log entry for bundle forensics.

    ``after`` holds the bundle summary (identity, version, checksums); the
    payload itself stays in ``context_bundles``.
    """

    __tablename__ = "audit_log"

    # ULID
    id = Column(String(36), primary_key=True)

    ts = Column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        index=True,
    )

    actor_kind = Column(audit_actor_kind_enum, nullable=False)
    actor_id = Column(String(128), nullable=False, index=True)

    action = Column(String(32), nullable=False, index=True)

    entity_kind = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(128), nullable=False, index=True)

    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)

    note = Column(Text, nullable=True)

    trace_id = Column(String(36), nullable=True, index=True)

    __table_args__ = (
        Index("ix_audit_log_entity", "entity_kind", "entity_id"),
        Index("ix_audit_log_actor", "actor_kind", "actor_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "ts": isoformat(self.ts),
            "actor_kind": self.actor_kind,
            "actor_id": self.actor_id,
            "action": self.action,
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "before": self.before,
            "after": self.after,
            "note": self.note,
            "trace_id": self.trace_id,
        }
