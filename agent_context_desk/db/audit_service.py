"""
Audit Log Service.

Records and queries audit entries. Writers that need the audit entry to land
atomically with their own rows pass ``commit=False`` and commit themselves.
"""

from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import desc
from sqlalchemy.orm import Session

from ..bundles.primitives import generate_ulid, utc_now
from .audit_models import AuditLogModel

ACTOR_KINDS = ("human", "agent", "system")


def parse_actor(created_by: Optional[str]) -> Tuple[str, str]:
    """Split a ``created_by`` string into (actor_kind, actor_id).

    ``"user:octocat"`` -> ("human", "octocat"), ``"agent:qa-1"`` ->
    ("agent", "qa-1"); anything else is attributed to the system.
    """
    value = (created_by or "").strip()
    if not value or value == "system":
        return "system", "system"
    prefix, sep, rest = value.partition(":")
    if sep and rest:
        if prefix == "user":
            return "human", rest
        if prefix in ACTOR_KINDS:
            return prefix, rest
    return "system", value


class AuditService:
    """Service for managing audit log entries.

    Usage:
        audit = AuditService(db_session)
        audit.log_create("ContextBundle", bundle.bundle_id, bundle.to_summary(),
                         actor_kind="human", actor_id="octocat", commit=False)
    """

    def __init__(self, db: Session):
        self.db = db

    def log_create(
        self,
        entity_kind: str,
        entity_id: str,
        after: Dict[str, Any],
        actor_kind: str = "system",
        actor_id: str = "unknown",
        note: Optional[str] = None,
        trace_id: Optional[str] = None,
        commit: bool = True,
    ) -> AuditLogModel:
        """Log the creation of an entity.

        Args:
            entity_kind: Type of entity (e.g., "ContextBundle")
            entity_id: ID of the entity
            after: State of the entity after creation
            actor_kind: Type of actor ("human", "agent", "system")
            actor_id: ID of the actor
            note: Optional human-readable note
            trace_id: Optional trace ID for correlation
            commit: Commit immediately; pass False to join the caller's transaction

        Returns:
            The created AuditLogModel
        """
        entry = AuditLogModel(
            id=generate_ulid(),
            ts=utc_now(),
            actor_kind=actor_kind,
            actor_id=actor_id,
            action="created",
            entity_kind=entity_kind,
            entity_id=entity_id,
            before=None,
            after=after,
            note=note,
            trace_id=trace_id,
        )

        self.db.add(entry)
        if commit:
            self.db.commit()
            self.db.refresh(entry)
        return entry

    def log_delete(
        self,
        entity_kind: str,
        entity_id: str,
        before: Dict[str, Any],
        actor_kind: str = "system",
        actor_id: str = "unknown",
        note: Optional[str] = None,
        trace_id: Optional[str] = None,
        commit: bool = True,
    ) -> AuditLogModel:
        """Log the deletion of an entity, keeping its last state in ``before``."""
        entry = AuditLogModel(
            id=generate_ulid(),
            ts=utc_now(),
            actor_kind=actor_kind,
            actor_id=actor_id,
            action="deleted",
            entity_kind=entity_kind,
            entity_id=entity_id,
            before=before,
            after=None,
            note=note,
            trace_id=trace_id,
        )

        self.db.add(entry)
        if commit:
            self.db.commit()
            self.db.refresh(entry)
        return entry

    # Query methods

    def query_by_entity(
        self,
        entity_kind: str,
        entity_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogModel]:
        """Get audit history for a specific entity, newest first."""
        return (
            self.db.query(AuditLogModel)
            .filter(
                AuditLogModel.entity_kind == entity_kind,
                AuditLogModel.entity_id == entity_id,
            )
            .order_by(desc(AuditLogModel.ts))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def query_by_trace(
        self,
        trace_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogModel]:
        """Get all audit entries for a trace ID, newest first."""
        return (
            self.db.query(AuditLogModel)
            .filter(AuditLogModel.trace_id == trace_id)
            .order_by(desc(AuditLogModel.ts))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def query_by_actor(
        self,
        actor_kind: str,
        actor_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogModel]:
        """Get all audit entries by a specific actor, newest first."""
        return (
            self.db.query(AuditLogModel)
            .filter(
                AuditLogModel.actor_kind == actor_kind,
                AuditLogModel.actor_id == actor_id,
            )
            .order_by(desc(AuditLogModel.ts))
            .offset(offset)
            .limit(limit)
            .all()
        )
