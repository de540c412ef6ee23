"""
Artifact selection service: ranking, pins and standalone distillation.

Ranking helps a caller choose ``selected_artifact_ids`` before building a
bundle. Pins force artifacts into that ranking. Distillation here runs the
same gate the builder uses but reports every artifact's outcome instead of
refusing on the first failure.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.audit_service import AuditService, parse_actor
from ..db.pin_models import ArtifactPinModel
from .budgets import require_role_budget
from .builder import normalize_artifact_ids
from .distill import DistillationGate, OpenAISummarizer, Summarizer
from .errors import InvalidRequestError, NotFoundError, StorageError
from .primitives import generate_ulid, utc_now
from .schemas import DistillArtifactsRequest, PinArtifactRequest, RankArtifactsRequest
from .scoring import ArtifactCandidate, select_artifacts
from .sources import ArtifactSource, ContextSources, DatabaseContextSources

logger = structlog.get_logger()


class ArtifactSelectionService:
    """Ranks, pins and distills the artifacts of a ticket."""

    def __init__(
        self,
        db: Session,
        summarizer: Optional[Summarizer] = None,
        sources: Optional[ContextSources] = None,
        audit: Optional[AuditService] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.sources = sources or DatabaseContextSources(db)
        self.audit = audit or AuditService(db)
        self._summarizer = summarizer

    @property
    def gate(self) -> DistillationGate:
        summarizer = self._summarizer or OpenAISummarizer.from_settings(self.settings)
        return DistillationGate(
            summarizer,
            timeout_seconds=self.settings.distill_timeout_seconds,
            max_concurrency=self.settings.distill_max_concurrency,
        )

    def resolve_ticket_pk(
        self,
        ticket_pk: Optional[str] = None,
        ticket_id: Optional[str] = None,
        repo_full_name: Optional[str] = None,
    ) -> str:
        if ticket_pk:
            return ticket_pk
        if not ticket_id:
            raise InvalidRequestError("ticket_pk or ticket_id is required")
        ticket = self.sources.get_ticket_by_id(ticket_id, repo_full_name)
        if ticket is None:
            raise NotFoundError("Ticket", ticket_id)
        return ticket.pk

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def rank(self, request: RankArtifactsRequest, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Score every artifact of the ticket; pins for the role are always selected."""
        if request.role:
            require_role_budget(request.role)
        ticket_pk = self.resolve_ticket_pk(
            request.ticket_pk, request.ticket_id, request.repo_full_name
        )

        pinned = self.sources.get_pinned_artifact_ids(ticket_pk, request.role)
        candidates = [
            ArtifactCandidate(
                artifact_id=artifact.artifact_id,
                title=artifact.title or "Untitled",
                agent_type=artifact.agent_type or "unknown",
                created_at=artifact.created_at,
                body_md=artifact.body_md,
                pinned=artifact.artifact_id in pinned,
            )
            for artifact in self.sources.list_artifacts(ticket_pk)
        ]
        scored = select_artifacts(
            candidates,
            query=request.query.strip(),
            role=request.role or "",
            max_artifacts=request.max_artifacts,
            now=now,
        )
        selected = [a.artifact_id for a in scored if a.selected]

        logger.info(
            "artifacts_ranked",
            ticket_pk=ticket_pk,
            role=request.role,
            total=len(scored),
            selected=len(selected),
            pinned=len(pinned),
        )
        return {
            "success": True,
            "ticket_pk": ticket_pk,
            "artifacts": [a.to_dict() for a in scored],
            "selected_artifact_ids": selected,
            "selected_count": len(selected),
            "total_count": len(scored),
        }

    # ------------------------------------------------------------------
    # Pins
    # ------------------------------------------------------------------

    def _find_pin(
        self, ticket_pk: str, artifact_id: str, role: Optional[str]
    ) -> Optional[ArtifactPinModel]:
        query = self.db.query(ArtifactPinModel).filter(
            ArtifactPinModel.ticket_pk == ticket_pk,
            ArtifactPinModel.artifact_id == artifact_id,
        )
        if role is None:
            query = query.filter(ArtifactPinModel.role.is_(None))
        else:
            query = query.filter(ArtifactPinModel.role == role)
        return query.first()

    def pin(self, request: PinArtifactRequest) -> Tuple[ArtifactPinModel, bool]:
        """Pin an artifact. Returns the pin and whether it was newly created."""
        role = request.role
        if role:
            require_role_budget(role)
        ticket_pk = self.resolve_ticket_pk(
            request.ticket_pk, request.ticket_id, request.repo_full_name
        )
        artifact_id = request.artifact_id.strip()
        if not self.sources.get_artifacts(ticket_pk, [artifact_id]):
            raise NotFoundError(
                "Artifact", artifact_id, message=f"Artifact {artifact_id} not found for this ticket."
            )

        existing = self._find_pin(ticket_pk, artifact_id, role)
        if existing is not None:
            return existing, False

        pin = ArtifactPinModel(
            pin_id=generate_ulid(),
            ticket_pk=ticket_pk,
            artifact_id=artifact_id,
            role=role,
            created_by=(request.created_by or "").strip() or "system",
            created_at=utc_now(),
        )
        actor_kind, actor_id = parse_actor(pin.created_by)
        try:
            self.db.add(pin)
            self.db.flush()
            self.audit.log_create(
                "ArtifactPin",
                pin.pin_id,
                pin.to_dict(),
                actor_kind=actor_kind,
                actor_id=actor_id,
                note=f"pinned {artifact_id} for {role or 'all roles'}",
                trace_id=request.trace_id,
                commit=False,
            )
            self.db.commit()
        except IntegrityError as e:
            # A concurrent request pinned it first
            self.db.rollback()
            existing = self._find_pin(ticket_pk, artifact_id, role)
            if existing is None:
                raise StorageError("Failed to pin artifact.", details={"reason": str(e)}) from e
            return existing, False
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError("Failed to pin artifact.", details={"reason": str(e)}) from e

        logger.info("artifact_pinned", ticket_pk=ticket_pk, artifact_id=artifact_id, role=role)
        return pin, True

    def unpin(
        self,
        ticket_pk: str,
        artifact_id: str,
        role: Optional[str] = None,
        created_by: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> int:
        """Remove the pin for ``role``, or every pin of the artifact when role is None."""
        if role is not None:
            require_role_budget(role)
        query = self.db.query(ArtifactPinModel).filter(
            ArtifactPinModel.ticket_pk == ticket_pk,
            ArtifactPinModel.artifact_id == artifact_id,
        )
        if role is not None:
            query = query.filter(ArtifactPinModel.role == role)

        actor_kind, actor_id = parse_actor(created_by)
        try:
            pins = query.all()
            for pin in pins:
                self.audit.log_delete(
                    "ArtifactPin",
                    pin.pin_id,
                    pin.to_dict(),
                    actor_kind=actor_kind,
                    actor_id=actor_id,
                    trace_id=trace_id,
                    commit=False,
                )
                self.db.delete(pin)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError("Failed to unpin artifact.", details={"reason": str(e)}) from e

        logger.info(
            "artifact_unpinned",
            ticket_pk=ticket_pk,
            artifact_id=artifact_id,
            role=role,
            removed=len(pins),
        )
        return len(pins)

    # ------------------------------------------------------------------
    # Distillation
    # ------------------------------------------------------------------

    def _artifacts_to_distill(self, request: DistillArtifactsRequest) -> List[ArtifactSource]:
        requested = ([request.artifact_id] if request.artifact_id else []) + list(
            request.artifact_ids
        )
        if requested:
            artifact_ids = normalize_artifact_ids(requested)
            if not artifact_ids:
                raise InvalidRequestError("At least one non-blank artifact ID is required.")
            found = {a.artifact_id: a for a in self.sources.find_artifacts(artifact_ids)}
            missing = [artifact_id for artifact_id in artifact_ids if artifact_id not in found]
            if missing:
                raise NotFoundError(
                    "Artifact", missing, message=f"Some artifacts not found: {', '.join(missing)}"
                )
            return [found[artifact_id] for artifact_id in artifact_ids]

        if request.ticket_pk or request.ticket_id:
            ticket_pk = self.resolve_ticket_pk(
                request.ticket_pk, request.ticket_id, request.repo_full_name
            )
            return self.sources.list_artifacts(ticket_pk, newest_first=False)

        raise InvalidRequestError(
            "Either artifact_id, artifact_ids, or ticket_pk/ticket_id is required."
        )

    async def distill(self, request: DistillArtifactsRequest) -> List[Dict[str, Any]]:
        """Distill each artifact and report its own outcome, in request order."""
        artifacts = self._artifacts_to_distill(request)
        result = await self.gate.distill(artifacts)
        return [
            {
                "artifact_id": outcome.artifact_id,
                "success": outcome.distillation_error is None,
                "distilled": (
                    None
                    if outcome.distillation_error
                    else outcome.model_dump(exclude={"distillation_error"})
                ),
                "error": outcome.distillation_error,
            }
            for outcome in result.outcomes
        ]
