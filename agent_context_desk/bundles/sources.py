"""
Read-only collaborator lookups used while building bundles.

``ContextSources`` is the seam between the builder and whatever owns tickets,
artifacts, REDs, manifests, instructions and agent runs.
``DatabaseContextSources`` reads them from the relational store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set

from sqlalchemy import asc, desc, or_
from sqlalchemy.orm import Session

from ..db.models import (
    AgentArtifactModel,
    AgentInstructionModel,
    AgentRunEventModel,
    AgentRunModel,
    IntegrationManifestModel,
    RedDocumentModel,
    TicketModel,
)
from ..db.pin_models import ArtifactPinModel
from .primitives import isoformat


@dataclass
class TicketRecord:
    pk: str
    id: str
    repo_full_name: str
    display_id: Optional[str] = None
    title: str = ""
    body_md: Optional[str] = None


@dataclass
class ArtifactSource:
    artifact_id: str
    title: str
    body_md: Optional[str] = None
    agent_type: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class RedDocument:
    red_id: str
    version: int
    red_json: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ManifestRecord:
    manifest_id: str
    version: int
    schema_version: str
    manifest_json: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InstructionRecord:
    topic_id: str
    filename: str
    title: str
    content_md: str


@dataclass
class AgentRunRecord:
    run_id: str
    agent_type: str
    repo_full_name: Optional[str]
    ticket_pk: Optional[str]
    ticket_number: Optional[int] = None
    display_id: Optional[str] = None
    status: Optional[str] = None
    current_stage: Optional[str] = None
    progress: Any = None
    provider: Optional[str] = None
    model: Optional[str] = None
    input_json: Any = None
    output_json: Any = None
    summary: Optional[str] = None
    error: Optional[str] = None
    pr_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    finished_at: Optional[str] = None


class ContextSources(ABC):
    """Lookups the bundle builder depends on."""

    @abstractmethod
    def get_ticket_by_pk(self, ticket_pk: str) -> Optional[TicketRecord]:
        ...

    @abstractmethod
    def get_ticket_by_id(
        self, ticket_id: str, repo_full_name: Optional[str] = None
    ) -> Optional[TicketRecord]:
        ...

    @abstractmethod
    def get_latest_red(self, repo_full_name: str, ticket_pk: str) -> Optional[RedDocument]:
        """Newest RED for the ticket that passed validation."""

    @abstractmethod
    def get_red(self, red_id: str, version: Optional[int] = None) -> Optional[RedDocument]:
        ...

    @abstractmethod
    def get_latest_manifest(
        self, repo_full_name: str, schema_version: str
    ) -> Optional[ManifestRecord]:
        ...

    @abstractmethod
    def get_manifest(self, manifest_id: str) -> Optional[ManifestRecord]:
        ...

    @abstractmethod
    def get_artifacts(self, ticket_pk: str, artifact_ids: Sequence[str]) -> List[ArtifactSource]:
        """Artifacts of the ticket among ``artifact_ids``, in any order."""

    @abstractmethod
    def list_artifacts(self, ticket_pk: str, newest_first: bool = True) -> List[ArtifactSource]:
        """Every artifact of the ticket ordered by creation time."""

    @abstractmethod
    def find_artifacts(self, artifact_ids: Sequence[str]) -> List[ArtifactSource]:
        """Artifacts among ``artifact_ids`` on any ticket, in any order."""

    @abstractmethod
    def get_pinned_artifact_ids(self, ticket_pk: str, role: Optional[str] = None) -> Set[str]:
        """Artifacts pinned for ``role`` or for every role; only all-role pins without a role."""

    @abstractmethod
    def get_instructions(self, repo_full_name: str, agent_type: str) -> List[InstructionRecord]:
        """Instruction topics applying to ``agent_type``, ordered by filename."""

    @abstractmethod
    def get_agent_run(self, run_id: str) -> Optional[AgentRunRecord]:
        ...

    @abstractmethod
    def get_agent_run_events(self, run_id: str) -> List[Dict[str, Any]]:
        """Events of the run ordered by id."""

    @abstractmethod
    def list_agent_runs(
        self, repo_full_name: str, ticket_pk: str, agent_type: str, limit: int = 10
    ) -> List[AgentRunRecord]:
        """Runs of ``agent_type`` on the ticket, newest first."""


class DatabaseContextSources(ContextSources):
    """Collaborator lookups backed by SQLAlchemy."""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _ticket(row: Optional[TicketModel]) -> Optional[TicketRecord]:
        if row is None:
            return None
        return TicketRecord(
            pk=row.pk,
            id=row.id,
            repo_full_name=row.repo_full_name,
            display_id=row.display_id,
            title=row.title or "",
            body_md=row.body_md,
        )

    def get_ticket_by_pk(self, ticket_pk: str) -> Optional[TicketRecord]:
        return self._ticket(self.db.query(TicketModel).filter(TicketModel.pk == ticket_pk).first())

    def get_ticket_by_id(
        self, ticket_id: str, repo_full_name: Optional[str] = None
    ) -> Optional[TicketRecord]:
        query = self.db.query(TicketModel).filter(
            or_(TicketModel.id == ticket_id, TicketModel.display_id == ticket_id)
        )
        if repo_full_name:
            query = query.filter(TicketModel.repo_full_name == repo_full_name)
        return self._ticket(query.order_by(TicketModel.created_at).first())

    def get_latest_red(self, repo_full_name: str, ticket_pk: str) -> Optional[RedDocument]:
        row = (
            self.db.query(RedDocumentModel)
            .filter(
                RedDocumentModel.repo_full_name == repo_full_name,
                RedDocumentModel.ticket_pk == ticket_pk,
                RedDocumentModel.validation_status == "valid",
            )
            .order_by(desc(RedDocumentModel.version))
            .first()
        )
        if row is None:
            return None
        return RedDocument(red_id=row.red_id, version=row.version, red_json=row.red_json or {})

    def get_red(self, red_id: str, version: Optional[int] = None) -> Optional[RedDocument]:
        query = self.db.query(RedDocumentModel).filter(RedDocumentModel.red_id == red_id)
        if version is not None:
            query = query.filter(RedDocumentModel.version == version)
        row = query.first()
        if row is None:
            return None
        return RedDocument(red_id=row.red_id, version=row.version, red_json=row.red_json or {})

    @staticmethod
    def _manifest(row: Optional[IntegrationManifestModel]) -> Optional[ManifestRecord]:
        if row is None:
            return None
        return ManifestRecord(
            manifest_id=row.manifest_id,
            version=row.version,
            schema_version=row.schema_version,
            manifest_json=row.manifest_json or {},
        )

    def get_latest_manifest(
        self, repo_full_name: str, schema_version: str
    ) -> Optional[ManifestRecord]:
        return self._manifest(
            self.db.query(IntegrationManifestModel)
            .filter(
                IntegrationManifestModel.repo_full_name == repo_full_name,
                IntegrationManifestModel.schema_version == schema_version,
            )
            .order_by(desc(IntegrationManifestModel.version))
            .first()
        )

    def get_manifest(self, manifest_id: str) -> Optional[ManifestRecord]:
        return self._manifest(
            self.db.query(IntegrationManifestModel)
            .filter(IntegrationManifestModel.manifest_id == manifest_id)
            .first()
        )

    @staticmethod
    def _artifact(row: AgentArtifactModel) -> ArtifactSource:
        return ArtifactSource(
            artifact_id=row.artifact_id,
            title=row.title or "",
            body_md=row.body_md,
            agent_type=row.agent_type,
            created_at=row.created_at,
        )

    def get_artifacts(self, ticket_pk: str, artifact_ids: Sequence[str]) -> List[ArtifactSource]:
        if not artifact_ids:
            return []
        rows = (
            self.db.query(AgentArtifactModel)
            .filter(
                AgentArtifactModel.ticket_pk == ticket_pk,
                AgentArtifactModel.artifact_id.in_(list(artifact_ids)),
            )
            .all()
        )
        return [self._artifact(row) for row in rows]

    def list_artifacts(self, ticket_pk: str, newest_first: bool = True) -> List[ArtifactSource]:
        order = desc if newest_first else asc
        rows = (
            self.db.query(AgentArtifactModel)
            .filter(AgentArtifactModel.ticket_pk == ticket_pk)
            .order_by(order(AgentArtifactModel.created_at), order(AgentArtifactModel.artifact_id))
            .all()
        )
        return [self._artifact(row) for row in rows]

    def find_artifacts(self, artifact_ids: Sequence[str]) -> List[ArtifactSource]:
        if not artifact_ids:
            return []
        rows = (
            self.db.query(AgentArtifactModel)
            .filter(AgentArtifactModel.artifact_id.in_(list(artifact_ids)))
            .all()
        )
        return [self._artifact(row) for row in rows]

    def get_pinned_artifact_ids(self, ticket_pk: str, role: Optional[str] = None) -> Set[str]:
        query = self.db.query(ArtifactPinModel.artifact_id).filter(
            ArtifactPinModel.ticket_pk == ticket_pk
        )
        if role:
            query = query.filter(or_(ArtifactPinModel.role == role, ArtifactPinModel.role.is_(None)))
        else:
            query = query.filter(ArtifactPinModel.role.is_(None))
        return {artifact_id for (artifact_id,) in query.all()}

    def get_instructions(self, repo_full_name: str, agent_type: str) -> List[InstructionRecord]:
        rows = (
            self.db.query(AgentInstructionModel)
            .filter(AgentInstructionModel.repo_full_name == repo_full_name)
            .order_by(AgentInstructionModel.filename)
            .all()
        )
        selected = []
        for row in rows:
            agent_types = row.agent_types or []
            if row.always_apply or "all" in agent_types or agent_type in agent_types:
                selected.append(
                    InstructionRecord(
                        topic_id=row.topic_id,
                        filename=row.filename,
                        title=row.title or "",
                        content_md=row.content_md or "",
                    )
                )
        return selected

    @staticmethod
    def _run(row: AgentRunModel) -> AgentRunRecord:
        return AgentRunRecord(
            run_id=row.run_id,
            agent_type=row.agent_type,
            repo_full_name=row.repo_full_name,
            ticket_pk=row.ticket_pk,
            ticket_number=row.ticket_number,
            display_id=row.display_id,
            status=row.status,
            current_stage=row.current_stage,
            progress=row.progress,
            provider=row.provider,
            model=row.model,
            input_json=row.input_json,
            output_json=row.output_json,
            summary=row.summary,
            error=row.error,
            pr_url=row.pr_url,
            created_at=isoformat(row.created_at),
            updated_at=isoformat(row.updated_at),
            finished_at=isoformat(row.finished_at),
        )

    def get_agent_run(self, run_id: str) -> Optional[AgentRunRecord]:
        row = self.db.query(AgentRunModel).filter(AgentRunModel.run_id == run_id).first()
        return self._run(row) if row is not None else None

    def list_agent_runs(
        self, repo_full_name: str, ticket_pk: str, agent_type: str, limit: int = 10
    ) -> List[AgentRunRecord]:
        rows = (
            self.db.query(AgentRunModel)
            .filter(
                AgentRunModel.repo_full_name == repo_full_name,
                AgentRunModel.ticket_pk == ticket_pk,
                AgentRunModel.agent_type == agent_type,
            )
            .order_by(desc(AgentRunModel.created_at), desc(AgentRunModel.run_id))
            .limit(limit)
            .all()
        )
        return [self._run(row) for row in rows]

    def get_agent_run_events(self, run_id: str) -> List[Dict[str, Any]]:
        rows = (
            self.db.query(AgentRunEventModel)
            .filter(AgentRunEventModel.run_id == run_id)
            .order_by(AgentRunEventModel.id)
            .all()
        )
        return [
            {
                "id": row.id,
                "type": row.type,
                "payload": row.payload,
                "created_at": isoformat(row.created_at),
            }
            for row in rows
        ]
