"""
Context bundle builder.

Assembles the canonical payload for one (repo, ticket, role): resolves the
ticket, pins the RED and integration manifest it was built against, distills
the selected artifacts and embeds the selected snippets. Nothing here writes
to the store.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from ..config import Settings, get_settings
from .budgets import require_role_budget
from .checksum import find_lone_surrogate
from .distill import DistillationGate
from .enums import RUN_TYPE_ROLES, BundleState
from .errors import DistillationFailedError, InvalidRequestError, NotFoundError
from .primitives import (
    ArtifactReference,
    DistilledArtifact,
    GitRef,
    ManifestReference,
    RedReference,
    SelectedSnippet,
    utc_now,
)
from .sources import (
    ArtifactSource,
    ContextSources,
    ManifestRecord,
    RedDocument,
    TicketRecord,
)

logger = structlog.get_logger()

BUNDLE_SCHEMA_VERSION = "v0"

# Sections the builder always writes; explicit content cannot replace them.
BUILDER_SECTIONS = (
    "meta",
    "ticket",
    "references",
    "project_manifest",
    "instructions",
    "distilled_artifacts",
    "selected_snippets",
)

ROLE_RUN_TYPES = {role: run_type for run_type, role in RUN_TYPE_ROLES.items()}

_PR_NUMBER = re.compile(r"/pull/(\d+)")


@dataclass
class BundleIdentity:
    repo_full_name: str
    ticket_pk: str
    ticket_id: str
    role: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "repo_full_name": self.repo_full_name,
            "ticket_pk": self.ticket_pk,
            "ticket_id": self.ticket_id,
            "role": self.role,
        }


@dataclass
class BuiltBundle:
    """Payload plus the provenance that goes on the receipt."""

    payload: Dict[str, Any]
    identity: BundleIdentity
    red_reference: Optional[RedReference] = None
    manifest_reference: Optional[ManifestReference] = None
    artifact_references: List[ArtifactReference] = field(default_factory=list)
    selected_snippets: List[SelectedSnippet] = field(default_factory=list)


@dataclass
class RunContext:
    """Bundle inputs derived from one agent run."""

    run_id: str
    role: str
    ticket: TicketRecord
    repo_full_name: str
    sections: Dict[str, Any]
    git_ref: Optional[GitRef] = None


def normalize_artifact_ids(artifact_ids: Sequence[str]) -> List[str]:
    """Strip, drop blanks and de-duplicate while keeping first-seen order."""
    ordered: Dict[str, None] = {}
    for artifact_id in artifact_ids:
        artifact_id = (artifact_id or "").strip()
        if artifact_id:
            ordered.setdefault(artifact_id, None)
    return list(ordered)


def git_ref_from_pr_url(pr_url: Optional[str]) -> Optional[GitRef]:
    if not pr_url or not pr_url.strip():
        return None
    match = _PR_NUMBER.search(pr_url)
    return GitRef(pr_url=pr_url.strip(), pr_number=int(match.group(1)) if match else None)


def require_encodable_content(
    bundle_json: Optional[Dict[str, Any]], snippets: Sequence[SelectedSnippet]
) -> None:
    """Reject text with lone UTF-16 surrogates; it cannot be stored or returned as UTF-8."""
    for name, value in (
        ("bundle_json", bundle_json),
        ("selected_snippets", [s.model_dump() for s in snippets]),
    ):
        path = find_lone_surrogate(value, name)
        if path:
            raise InvalidRequestError(
                "Bundle content contains an unpaired UTF-16 surrogate.",
                details={"path": path},
            )


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


class BundleBuilder:
    """Builds bundle payloads from collaborator sources."""

    def __init__(
        self,
        sources: ContextSources,
        gate: DistillationGate,
        settings: Optional[Settings] = None,
    ):
        self.sources = sources
        self.gate = gate
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_ticket(
        self,
        ticket_pk: Optional[str] = None,
        ticket_id: Optional[str] = None,
        repo_full_name: Optional[str] = None,
    ) -> Tuple[Optional[TicketRecord], Tuple[str, str, str]]:
        """Resolve (ticket_pk, repo_full_name, ticket_id), preferring ticket_pk.

        A ticket_id that matches no ticket is NotFound; any part still
        missing after the lookups is an invalid request.
        """
        if not ticket_pk and not ticket_id:
            raise InvalidRequestError("ticket_pk or ticket_id is required")

        ticket: Optional[TicketRecord] = None
        if ticket_pk:
            ticket = self.sources.get_ticket_by_pk(ticket_pk)
        else:
            ticket = self.sources.get_ticket_by_id(ticket_id, repo_full_name)
            if ticket is None:
                raise NotFoundError("Ticket", ticket_id)

        if ticket is not None:
            ticket_pk = ticket_pk or ticket.pk
            repo_full_name = repo_full_name or ticket.repo_full_name
            ticket_id = ticket_id or ticket.id

        if not ticket_pk or not repo_full_name or not ticket_id:
            raise InvalidRequestError(
                "Could not resolve ticket_pk, repo_full_name, and ticket_id. "
                "Provide them explicitly or reference an existing ticket.",
                details={
                    "ticket_pk": ticket_pk,
                    "repo_full_name": repo_full_name,
                    "ticket_id": ticket_id,
                },
            )
        return ticket, (ticket_pk, repo_full_name, ticket_id)

    def resolve_red(
        self, identity: BundleIdentity, pinned: Optional[RedReference] = None
    ) -> Optional[RedDocument]:
        if pinned is not None:
            red = self.sources.get_red(pinned.id, pinned.version)
            if red is None:
                raise NotFoundError("RED", f"{pinned.id}@v{pinned.version}")
            return red

        red = self.sources.get_latest_red(identity.repo_full_name, identity.ticket_pk)
        if red is None and self.settings.require_red_document:
            raise NotFoundError(
                "RED",
                identity.ticket_id,
                message=(
                    f"No valid RED found for ticket {identity.ticket_id}. "
                    "Bundle builder requires a valid RED document."
                ),
            )
        return red

    def resolve_manifest(
        self, identity: BundleIdentity, pinned: Optional[ManifestReference] = None
    ) -> Optional[ManifestRecord]:
        if pinned is not None:
            manifest = self.sources.get_manifest(pinned.manifest_id)
            if manifest is None or manifest.version != pinned.version:
                raise NotFoundError(
                    "IntegrationManifest", f"{pinned.manifest_id}@v{pinned.version}"
                )
            return manifest
        return self.sources.get_latest_manifest(
            identity.repo_full_name, self.settings.manifest_schema_version
        )

    def select_artifacts(self, ticket_pk: str, artifact_ids: Sequence[str]) -> List[ArtifactSource]:
        """Fetch the selected artifacts of the ticket in selection order.

        Every id must belong to the ticket.
        """
        if not artifact_ids:
            return []
        found = {a.artifact_id: a for a in self.sources.get_artifacts(ticket_pk, artifact_ids)}
        if not found:
            raise InvalidRequestError(
                "No artifacts found for the selected artifact IDs.",
                details={"missing_artifact_ids": list(artifact_ids)},
            )
        missing = [artifact_id for artifact_id in artifact_ids if artifact_id not in found]
        if missing:
            raise InvalidRequestError(
                f"{len(missing)} selected artifact(s) not found for this ticket.",
                details={"missing_artifact_ids": missing},
            )
        return [found[artifact_id] for artifact_id in artifact_ids]

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    @staticmethod
    def ticket_section(
        identity: BundleIdentity, ticket: Optional[TicketRecord], red: Optional[RedDocument]
    ) -> Dict[str, Any]:
        red_json = red.red_json if red is not None else {}
        title = red_json.get("title") if isinstance(red_json.get("title"), str) else None
        description = red_json.get("description")
        return {
            "ticket_pk": identity.ticket_pk,
            "ticket_id": identity.ticket_id,
            "display_id": ticket.display_id if ticket else None,
            "title": title or (ticket.title if ticket else ""),
            "body_md": ticket.body_md if ticket else None,
            "description": description if isinstance(description, str) else "",
            "acceptance_criteria": _string_list(red_json.get("acceptance_criteria")),
            "out_of_scope": _string_list(red_json.get("out_of_scope")),
            "definition_of_done": _string_list(red_json.get("definition_of_done")),
        }

    async def build(
        self,
        *,
        role: str,
        ticket_pk: Optional[str] = None,
        ticket_id: Optional[str] = None,
        repo_full_name: Optional[str] = None,
        bundle_json: Optional[Dict[str, Any]] = None,
        selected_artifact_ids: Sequence[str] = (),
        selected_snippets: Sequence[SelectedSnippet] = (),
        red_reference: Optional[RedReference] = None,
        integration_manifest_reference: Optional[ManifestReference] = None,
        distilled_artifacts: Optional[Sequence[DistilledArtifact]] = None,
    ) -> BuiltBundle:
        """Assemble the payload for one (repo, ticket, role).

        ``distilled_artifacts`` replaces artifact selection and distillation
        with summaries taken from an earlier bundle.
        """
        require_role_budget(role)
        snippets = list(selected_snippets)
        require_encodable_content(bundle_json, snippets)
        ticket, (ticket_pk, repo_full_name, ticket_id) = self.resolve_ticket(
            ticket_pk, ticket_id, repo_full_name
        )
        identity = BundleIdentity(
            repo_full_name=repo_full_name,
            ticket_pk=ticket_pk,
            ticket_id=ticket_id,
            role=role,
        )
        log = logger.bind(**identity.to_dict())
        log.info("bundle_state", state=BundleState.BUILDING.value)

        red = self.resolve_red(identity, red_reference)
        manifest = self.resolve_manifest(identity, integration_manifest_reference)

        if distilled_artifacts is not None:
            distilled = list(distilled_artifacts)
        else:
            artifacts = self.select_artifacts(
                ticket_pk, normalize_artifact_ids(selected_artifact_ids)
            )
            gate_result = await self.gate.distill(artifacts)
            if not gate_result.ok:
                log.warning(
                    "bundle_build_blocked",
                    failed_artifact_ids=list(gate_result.failures),
                )
                raise DistillationFailedError(gate_result.failures)
            distilled = gate_result.distilled

        red_ref = RedReference(id=red.red_id, version=red.version) if red else None
        manifest_ref = (
            ManifestReference(
                manifest_id=manifest.manifest_id,
                version=manifest.version,
                schema_version=manifest.schema_version,
            )
            if manifest
            else None
        )
        project_manifest = None
        if manifest is not None:
            project_manifest = manifest.manifest_json.get("project_manifest")

        payload: Dict[str, Any] = {
            key: value
            for key, value in (bundle_json or {}).items()
            if key not in BUILDER_SECTIONS
        }
        payload.update(
            {
                "meta": {
                    "schema_version": BUNDLE_SCHEMA_VERSION,
                    "bundle_id": None,
                    "version": None,
                    "repo_full_name": repo_full_name,
                    "ticket_pk": ticket_pk,
                    "ticket_id": ticket_id,
                    "role": role,
                    "created_at": utc_now().isoformat(),
                    "content_checksum": "",
                    "bundle_checksum": "",
                },
                "ticket": self.ticket_section(identity, ticket, red),
                "references": {
                    "red": red_ref.model_dump() if red_ref else None,
                    "integration_manifest": manifest_ref.model_dump() if manifest_ref else None,
                },
                "project_manifest": project_manifest,
                "instructions": [
                    {
                        "topic_id": instruction.topic_id,
                        "filename": instruction.filename,
                        "title": instruction.title,
                        "content_md": instruction.content_md,
                    }
                    for instruction in self.sources.get_instructions(
                        repo_full_name, ROLE_RUN_TYPES.get(role, role)
                    )
                ],
                "distilled_artifacts": [
                    artifact.model_dump(exclude={"distillation_error"})
                    for artifact in distilled
                ],
                "selected_snippets": [s.model_dump(exclude_none=True) for s in snippets],
            }
        )

        log.info(
            "bundle_built",
            sections=sorted(payload),
            artifacts=len(distilled),
            snippets=len(snippets),
            red_id=red_ref.id if red_ref else None,
            manifest_id=manifest_ref.manifest_id if manifest_ref else None,
        )
        return BuiltBundle(
            payload=payload,
            identity=identity,
            red_reference=red_ref,
            manifest_reference=manifest_ref,
            artifact_references=[
                ArtifactReference(artifact_id=a.artifact_id, title=a.artifact_title)
                for a in distilled
            ],
            selected_snippets=snippets,
        )

    def run_context(self, run_id: str, role: Optional[str] = None) -> RunContext:
        """Resolve an agent run into bundle inputs.

        The role defaults to the one mapped from the run's agent type and the
        git ref to the run's pull request.
        """
        run = self.sources.get_agent_run(run_id)
        if run is None:
            raise NotFoundError("AgentRun", run_id)
        if not run.ticket_pk or not run.repo_full_name:
            raise InvalidRequestError(
                "Agent run must have ticket_pk and repo_full_name to build a bundle.",
                details={"run_id": run_id},
            )

        role = role or RUN_TYPE_ROLES.get(run.agent_type)
        if role is None:
            raise InvalidRequestError(
                f"Cannot derive a role from agent type '{run.agent_type}'; pass role explicitly.",
                details={"run_id": run_id, "agent_type": run.agent_type},
            )
        require_role_budget(role)

        ticket = self.sources.get_ticket_by_pk(run.ticket_pk)
        if ticket is None:
            raise NotFoundError("Ticket", run.ticket_pk)

        sections = {
            "agent_run": {
                "run_id": run.run_id,
                "agent_type": run.agent_type,
                "status": run.status,
                "current_stage": run.current_stage,
                "provider": run.provider,
                "model": run.model,
                "created_at": run.created_at,
                "updated_at": run.updated_at,
                "finished_at": run.finished_at,
            },
            "progress": run.progress,
            "events": self.sources.get_agent_run_events(run_id),
            "input_json": run.input_json,
            "output_json": run.output_json,
            "summary": run.summary,
            "error": run.error,
            "repo_context": {
                "repo_full_name": run.repo_full_name,
                "ticket_number": run.ticket_number,
                "display_id": run.display_id or ticket.display_id,
            },
        }
        return RunContext(
            run_id=run.run_id,
            role=role,
            ticket=ticket,
            repo_full_name=run.repo_full_name,
            sections=sections,
            git_ref=git_ref_from_pr_url(run.pr_url),
        )
