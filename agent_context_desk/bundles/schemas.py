"""
Request bodies for the context bundle API.

Roles are plain strings here; the budget table decides whether a role is
known so the error can list the valid roles.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, constr

from .primitives import GitRef, ManifestReference, RedReference, SelectedSnippet


class BundleContentRequest(BaseModel):
    """Fields shared by every request that assembles a bundle payload."""

    model_config = ConfigDict(extra="forbid")

    ticket_pk: Optional[constr(min_length=1, max_length=64)] = Field(
        None, description="Ticket primary key"
    )
    ticket_id: Optional[constr(min_length=1, max_length=64)] = Field(
        None, description="Human-facing ticket number; resolved to ticket_pk"
    )
    repo_full_name: Optional[constr(min_length=1, max_length=256)] = Field(
        None, description="owner/repo; defaults to the ticket's repository"
    )
    role: constr(min_length=1, max_length=64) = Field(..., description="Agent role")
    bundle_json: Optional[Dict[str, Any]] = Field(
        None, description="Explicit bundle sections merged into the payload"
    )
    selected_artifact_ids: List[str] = Field(
        default_factory=list, description="Artifacts to distill into the bundle, in order"
    )
    selected_snippets: List[SelectedSnippet] = Field(
        default_factory=list, description="Excerpts embedded verbatim, in order"
    )
    red_reference: Optional[RedReference] = Field(
        None, description="Pin a specific RED instead of the latest valid one"
    )
    integration_manifest_reference: Optional[ManifestReference] = Field(
        None, description="Pin a specific manifest instead of the latest one"
    )


class BuildBundleRequest(BundleContentRequest):
    """Build a bundle and store it with its receipt."""

    git_ref: GitRef = Field(..., description="Code state the bundle was built against")
    created_by: Optional[constr(max_length=128)] = Field(
        None, description="'system', 'user:<login>' or 'agent:<id>'"
    )
    trace_id: Optional[constr(max_length=36)] = Field(
        None, description="Correlation ID recorded on the bundle and audit entry"
    )


class PreviewBundleRequest(BundleContentRequest):
    """Build a bundle and measure it against the role budget without storing it."""


class BuildFromRunRequest(BaseModel):
    """Build and store a bundle from an agent run and its events."""

    model_config = ConfigDict(extra="forbid")

    run_id: constr(min_length=1, max_length=64)
    role: Optional[constr(min_length=1, max_length=64)] = Field(
        None, description="Overrides the role derived from the run's agent type"
    )
    git_ref: Optional[GitRef] = Field(
        None, description="Defaults to the run's pull request URL"
    )
    selected_artifact_ids: List[str] = Field(default_factory=list)
    selected_snippets: List[SelectedSnippet] = Field(default_factory=list)
    created_by: Optional[constr(max_length=128)] = None
    trace_id: Optional[constr(max_length=36)] = None


class TicketLookup(BaseModel):
    """Ticket named by primary key, or by ticket number within an optional repo."""

    model_config = ConfigDict(extra="forbid")

    ticket_pk: Optional[constr(min_length=1, max_length=64)] = None
    ticket_id: Optional[constr(min_length=1, max_length=64)] = None
    repo_full_name: Optional[constr(min_length=1, max_length=256)] = None


class RankArtifactsRequest(TicketLookup):
    """Score every artifact of a ticket and mark the ones that fit the selection."""

    query: constr(max_length=1000) = Field("", description="Free-text relevance query")
    role: Optional[constr(min_length=1, max_length=64)] = Field(
        None, description="Role whose pins apply and whose agent type earns a match"
    )
    max_artifacts: int = Field(10, ge=1, le=100, description="Selection size before pins")


class PinArtifactRequest(TicketLookup):
    """Pin an artifact for one role, or for every role when role is omitted."""

    artifact_id: constr(min_length=1, max_length=64)
    role: Optional[constr(min_length=1, max_length=64)] = None
    created_by: Optional[constr(max_length=128)] = None
    trace_id: Optional[constr(max_length=36)] = None


class DistillArtifactsRequest(TicketLookup):
    """Distill named artifacts, or every artifact of a ticket."""

    artifact_id: Optional[constr(min_length=1, max_length=64)] = None
    artifact_ids: List[str] = Field(default_factory=list)


class ContinuityCheckRequest(BaseModel):
    """Rebuild a stored bundle from its receipt and compare checksums."""

    model_config = ConfigDict(extra="forbid")

    bundle_id: Optional[constr(min_length=1, max_length=36)] = None
    receipt_id: Optional[constr(min_length=1, max_length=36)] = None
