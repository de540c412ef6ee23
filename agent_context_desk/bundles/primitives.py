"""
Context bundle primitives.

Value objects shared by the builder, the store and the HTTP surface. These
are the pieces that end up embedded in receipts, so they forbid extra fields.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, constr
from ulid import ULID


def generate_ulid() -> str:
    """Generate a ULID for bundle and receipt IDs.

    ULIDs are lexicographically sortable, so listing by id matches creation order.
    """
    return str(ULID())


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 for timezone-aware or naive-UTC datetimes read back from the store."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class GitRef(BaseModel):
    """Code state the bundle was built against.

    At least one of ``pr_url``, ``base_sha`` or ``head_sha`` must be non-blank;
    ``pr_number`` alone does not identify a code state.
    """

    model_config = ConfigDict(extra="forbid")

    pr_url: Optional[constr(max_length=2000)] = Field(None, description="Pull request URL")
    pr_number: Optional[int] = Field(None, ge=1, description="Pull request number")
    base_sha: Optional[constr(max_length=64)] = Field(None, description="Base commit SHA")
    head_sha: Optional[constr(max_length=64)] = Field(None, description="Head commit SHA")

    def is_blank(self) -> bool:
        return not any(
            (value or "").strip() for value in (self.pr_url, self.base_sha, self.head_sha)
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class RedReference(BaseModel):
    """Pointer to the requirements expansion document (RED) used while building."""

    model_config = ConfigDict(extra="forbid")

    id: constr(min_length=1, max_length=128) = Field(..., description="RED document ID")
    version: int = Field(..., ge=1, description="RED document version")


class ManifestReference(BaseModel):
    """Pointer to the integration manifest used while building."""

    model_config = ConfigDict(extra="forbid")

    manifest_id: constr(min_length=1, max_length=128) = Field(..., description="Manifest ID")
    version: int = Field(..., ge=1, description="Manifest version")
    schema_version: constr(min_length=1, max_length=16) = Field(
        "v0", description="Manifest schema version"
    )


class ArtifactReference(BaseModel):
    """An artifact that was distilled into the bundle."""

    model_config = ConfigDict(extra="forbid")

    artifact_id: constr(min_length=1, max_length=128)
    title: Optional[str] = None


class SelectedSnippet(BaseModel):
    """A code or document excerpt pinned into the bundle verbatim."""

    model_config = ConfigDict(extra="forbid")

    path: constr(min_length=1, max_length=1000) = Field(..., description="File path or URI")
    snippet: str = Field(..., description="Excerpt text")
    source: Optional[constr(max_length=256)] = Field(
        None, description="Where the excerpt came from (e.g. 'repo', 'artifact:<id>')"
    )


class DistilledArtifact(BaseModel):
    """Summary of one selected artifact as embedded in the bundle payload."""

    model_config = ConfigDict(extra="forbid")

    artifact_id: str
    artifact_title: Optional[str] = None
    summary: str = ""
    hard_facts: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    distillation_error: Optional[str] = None
