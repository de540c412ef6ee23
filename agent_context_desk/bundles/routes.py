"""
Context bundle API routes.

All endpoints are prefixed with /context-bundles. Failures are returned as
``{"success": false, "error": {code, message, details}}`` with the status of
the underlying ``BundleError``.
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..db.base import get_db
from .budgets import list_role_budgets
from .distill import OpenAISummarizer, Summarizer
from .errors import BundleError
from .schemas import (
    BuildBundleRequest,
    BuildFromRunRequest,
    ContinuityCheckRequest,
    DistillArtifactsRequest,
    PinArtifactRequest,
    PreviewBundleRequest,
    RankArtifactsRequest,
)
from .selection import ArtifactSelectionService
from .services import ContextBundleService

logger = structlog.get_logger()

router = APIRouter(prefix="/context-bundles", tags=["Context Bundles"])

_summarizer: Optional[Summarizer] = None


def get_summarizer() -> Summarizer:
    """Process-wide summarizer; overridden in tests."""
    global _summarizer
    if _summarizer is None:
        _summarizer = OpenAISummarizer.from_settings()
    return _summarizer


def get_bundle_service(
    db: Session = Depends(get_db),
    summarizer: Summarizer = Depends(get_summarizer),
) -> ContextBundleService:
    return ContextBundleService(db, summarizer=summarizer)


def get_selection_service(
    db: Session = Depends(get_db),
    summarizer: Summarizer = Depends(get_summarizer),
) -> ArtifactSelectionService:
    return ArtifactSelectionService(db, summarizer=summarizer)


async def bundle_error_handler(request: Request, exc: BundleError) -> JSONResponse:
    """Render a BundleError raised by any route as a structured error body."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "bundle_request_failed",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        message=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()},
    )


# =============================================================================
# Build
# =============================================================================


@router.post("", status_code=201)
async def generate_bundle(
    request: BuildBundleRequest,
    service: ContextBundleService = Depends(get_bundle_service),
) -> Dict[str, Any]:
    """Build and store a context bundle, or return the identical stored one."""
    stored = await service.generate(request)
    return stored.to_response()


@router.post("/from-run", status_code=201)
async def generate_bundle_from_run(
    request: BuildFromRunRequest,
    service: ContextBundleService = Depends(get_bundle_service),
) -> Dict[str, Any]:
    """Build and store a context bundle describing an agent run."""
    stored = await service.generate_from_run(request)
    response = stored.to_response()
    response["run_id"] = request.run_id
    return response


@router.post("/preview")
async def preview_bundle(
    request: PreviewBundleRequest,
    service: ContextBundleService = Depends(get_bundle_service),
) -> Dict[str, Any]:
    """Build a bundle and report its size against the role budget without storing it."""
    return await service.preview(request)


@router.get("/budgets")
async def get_budgets() -> List[Dict[str, Any]]:
    """List the character budget of every role."""
    return [budget.to_dict() for budget in list_role_budgets()]


# =============================================================================
# Artifact selection
# =============================================================================


@router.post("/rank-artifacts")
async def rank_artifacts(
    request: RankArtifactsRequest,
    service: ArtifactSelectionService = Depends(get_selection_service),
) -> Dict[str, Any]:
    """Rank a ticket's artifacts by relevance; pinned artifacts are always selected."""
    return service.rank(request)


@router.post("/pins")
async def pin_artifact(
    request: PinArtifactRequest,
    service: ArtifactSelectionService = Depends(get_selection_service),
) -> Dict[str, Any]:
    """Pin an artifact so ranking always selects it. Pinning twice is a no-op."""
    pin, created = service.pin(request)
    return {
        "success": True,
        "message": "Artifact pinned successfully" if created else "Artifact already pinned",
        "pinned": True,
        "pin_id": pin.pin_id,
        "pin": pin.to_dict(),
    }


@router.delete("/pins/{ticket_pk}/{artifact_id}")
async def unpin_artifact(
    ticket_pk: str,
    artifact_id: str,
    role: Optional[str] = None,
    created_by: Optional[str] = None,
    service: ArtifactSelectionService = Depends(get_selection_service),
) -> Dict[str, Any]:
    """Remove the artifact's pin for a role, or all of its pins when role is omitted."""
    removed = service.unpin(ticket_pk, artifact_id, role=role, created_by=created_by)
    return {"success": True, "pinned": False, "removed": removed}


@router.post("/distill")
async def distill_artifacts(
    request: DistillArtifactsRequest,
    service: ArtifactSelectionService = Depends(get_selection_service),
) -> Dict[str, Any]:
    """Distill artifacts and report each one's outcome."""
    results = await service.distill(request)
    return {"success": True, "results": results}


# =============================================================================
# Verification
# =============================================================================


@router.post("/continuity-check")
async def check_continuity(
    request: ContinuityCheckRequest,
    service: ContextBundleService = Depends(get_bundle_service),
) -> Dict[str, Any]:
    """Rebuild a stored bundle from its receipt and compare checksums."""
    report = await service.check_continuity(
        bundle_id=request.bundle_id, receipt_id=request.receipt_id
    )
    return report.to_response()


# =============================================================================
# Read
# =============================================================================


@router.get("/tickets/{ticket_pk}")
async def list_ticket_bundles(
    ticket_pk: str,
    repo_full_name: str = Query(..., min_length=1),
    role: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service: ContextBundleService = Depends(get_bundle_service),
) -> List[Dict[str, Any]]:
    """List stored bundles for a ticket, newest version first."""
    bundles = service.list_for_ticket(
        repo_full_name, ticket_pk, role=role, limit=limit, offset=offset
    )
    return [bundle.to_summary() for bundle in bundles]


@router.get("/tickets/{ticket_pk}/latest")
async def get_latest_ticket_bundle(
    ticket_pk: str,
    repo_full_name: str = Query(..., min_length=1),
    role: str = Query(..., min_length=1),
    service: ContextBundleService = Depends(get_bundle_service),
) -> Dict[str, Any]:
    """Get the newest bundle for a ticket and role."""
    bundle = service.get_latest(repo_full_name, ticket_pk, role)
    return bundle.to_dict()


@router.get("/{bundle_id}/receipt")
async def get_bundle_receipt(
    bundle_id: str,
    service: ContextBundleService = Depends(get_bundle_service),
) -> Dict[str, Any]:
    """Get the receipt stored with a bundle."""
    receipt, bundle = service.get_receipt(bundle_id)
    return {
        "success": True,
        "receipt": receipt.to_dict(),
        "bundle": {
            "bundle_id": bundle.bundle_id,
            "ticket_id": bundle.ticket_id,
            "role": bundle.role,
            "version": bundle.version,
            "created_at": bundle.to_summary()["created_at"],
        },
    }


@router.get("/{bundle_id}/audit")
async def get_bundle_audit(
    bundle_id: str,
    service: ContextBundleService = Depends(get_bundle_service),
) -> List[Dict[str, Any]]:
    """Audit entries recorded for a bundle, newest first."""
    return [entry.to_dict() for entry in service.get_audit_history(bundle_id)]


@router.get("/{bundle_id}")
async def get_bundle(
    bundle_id: str,
    service: ContextBundleService = Depends(get_bundle_service),
) -> Dict[str, Any]:
    """Get a bundle including its payload."""
    bundle = service.get_bundle(bundle_id)
    return bundle.to_dict()


@router.put("/{bundle_id}")
@router.patch("/{bundle_id}")
async def update_bundle_blocked(bundle_id: str) -> None:
    """Context bundles are immutable and cannot be modified.

    To change what an agent sees, build a new bundle; it gets the next version.
    """
    raise HTTPException(
        status_code=405,
        detail={
            "error": "IMMUTABILITY_VIOLATION",
            "message": "Context bundles are immutable. Build a new bundle instead.",
            "object_id": bundle_id,
        },
    )
