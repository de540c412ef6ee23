"""
Context bundle service: versioned store and idempotency layer.

A request moves through ``BUILDING -> CHECKSUMMED -> REUSED | VERSIONED_NEW
-> PERSISTED | FAILED``. Identical content for the same (repo, ticket, role)
reuses the stored bundle. New content gets the next per-key version, and the
bundle, its receipt and the audit entry are committed in one transaction, so
a bundle never exists without its receipt.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ..config import Settings, get_settings
from ..db.audit_models import AuditLogModel
from ..db.audit_service import AuditService, parse_actor
from ..db.bundle_models import BundleReceiptModel, ContextBundleModel
from .budgets import calculate_overage, exceeds_budget, require_role_budget
from .builder import ROLE_RUN_TYPES, BuiltBundle, BundleBuilder, BundleIdentity
from .checksum import (
    bundle_checksum,
    content_checksum,
    section_metrics,
    serialized_length,
    total_characters,
)
from .distill import DistillationGate, OpenAISummarizer, Summarizer
from .enums import BundleState
from .errors import (
    BundleError,
    IdempotencyCheckError,
    InvalidRequestError,
    NotFoundError,
    StorageError,
    VersionConflictError,
)
from .primitives import (
    DistilledArtifact,
    GitRef,
    ManifestReference,
    RedReference,
    SelectedSnippet,
    generate_ulid,
    utc_now,
)
from .schemas import BuildBundleRequest, BuildFromRunRequest, PreviewBundleRequest
from .sources import AgentRunRecord, ContextSources, DatabaseContextSources

logger = structlog.get_logger()


@dataclass
class StoredBundle:
    """A bundle with its receipt, either freshly written or reused."""

    bundle: ContextBundleModel
    receipt: BundleReceiptModel
    reused: bool

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "reused": self.reused,
            "bundle": {
                "bundle_id": self.bundle.bundle_id,
                "version": self.bundle.version,
                "role": self.bundle.role,
                "created_at": self.bundle.to_summary()["created_at"],
            },
            "receipt": {
                "receipt_id": self.receipt.receipt_id,
                "content_checksum": self.receipt.content_checksum,
                "bundle_checksum": self.receipt.bundle_checksum,
                "section_metrics": self.receipt.section_metrics,
                "total_characters": self.receipt.total_characters,
            },
        }


@dataclass
class ContinuityReport:
    """Outcome of rebuilding a stored bundle from its receipt."""

    bundle: ContextBundleModel
    receipt: BundleReceiptModel
    original_checksum: str
    rebuilt_checksum: Optional[str]
    stored_checksums_valid: bool
    run_continuity: Dict[str, Any]
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    rebuilt_from: Dict[str, Any] = field(default_factory=dict)

    @property
    def checksum_match(self) -> bool:
        return self.rebuilt_checksum == self.original_checksum

    @property
    def passed(self) -> bool:
        return self.checksum_match and not self.errors

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "passed": self.passed,
            "original_checksum": self.original_checksum,
            "rebuilt_checksum": self.rebuilt_checksum,
            "checksum_match": self.checksum_match,
            "stored_checksums_valid": self.stored_checksums_valid,
            "run_continuity": self.run_continuity,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "details": {
                "receipt_id": self.receipt.receipt_id,
                "bundle_id": self.bundle.bundle_id,
                "ticket_pk": self.bundle.ticket_pk,
                "ticket_id": self.bundle.ticket_id,
                "repo_full_name": self.bundle.repo_full_name,
                "role": self.bundle.role,
                "version": self.bundle.version,
                "rebuilt_from": self.rebuilt_from,
            },
        }


def describe_run_continuity(
    runs: List[AgentRunRecord], role: str, agent_type: str
) -> Dict[str, Any]:
    """Which run a restarted agent would resume, given the runs newest first."""
    if not runs:
        return {
            "original_run_id": None,
            "resumed_run_id": None,
            "continuity_maintained": True,
            "explanation": (
                f"No agent runs found for role {role} (agent_type {agent_type}). "
                "Continuity check passed (no runs to verify)."
            ),
        }
    latest = runs[0]
    if len(runs) == 1:
        explanation = (
            f"Single agent run found ({latest.run_id}). "
            "Continuity maintained - no new unrelated run created."
        )
    else:
        explanation = (
            f"Multiple agent runs found ({len(runs)} total). Most recent run "
            f"{latest.run_id} would be resumed."
        )
    return {
        "original_run_id": runs[-1].run_id,
        "resumed_run_id": latest.run_id,
        "continuity_maintained": True,
        "explanation": explanation,
    }


def require_git_ref(git_ref: Optional[GitRef]) -> GitRef:
    if git_ref is None or git_ref.is_blank():
        raise InvalidRequestError(
            "git_ref is required and must include at least one of pr_url, base_sha or head_sha."
        )
    return git_ref


class ContextBundleService:
    """Builds, stores and reads context bundles."""

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
        self.audit = audit or AuditService(db)
        gate = DistillationGate(
            summarizer or OpenAISummarizer.from_settings(self.settings),
            timeout_seconds=self.settings.distill_timeout_seconds,
            max_concurrency=self.settings.distill_max_concurrency,
        )
        self.builder = BundleBuilder(
            sources or DatabaseContextSources(db), gate, settings=self.settings
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def generate(self, request: BuildBundleRequest) -> StoredBundle:
        """Build a bundle from the request and store it, or reuse an identical one."""
        require_role_budget(request.role)
        git_ref = require_git_ref(request.git_ref)

        built = await self.builder.build(
            role=request.role,
            ticket_pk=request.ticket_pk,
            ticket_id=request.ticket_id,
            repo_full_name=request.repo_full_name,
            bundle_json=request.bundle_json,
            selected_artifact_ids=request.selected_artifact_ids,
            selected_snippets=request.selected_snippets,
            red_reference=request.red_reference,
            integration_manifest_reference=request.integration_manifest_reference,
        )
        return self.store(
            built,
            git_ref,
            created_by=request.created_by,
            trace_id=request.trace_id,
        )

    async def generate_from_run(self, request: BuildFromRunRequest) -> StoredBundle:
        """Build a bundle describing an agent run and store it."""
        context = self.builder.run_context(request.run_id, role=request.role)
        git_ref = require_git_ref(request.git_ref or context.git_ref)

        built = await self.builder.build(
            role=context.role,
            ticket_pk=context.ticket.pk,
            ticket_id=context.ticket.id,
            repo_full_name=context.repo_full_name,
            bundle_json=context.sections,
            selected_artifact_ids=request.selected_artifact_ids,
            selected_snippets=request.selected_snippets,
        )
        return self.store(
            built,
            git_ref,
            created_by=request.created_by,
            trace_id=request.trace_id,
        )

    def store(
        self,
        built: BuiltBundle,
        git_ref: GitRef,
        created_by: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> StoredBundle:
        """Persist a built bundle with its receipt, reusing identical content."""
        git_ref = require_git_ref(git_ref)
        identity = built.identity
        log = logger.bind(**identity.to_dict(), trace_id=trace_id)

        content_sum = content_checksum(built.payload)
        existing, latest_version = self._lookup(identity, content_sum)
        provisional_version = latest_version + 1
        provisional_sum = self._bundle_checksum(identity, content_sum, provisional_version)
        log.info(
            "bundle_state",
            state=BundleState.CHECKSUMMED.value,
            content_checksum=content_sum,
            provisional_version=provisional_version,
            provisional_bundle_checksum=provisional_sum,
        )

        attempts = self.settings.version_conflict_retries
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                existing, latest_version = self._lookup(identity, content_sum)

            if existing is not None:
                return self._reuse(existing, log)

            version = latest_version + 1
            bundle_sum = (
                provisional_sum
                if version == provisional_version
                else self._bundle_checksum(identity, content_sum, version)
            )
            log.info(
                "bundle_state",
                state=BundleState.VERSIONED_NEW.value,
                version=version,
                bundle_checksum=bundle_sum,
                attempt=attempt,
            )

            try:
                bundle, receipt = self._insert(
                    built, git_ref, content_sum, bundle_sum, version, created_by, trace_id
                )
            except IntegrityError:
                self.db.rollback()
                log.warning("bundle_version_conflict", version=version, attempt=attempt)
                continue
            except SQLAlchemyError as e:
                self.db.rollback()
                log.error("bundle_state", state=BundleState.FAILED.value, error=str(e))
                raise StorageError(
                    "Failed to store bundle and receipt; nothing was persisted.",
                    details={"reason": str(e)},
                ) from e

            log.info(
                "bundle_state",
                state=BundleState.PERSISTED.value,
                bundle_id=bundle.bundle_id,
                version=version,
                total_characters=receipt.total_characters,
            )
            return StoredBundle(bundle=bundle, receipt=receipt, reused=False)

        log.error("bundle_state", state=BundleState.FAILED.value, error="version_conflict")
        raise VersionConflictError(
            f"Could not allocate a bundle version after {attempts} attempt(s); "
            "concurrent writers kept taking it.",
            details=identity.to_dict(),
        )

    def _lookup(
        self, identity: BundleIdentity, content_sum: str
    ) -> Tuple[Optional[ContextBundleModel], int]:
        """Newest bundle with this content for the key, and the key's latest version."""
        try:
            key = (
                ContextBundleModel.repo_full_name == identity.repo_full_name,
                ContextBundleModel.ticket_pk == identity.ticket_pk,
                ContextBundleModel.role == identity.role,
            )
            # Receipt is loaded here so a store failure surfaces as an idempotency error
            existing = (
                self.db.query(ContextBundleModel)
                .options(joinedload(ContextBundleModel.receipt))
                .filter(*key, ContextBundleModel.content_checksum == content_sum)
                .order_by(desc(ContextBundleModel.version))
                .first()
            )
            latest_version = (
                self.db.query(func.max(ContextBundleModel.version)).filter(*key).scalar()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "bundle_idempotency_check_failed", **identity.to_dict(), error=str(e)
            )
            raise IdempotencyCheckError(
                "Could not check for an existing identical bundle; refusing to write a new one.",
                details={"reason": str(e)},
            ) from e
        return existing, latest_version or 0

    def _reuse(self, existing: ContextBundleModel, log) -> StoredBundle:
        receipt = existing.receipt
        if receipt is None:
            raise IdempotencyCheckError(
                f"Bundle {existing.bundle_id} matches this content but has no receipt.",
                details={"bundle_id": existing.bundle_id},
            )
        log.info(
            "bundle_state",
            state=BundleState.REUSED.value,
            bundle_id=existing.bundle_id,
            version=existing.version,
        )
        return StoredBundle(bundle=existing, receipt=receipt, reused=True)

    @staticmethod
    def _bundle_checksum(identity: BundleIdentity, content_sum: str, version: int) -> str:
        return bundle_checksum(
            content_sum,
            identity.repo_full_name,
            identity.ticket_pk,
            identity.ticket_id,
            identity.role,
            version,
        )

    def _insert(
        self,
        built: BuiltBundle,
        git_ref: GitRef,
        content_sum: str,
        bundle_sum: str,
        version: int,
        created_by: Optional[str],
        trace_id: Optional[str],
    ) -> Tuple[ContextBundleModel, BundleReceiptModel]:
        identity = built.identity
        bundle_id = generate_ulid()
        created_at = utc_now()

        payload = copy.deepcopy(built.payload)
        payload["meta"].update(
            bundle_id=bundle_id,
            version=version,
            created_at=created_at.isoformat(),
            content_checksum=content_sum,
            bundle_checksum=bundle_sum,
        )
        metrics = section_metrics(payload)

        bundle = ContextBundleModel(
            bundle_id=bundle_id,
            repo_full_name=identity.repo_full_name,
            ticket_pk=identity.ticket_pk,
            ticket_id=identity.ticket_id,
            role=identity.role,
            version=version,
            bundle_json=payload,
            content_checksum=content_sum,
            bundle_checksum=bundle_sum,
            created_by=(created_by or "").strip() or "system",
            trace_id=trace_id,
            created_at=created_at,
        )
        self.db.add(bundle)
        self.db.flush()

        receipt = BundleReceiptModel(
            receipt_id=generate_ulid(),
            bundle_id=bundle_id,
            repo_full_name=identity.repo_full_name,
            ticket_pk=identity.ticket_pk,
            ticket_id=identity.ticket_id,
            role=identity.role,
            content_checksum=content_sum,
            bundle_checksum=bundle_sum,
            section_metrics=metrics,
            total_characters=total_characters(metrics),
            red_reference=built.red_reference.model_dump() if built.red_reference else None,
            integration_manifest_reference=(
                built.manifest_reference.model_dump() if built.manifest_reference else None
            ),
            git_ref=git_ref.to_dict(),
            artifact_references=[ref.model_dump() for ref in built.artifact_references],
            selected_snippets=[s.model_dump(exclude_none=True) for s in built.selected_snippets],
            created_at=created_at,
        )
        self.db.add(receipt)

        actor_kind, actor_id = parse_actor(bundle.created_by)
        self.audit.log_create(
            "ContextBundle",
            bundle_id,
            bundle.to_summary(),
            actor_kind=actor_kind,
            actor_id=actor_id,
            note=f"{identity.role} v{version}",
            trace_id=trace_id,
            commit=False,
        )

        self.db.commit()
        return bundle, receipt

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    async def preview(self, request: PreviewBundleRequest) -> Dict[str, Any]:
        """Build a bundle and measure it against the role budget. Writes nothing."""
        budget = require_role_budget(request.role)
        built = await self.builder.build(
            role=request.role,
            ticket_pk=request.ticket_pk,
            ticket_id=request.ticket_id,
            repo_full_name=request.repo_full_name,
            bundle_json=request.bundle_json,
            selected_artifact_ids=request.selected_artifact_ids,
            selected_snippets=request.selected_snippets,
            red_reference=request.red_reference,
            integration_manifest_reference=request.integration_manifest_reference,
        )
        character_count = serialized_length(built.payload)
        return {
            "success": True,
            "budget": {
                "characterCount": character_count,
                "hardLimit": budget.hard_limit,
                "role": budget.role,
                "displayName": budget.display_name,
                "exceeds": exceeds_budget(budget.role, character_count),
                "overage": calculate_overage(budget.role, character_count),
            },
            "sectionMetrics": section_metrics(built.payload),
            "bundle": built.payload,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_bundle(self, bundle_id: str) -> ContextBundleModel:
        bundle = (
            self.db.query(ContextBundleModel)
            .filter(ContextBundleModel.bundle_id == bundle_id)
            .first()
        )
        if bundle is None:
            raise NotFoundError("ContextBundle", bundle_id)
        return bundle

    def get_receipt(self, bundle_id: str) -> Tuple[BundleReceiptModel, ContextBundleModel]:
        receipt = (
            self.db.query(BundleReceiptModel)
            .filter(BundleReceiptModel.bundle_id == bundle_id)
            .first()
        )
        if receipt is None:
            raise NotFoundError("BundleReceipt", bundle_id, message="Receipt not found for this bundle")
        return receipt, receipt.bundle

    def list_for_ticket(
        self,
        repo_full_name: str,
        ticket_pk: str,
        role: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ContextBundleModel]:
        """Bundles for a ticket, newest version first."""
        query = self.db.query(ContextBundleModel).filter(
            ContextBundleModel.repo_full_name == repo_full_name,
            ContextBundleModel.ticket_pk == ticket_pk,
        )
        if role:
            require_role_budget(role)
            query = query.filter(ContextBundleModel.role == role)
        return (
            query.order_by(desc(ContextBundleModel.version), desc(ContextBundleModel.created_at))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_latest(self, repo_full_name: str, ticket_pk: str, role: str) -> ContextBundleModel:
        require_role_budget(role)
        bundle = (
            self.db.query(ContextBundleModel)
            .filter(
                ContextBundleModel.repo_full_name == repo_full_name,
                ContextBundleModel.ticket_pk == ticket_pk,
                ContextBundleModel.role == role,
            )
            .order_by(desc(ContextBundleModel.version))
            .first()
        )
        if bundle is None:
            raise NotFoundError(
                "ContextBundle",
                f"{repo_full_name}#{ticket_pk}/{role}",
                message="No bundle stored for this ticket and role",
            )
        return bundle

    def get_audit_history(self, bundle_id: str) -> List[AuditLogModel]:
        """Audit entries recorded for a bundle, newest first."""
        self.get_bundle(bundle_id)
        return self.audit.query_by_entity("ContextBundle", bundle_id)

    # ------------------------------------------------------------------
    # Continuity
    # ------------------------------------------------------------------

    def _load_for_continuity(
        self, bundle_id: Optional[str], receipt_id: Optional[str]
    ) -> Tuple[ContextBundleModel, BundleReceiptModel]:
        if receipt_id:
            receipt = (
                self.db.query(BundleReceiptModel)
                .filter(BundleReceiptModel.receipt_id == receipt_id)
                .first()
            )
            if receipt is None:
                raise NotFoundError("BundleReceipt", receipt_id)
            if bundle_id and receipt.bundle_id != bundle_id:
                raise InvalidRequestError(
                    "receipt_id does not belong to bundle_id.",
                    details={"bundle_id": bundle_id, "receipt_id": receipt_id},
                )
            return receipt.bundle, receipt
        if bundle_id:
            receipt, bundle = self.get_receipt(bundle_id)
            return bundle, receipt
        raise InvalidRequestError("bundle_id or receipt_id is required")

    async def check_continuity(
        self, bundle_id: Optional[str] = None, receipt_id: Optional[str] = None
    ) -> ContinuityReport:
        """Rebuild a stored bundle from its receipt and compare checksums.

        The rebuild pins the RED and manifest versions recorded on the receipt
        and reuses the stored distilled summaries, so it only diverges when
        the stored payload or the pinned sources changed. Newer RED or
        manifest versions are reported as warnings.
        """
        bundle, receipt = self._load_for_continuity(bundle_id, receipt_id)
        identity = BundleIdentity(
            repo_full_name=bundle.repo_full_name,
            ticket_pk=bundle.ticket_pk,
            ticket_id=bundle.ticket_id,
            role=bundle.role,
        )
        log = logger.bind(**identity.to_dict(), bundle_id=bundle.bundle_id)
        errors: List[str] = []
        warnings: List[str] = []

        stored = bundle.bundle_json or {}
        stored_sum = content_checksum(stored)
        expected_bundle_sum = self._bundle_checksum(identity, stored_sum, bundle.version)
        stored_valid = True
        for label, recorded, recomputed in (
            ("receipt content_checksum", receipt.content_checksum, stored_sum),
            ("bundle content_checksum", bundle.content_checksum, stored_sum),
            ("receipt bundle_checksum", receipt.bundle_checksum, expected_bundle_sum),
            ("bundle bundle_checksum", bundle.bundle_checksum, expected_bundle_sum),
        ):
            if recorded != recomputed:
                stored_valid = False
                errors.append(
                    f"Stored payload does not match {label}: "
                    f"recorded={(recorded or '')[:16]}..., recomputed={recomputed[:16]}..."
                )

        red_ref = RedReference(**receipt.red_reference) if receipt.red_reference else None
        manifest_ref = (
            ManifestReference(**receipt.integration_manifest_reference)
            if receipt.integration_manifest_reference
            else None
        )
        if red_ref is None:
            warnings.append("Receipt missing RED reference - bundle may not be fully reconstructible")
        if manifest_ref is None:
            warnings.append(
                "Receipt missing Integration Manifest reference - "
                "bundle may not be fully reconstructible"
            )

        rebuilt_checksum: Optional[str] = None
        try:
            rebuilt = await self.builder.build(
                role=identity.role,
                ticket_pk=identity.ticket_pk,
                ticket_id=identity.ticket_id,
                repo_full_name=identity.repo_full_name,
                bundle_json=stored,
                selected_snippets=[SelectedSnippet(**s) for s in receipt.selected_snippets or []],
                red_reference=red_ref,
                integration_manifest_reference=manifest_ref,
                distilled_artifacts=[
                    DistilledArtifact(**a) for a in stored.get("distilled_artifacts") or []
                ],
            )
        except BundleError as e:
            errors.append(f"Failed to rebuild bundle from receipt: {e.message}")
        else:
            rebuilt_checksum = content_checksum(rebuilt.payload)
            if rebuilt_checksum != receipt.content_checksum:
                errors.append(
                    f"Content checksum mismatch: original={receipt.content_checksum[:16]}..., "
                    f"rebuilt={rebuilt_checksum[:16]}..."
                )

        sources = self.builder.sources
        latest_red = sources.get_latest_red(identity.repo_full_name, identity.ticket_pk)
        if red_ref and latest_red and (latest_red.red_id, latest_red.version) != (
            red_ref.id,
            red_ref.version,
        ):
            warnings.append(
                f"Newer RED available: receipt={red_ref.id} v{red_ref.version}, "
                f"latest={latest_red.red_id} v{latest_red.version}"
            )
        latest_manifest = sources.get_latest_manifest(
            identity.repo_full_name, self.settings.manifest_schema_version
        )
        if manifest_ref and latest_manifest and (
            latest_manifest.manifest_id,
            latest_manifest.version,
        ) != (manifest_ref.manifest_id, manifest_ref.version):
            warnings.append(
                "Integration Manifest version mismatch: "
                f"receipt={manifest_ref.manifest_id} v{manifest_ref.version}, "
                f"latest={latest_manifest.manifest_id} v{latest_manifest.version}"
            )

        agent_type = ROLE_RUN_TYPES.get(identity.role, identity.role)
        runs = sources.list_agent_runs(identity.repo_full_name, identity.ticket_pk, agent_type)

        report = ContinuityReport(
            bundle=bundle,
            receipt=receipt,
            original_checksum=receipt.content_checksum,
            rebuilt_checksum=rebuilt_checksum,
            stored_checksums_valid=stored_valid,
            run_continuity=describe_run_continuity(runs, identity.role, agent_type),
            errors=errors,
            warnings=warnings,
            rebuilt_from={
                "red_reference": receipt.red_reference,
                "integration_manifest_reference": receipt.integration_manifest_reference,
                "git_ref": receipt.git_ref,
            },
        )
        log.info(
            "bundle_continuity_checked",
            receipt_id=receipt.receipt_id,
            passed=report.passed,
            checksum_match=report.checksum_match,
            errors=len(errors),
            warnings=len(warnings),
        )
        return report
