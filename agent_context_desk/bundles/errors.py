"""
Error taxonomy for context bundle operations.

Services raise these; the HTTP router turns them into structured JSON error
responses using ``status_code`` and ``to_dict()``.
"""

from typing import Any, Dict, List, Optional


class BundleError(Exception):
    """Base class for all context bundle failures."""

    code = "BUNDLE_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidRequestError(BundleError):
    """The request is missing or carries malformed input."""

    code = "INVALID_REQUEST"
    status_code = 400


class UnknownRoleError(BundleError):
    """The role has no budget entry."""

    code = "UNKNOWN_ROLE"
    status_code = 400

    def __init__(self, role: str, valid_roles: List[str]):
        self.role = role
        super().__init__(
            f"Unknown role: {role}. Valid roles: {', '.join(valid_roles)}",
            details={"role": role, "valid_roles": valid_roles},
        )


class NotFoundError(BundleError):
    """A referenced ticket, document, manifest, run or bundle does not exist."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, object_type: str, object_id: Any, message: Optional[str] = None):
        self.object_type = object_type
        self.object_id = object_id
        super().__init__(
            message or f"{object_type} not found: {object_id}",
            details={"object_type": object_type, "object_id": object_id},
        )


class DistillationFailedError(BundleError):
    """One or more selected artifacts could not be distilled.

    ``failures`` maps artifact id to error text, in the order the artifacts
    were selected.
    """

    code = "DISTILLATION_FAILED"
    status_code = 400

    def __init__(self, failures: Dict[str, str]):
        self.failures = failures
        super().__init__(
            f"Distillation failed for {len(failures)} artifact(s). "
            "Bundle creation blocked until all selected artifacts distill successfully.",
            details={
                "distillation_errors": [
                    {"artifact_id": artifact_id, "error": error}
                    for artifact_id, error in failures.items()
                ]
            },
        )

    @property
    def failed_artifact_ids(self) -> List[str]:
        return list(self.failures)


class IdempotencyCheckError(BundleError):
    """The store could not be searched for an identical existing bundle."""

    code = "IDEMPOTENCY_CHECK_FAILED"
    status_code = 500


class VersionConflictError(BundleError):
    """Concurrent writers kept taking the next version for this key."""

    code = "VERSION_CONFLICT"
    status_code = 409


class StorageError(BundleError):
    """Writing the bundle or its receipt failed; nothing was persisted."""

    code = "STORAGE_ERROR"
    status_code = 500


class ImmutabilityError(BundleError):
    """Raised when attempting to modify a stored bundle or receipt."""

    code = "IMMUTABILITY_VIOLATION"
    status_code = 405

    def __init__(self, object_type: str, object_id: str):
        self.object_type = object_type
        self.object_id = object_id
        super().__init__(
            f"{object_type} objects are immutable. Cannot modify {object_id}.",
            details={"object_type": object_type, "object_id": object_id},
        )
