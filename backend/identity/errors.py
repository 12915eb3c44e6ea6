"""
Identity Reconciliation - Error Taxonomy

Errors raised (or recorded) by the reconciliation engine.

Propagation rules:
- TokenAcquisitionFailed and ContactResolutionFailed reach the caller
- IdentityNotFound / DomainRecordNotFound are absence signals
- PartialResolutionFailure is recorded on the domain graph, never raised
- MetadataPersistFailed is reported as persisted=False
- ProfileFetchTimeout resolves to a claims-only profile
"""

from typing import Optional, Dict, Any


class ReconciliationError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class TokenAcquisitionFailed(ReconciliationError):
    """The client-credentials exchange failed after all retries."""

    def __init__(self, message: str, attempts: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message, {"attempts": attempts})
        self.attempts = attempts
        self.cause = cause


class IdentityNotFound(ReconciliationError):
    """No provider identity matched the subject id or email."""


class DomainRecordNotFound(ReconciliationError):
    """A record referenced by id or filter does not exist in the record store."""

    def __init__(self, entity_type: str, record_id: Optional[str] = None):
        super().__init__(
            f"{entity_type} record not found" + (f": {record_id}" if record_id else ""),
            {"entity_type": entity_type, "record_id": record_id},
        )
        self.entity_type = entity_type
        self.record_id = record_id


class ContactResolutionFailed(ReconciliationError):
    """The anchor Contact could not be fetched at all (store error, not absence)."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class PartialResolutionFailure(ReconciliationError):
    """One optional piece of the domain graph failed to resolve."""

    def __init__(self, entity_type: str, record_id: Optional[str], cause: BaseException):
        super().__init__(
            f"Failed to resolve {entity_type} {record_id or ''}".strip() + f": {cause}",
            {"entity_type": entity_type, "record_id": record_id},
        )
        self.entity_type = entity_type
        self.record_id = record_id
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "record_id": self.record_id,
            "error": type(self.cause).__name__,
            "message": str(self.cause),
        }


class MetadataPersistFailed(ReconciliationError):
    """Writing metadata back to the identity provider failed."""

    def __init__(self, subject_id: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(
            f"Failed to persist metadata for {subject_id} after {attempts} attempt(s)",
            {"subject_id": subject_id, "attempts": attempts},
        )
        self.subject_id = subject_id
        self.attempts = attempts
        self.cause = cause


class ProfileFetchTimeout(ReconciliationError):
    """Profile aggregation exceeded the caller-imposed deadline."""

    def __init__(self, mode: str, timeout_seconds: float):
        super().__init__(
            f"Profile fetch ({mode}) timed out after {timeout_seconds}s",
            {"mode": mode, "timeout_seconds": timeout_seconds},
        )
        self.mode = mode
        self.timeout_seconds = timeout_seconds


class InvalidProfileUpdate(ReconciliationError):
    """A profile update request failed validation."""
