"""
Exceptions and error classification for the storage consolidation engine.

Every failure the engine can observe falls into one of four categories:

    TRANSIENT     Backend busy, quota hit, lock contention. Retrying the
                  same call unchanged may succeed.
    PERMANENT     Malformed record, failed transform, duplicate key after
                  transform. Recorded in the report, never retried
                  automatically.
    PRECONDITION  BackupRequired, InvalidTransition, NoBackupAvailable.
                  Rejected before any mutation; the caller must fix the
                  precondition and re-issue.
    INTEGRITY     Dangling foreign key, missing required field, duplicate
                  id. Surfaced by integrity validation only.

Exception Hierarchy:
    ConsolidatorError (base)
    +-- BackendError
    |   +-- TransientBackendError
    |   |   +-- BackendUnavailableError
    |   +-- PermanentBackendError
    |       +-- DuplicateKeyError
    |       +-- RecordNotFoundError
    |       +-- CorruptPayloadError
    +-- TransformError
    +-- PreconditionError
        +-- BackupRequiredError
        +-- InvalidTransitionError
        +-- NoBackupAvailableError

Only precondition errors and backend unavailability are meant to reach the
caller of a migration operation; record-level failures are accumulated in
the MigrationReport instead.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

if TYPE_CHECKING:
    from consolidator.models import MigrationMode

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    Severity level of engine errors.

    Attributes:
        CRITICAL: Data at risk; requires immediate operator attention.
        ERROR: Operation failed and needs operator intervention.
        WARNING: Tolerated failure that may resolve on its own.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorCategory(Enum):
    """
    Error taxonomy used in reports and for retry decisions.

    Attributes:
        TRANSIENT: Safe to retry the same operation unchanged.
        PERMANENT: Recorded, not retried automatically.
        PRECONDITION: Rejected before any mutation occurred.
        INTEGRITY: Reported by integrity validation, never auto-repaired.
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    PRECONDITION = "precondition"
    INTEGRITY = "integrity"

    @property
    def should_retry(self) -> bool:
        """
        Check if automatic retry is appropriate for this category.

        Returns:
            True only for TRANSIENT errors.
        """
        return self == ErrorCategory.TRANSIENT


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for retrying transient failures.

    Implements exponential backoff with jitter.

    Attributes:
        max_attempts: Maximum number of attempts (including the first one).
        base_delay_ms: Base delay between attempts in milliseconds.
        max_delay_ms: Maximum delay between attempts in milliseconds.
        exponential_base: Base for exponential backoff.
        jitter_factor: Random jitter factor (0.0 to 1.0).

    Example:
        >>> config = RetryConfig(max_attempts=5, base_delay_ms=100)
        >>> config.get_delay_ms(attempt=3)  # ~800ms plus jitter
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate delay for a specific retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds before the next attempt.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)

        if self.jitter_factor > 0:
            jitter = delay * self.jitter_factor * random.random()  # nosec B311
            delay = delay + jitter

        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        """Create from dictionary."""
        return cls(
            max_attempts=data.get("max_attempts", 3),
            base_delay_ms=data.get("base_delay_ms", 100.0),
            max_delay_ms=data.get("max_delay_ms", 30000.0),
            exponential_base=data.get("exponential_base", 2.0),
            jitter_factor=data.get("jitter_factor", 0.1),
        )


NO_RETRY = RetryConfig(max_attempts=1, base_delay_ms=0.0, max_delay_ms=0.0, jitter_factor=0.0)
"""Single attempt; transient failures are reported as-is."""

TRANSIENT_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=100.0,
    max_delay_ms=30000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)
"""Backoff suited to lock contention and quota errors."""


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing how an error should be handled.

    Attributes:
        severity: The severity level of the error.
        category: Taxonomy bucket driving retry and propagation decisions.
        error_code: Unique error code for programmatic handling.
        suggested_action: Human-readable guidance for operators.
    """

    severity: ErrorSeverity
    category: ErrorCategory
    error_code: str
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        """Convert classification to dictionary for serialization."""
        return {
            "severity": self.severity.value,
            "category": self.category.value,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action,
        }


class ConsolidatorError(Exception):
    """
    Base exception for all storage consolidation errors.

    Attributes:
        message: Human-readable error description.
        entity_type: Entity type involved, if applicable.
        record_id: Record id involved, if applicable.
        classification: Handling metadata for this error class.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.PERMANENT,
        error_code="CONSOLIDATOR_ERROR",
        suggested_action="Review logs for the failing operation",
    )

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        record_id: str | None = None,
    ) -> None:
        self.message = message
        self.entity_type = entity_type
        self.record_id = record_id
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.entity_type:
            parts.append(f"entity_type={self.entity_type}")
        if self.record_id:
            parts.append(f"record_id={self.record_id}")
        return " | ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """Get the classification for this error."""
        return self._default_classification

    @property
    def category(self) -> ErrorCategory:
        """Get the taxonomy category for this error."""
        return self.classification.category

    @property
    def error_code(self) -> str:
        """Get the unique error code."""
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for serialization.

        Returns:
            Dictionary with error details.
        """
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "entity_type": self.entity_type,
            "record_id": self.record_id,
            "classification": self.classification.to_dict(),
        }


# =============================================================================
# Backend errors
# =============================================================================


class BackendError(ConsolidatorError):
    """Base exception for failures raised by a storage backend adapter."""


class TransientBackendError(BackendError):
    """
    Raised when a backend is temporarily unable to serve a request.

    Examples are storage quota exhaustion, a locked database file or lock
    contention. Retrying the same call may succeed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        category=ErrorCategory.TRANSIENT,
        error_code="BACKEND_TRANSIENT",
        suggested_action="Retry the operation with backoff",
    )


class BackendUnavailableError(TransientBackendError):
    """
    Raised when a backend cannot be reached at all.

    Unlike record-level failures this propagates to the caller of
    migration operations, since no partial progress is possible.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        category=ErrorCategory.TRANSIENT,
        error_code="BACKEND_UNAVAILABLE",
        suggested_action="Check that the backend is reachable, then retry",
    )

    def __init__(self, backend: str, reason: str) -> None:
        self.backend = backend
        self.reason = reason
        super().__init__(f"Backend '{backend}' unavailable: {reason}")


class PermanentBackendError(BackendError):
    """Raised when a backend rejects a request in a way retrying cannot fix."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.PERMANENT,
        error_code="BACKEND_PERMANENT",
        suggested_action="Inspect and correct the offending record",
    )


class DuplicateKeyError(PermanentBackendError):
    """Raised by create() when a record with the same id already exists."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.PERMANENT,
        error_code="DUPLICATE_KEY",
        suggested_action="Use update() or choose a different id",
    )

    def __init__(self, entity_type: str, record_id: str) -> None:
        super().__init__(
            f"Record with id '{record_id}' already exists",
            entity_type=entity_type,
            record_id=record_id,
        )


class RecordNotFoundError(PermanentBackendError):
    """Raised by update() and delete() when the id does not exist."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        category=ErrorCategory.PERMANENT,
        error_code="RECORD_NOT_FOUND",
        suggested_action="Verify the id and entity type",
    )

    def __init__(self, entity_type: str, record_id: str) -> None:
        super().__init__(
            f"Record '{record_id}' not found",
            entity_type=entity_type,
            record_id=record_id,
        )


class CorruptPayloadError(PermanentBackendError):
    """Raised when stored data cannot be decoded into records."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        category=ErrorCategory.PERMANENT,
        error_code="CORRUPT_PAYLOAD",
        suggested_action="Restore the affected collection from a backup",
    )

    def __init__(self, entity_type: str, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Corrupt payload: {reason}", entity_type=entity_type)


# =============================================================================
# Transform errors
# =============================================================================


class TransformError(ConsolidatorError):
    """Raised when a legacy record cannot be transformed into target shape."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.PERMANENT,
        error_code="TRANSFORM_FAILED",
        suggested_action="Correct the legacy record and retry the failed records",
    )

    def __init__(self, entity_type: str, reason: str, record_id: str | None = None) -> None:
        self.reason = reason
        super().__init__(
            f"Transform failed: {reason}",
            entity_type=entity_type,
            record_id=record_id,
        )


# =============================================================================
# Precondition errors
# =============================================================================


class PreconditionError(ConsolidatorError):
    """Base exception for operations rejected before any mutation occurred."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.PRECONDITION,
        error_code="PRECONDITION_FAILED",
        suggested_action="Satisfy the precondition and re-issue the operation",
    )


class BackupRequiredError(PreconditionError):
    """Raised when a migration is requested before any backup exists."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.PRECONDITION,
        error_code="BACKUP_REQUIRED",
        suggested_action="Call create_backup() before migrating",
    )

    def __init__(self) -> None:
        super().__init__("A backup must be created before migrating")


class InvalidTransitionError(PreconditionError):
    """
    Raised when a migration mode transition is not an allowed edge.

    Attributes:
        current_mode: Mode the system is in.
        requested_mode: Mode that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.PRECONDITION,
        error_code="INVALID_TRANSITION",
        suggested_action="Move through legacy -> transitioning -> modern in order",
    )

    def __init__(self, current_mode: MigrationMode, requested_mode: MigrationMode) -> None:
        self.current_mode = current_mode
        self.requested_mode = requested_mode
        super().__init__(
            f"Invalid mode transition: {current_mode.value} -> {requested_mode.value}"
        )


class NoBackupAvailableError(PreconditionError):
    """Raised when a rollback is requested but no backup snapshot exists."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        category=ErrorCategory.PRECONDITION,
        error_code="NO_BACKUP_AVAILABLE",
        suggested_action="No snapshot to restore from; legacy data cannot be rolled back",
    )

    def __init__(self) -> None:
        super().__init__("No backup snapshot available for rollback")


# =============================================================================
# Classification of arbitrary exceptions
# =============================================================================

_TRANSIENT_DB_MARKERS = ("database is locked", "database is busy", "disk i/o", "quota")


def classify_exception(exc: BaseException) -> ErrorCategory:
    """
    Classify any exception into the engine's error taxonomy.

    ConsolidatorError subclasses carry their own classification. Foreign
    exceptions are mapped by type: lock and connectivity problems are
    TRANSIENT, constraint and validation failures PERMANENT, and anything
    unrecognised defaults to PERMANENT so it is never retried blindly.

    Args:
        exc: The exception to classify.

    Returns:
        The ErrorCategory for the exception.
    """
    if isinstance(exc, ConsolidatorError):
        return exc.category

    if isinstance(exc, IntegrityError):
        return ErrorCategory.PERMANENT

    if isinstance(exc, OperationalError):
        message = str(exc).lower()
        if any(marker in message for marker in _TRANSIENT_DB_MARKERS):
            return ErrorCategory.TRANSIENT
        if exc.connection_invalidated:
            return ErrorCategory.TRANSIENT
        return ErrorCategory.PERMANENT

    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return ErrorCategory.TRANSIENT

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT

    if isinstance(exc, (ValidationError, ValueError, TypeError, KeyError)):
        return ErrorCategory.PERMANENT

    return ErrorCategory.PERMANENT


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    description: str = "operation",
) -> T:
    """
    Run an async operation, re-issuing it while it fails transiently.

    Non-transient failures propagate immediately. When the retry budget is
    exhausted the last transient exception propagates unchanged so that the
    caller can still classify it as TRANSIENT.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt.
        config: Retry policy.
        description: Label used in log lines.

    Returns:
        The result of the first successful attempt.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if classify_exception(e) != ErrorCategory.TRANSIENT:
                raise
            attempt += 1
            if attempt >= config.max_attempts:
                logger.warning(
                    "%s still failing after %d attempts: %s", description, attempt, e
                )
                raise
            delay_ms = config.get_delay_ms(attempt - 1)
            logger.debug(
                "Transient failure in %s (attempt %d/%d), retrying in %.0fms: %s",
                description,
                attempt,
                config.max_attempts,
                delay_ms,
                e,
            )
            await asyncio.sleep(delay_ms / 1000)


__all__ = [
    # Classification
    "ErrorSeverity",
    "ErrorCategory",
    "ErrorClassification",
    "RetryConfig",
    "NO_RETRY",
    "TRANSIENT_RETRY_CONFIG",
    "classify_exception",
    "retry_transient",
    # Exceptions
    "ConsolidatorError",
    "BackendError",
    "TransientBackendError",
    "BackendUnavailableError",
    "PermanentBackendError",
    "DuplicateKeyError",
    "RecordNotFoundError",
    "CorruptPayloadError",
    "TransformError",
    "PreconditionError",
    "BackupRequiredError",
    "InvalidTransitionError",
    "NoBackupAvailableError",
]
