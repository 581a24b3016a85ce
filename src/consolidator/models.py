"""
Data models for the storage consolidation engine.

Enums:
    - MigrationMode: Which backend is authoritative (legacy/transitioning/modern)
    - TimelineAction: Kinds of audited change
    - ViolationKind: Kinds of integrity violation

Configuration:
    - MigrationConfig: Tunables for the migrator and the unified store

Persisted Models (pydantic, JSON round-trippable):
    - MigrationMetadata: Singleton record holding the current mode
    - BackupSnapshot: Immutable copy of the legacy store
    - TimelineEntry: Append-only audit record

Reports:
    - EntityCount: Per-entity-type record counts in each backend
    - RecordFailure: One record that failed to migrate
    - IntegrityViolation: One integrity problem found in the target
    - MigrationReport: Output of every migrator operation
    - MigrationProgress: Progress snapshot emitted during a run
    - MigrationStatus: Snapshot of the migrator state for dashboards
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from consolidator.exceptions import NO_RETRY, ErrorCategory, RetryConfig

EntityRecord = dict[str, Any]
"""A record at the adapter boundary: field name -> JSON-compatible value."""


class MigrationMode(Enum):
    """
    Which storage backend is authoritative.

    State machine transitions:
        LEGACY -> TRANSITIONING -> MODERN
        TRANSITIONING -> LEGACY   (rollback)
        MODERN -> LEGACY          (rollback)

    LEGACY -> MODERN is rejected: the transitioning window is mandatory so
    that dual-write can be observed before cutover.

    Attributes:
        LEGACY: All reads and writes go to the legacy flat store.
        TRANSITIONING: Writes go to target then legacy; reads prefer target.
        MODERN: The legacy store is no longer touched.
    """

    LEGACY = "legacy"
    """All reads and writes go to the legacy flat store."""

    TRANSITIONING = "transitioning"
    """Dual-write window: target first, legacy mirrored."""

    MODERN = "modern"
    """Target store only."""

    @property
    def uses_legacy(self) -> bool:
        """True if the legacy store receives reads or writes in this mode."""
        return self != MigrationMode.MODERN

    @property
    def uses_target(self) -> bool:
        """True if the target store receives reads or writes in this mode."""
        return self != MigrationMode.LEGACY

    def can_transition_to(self, target: MigrationMode) -> bool:
        """
        Check if transition to target mode is an allowed edge.

        Args:
            target: The mode to transition to.

        Returns:
            True if the transition is valid.
        """
        valid_transitions: dict[MigrationMode, set[MigrationMode]] = {
            MigrationMode.LEGACY: {MigrationMode.TRANSITIONING},
            MigrationMode.TRANSITIONING: {MigrationMode.MODERN, MigrationMode.LEGACY},
            MigrationMode.MODERN: {MigrationMode.LEGACY},
        }
        return target in valid_transitions[self]


class TimelineAction(Enum):
    """Kinds of change recorded in the timeline."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    WORKFLOW = "workflow"


class ViolationKind(Enum):
    """Kinds of integrity violation reported by validation."""

    ORPHANED_REFERENCE = "orphaned_reference"
    DUPLICATE_ID = "duplicate_id"
    MISSING_REQUIRED_FIELD = "missing_required_field"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class MigrationConfig:
    """
    Configuration for the storage migrator and the unified store.

    This class is immutable (frozen) to prevent accidental modification
    while a migration is running.

    Attributes:
        batch_size: Records per bulk_create call (default 100).
        max_concurrency: Concurrent record writes inside one entity type
            (default 1, i.e. sequential).
        transient_retry: Retry policy for transient backend failures during
            migration (default: a single attempt).
        verify_after_migrate: Run integrity validation at the end of a
            successful migration run (default False).
        require_clean_integrity_for_cutover: Refuse cutover to MODERN while
            integrity violations exist (default True).
        actor: Actor stamped on timeline entries (default "system").
        max_mirror_failure_history: Legacy mirror failures kept in memory
            by the unified store (default 1000).

    Example:
        >>> config = MigrationConfig(batch_size=50, max_concurrency=4)
        >>> config.batch_size
        50
    """

    batch_size: int = 100
    max_concurrency: int = 1
    transient_retry: RetryConfig = NO_RETRY
    verify_after_migrate: bool = False
    require_clean_integrity_for_cutover: bool = True
    actor: str = "system"
    max_mirror_failure_history: int = 1000

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")

        if not self.actor:
            raise ValueError("actor must be a non-empty string")

        if self.max_mirror_failure_history < 0:
            raise ValueError(
                "max_mirror_failure_history must be >= 0, "
                f"got {self.max_mirror_failure_history}"
            )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "batch_size": self.batch_size,
            "max_concurrency": self.max_concurrency,
            "transient_retry": self.transient_retry.to_dict(),
            "verify_after_migrate": self.verify_after_migrate,
            "require_clean_integrity_for_cutover": self.require_clean_integrity_for_cutover,
            "actor": self.actor,
            "max_mirror_failure_history": self.max_mirror_failure_history,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationConfig:
        """
        Create from dictionary.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            MigrationConfig instance.
        """
        retry = data.get("transient_retry")
        return cls(
            batch_size=data.get("batch_size", 100),
            max_concurrency=data.get("max_concurrency", 1),
            transient_retry=RetryConfig.from_dict(retry) if retry else NO_RETRY,
            verify_after_migrate=data.get("verify_after_migrate", False),
            require_clean_integrity_for_cutover=data.get(
                "require_clean_integrity_for_cutover", True
            ),
            actor=data.get("actor", "system"),
            max_mirror_failure_history=data.get("max_mirror_failure_history", 1000),
        )


# =============================================================================
# Persisted models
# =============================================================================


class MigrationMetadata(BaseModel):
    """
    Singleton record describing the migration state of the application.

    Persisted alongside application data so the mode survives restarts.

    Attributes:
        mode: Current migration mode.
        last_migrated_at: When the last fully successful migration finished.
        active_backup_id: Id of the backup snapshot a rollback restores from.
        updated_at: When this record was last written.
    """

    mode: MigrationMode = MigrationMode.LEGACY
    last_migrated_at: datetime | None = None
    active_backup_id: str | None = None
    updated_at: datetime = Field(default_factory=_utcnow)


class BackupSnapshot(BaseModel):
    """
    Immutable, timestamped copy of the complete legacy store.

    Attributes:
        id: Backup key, ``migration_backup_<epoch-ms>``.
        timestamp: When the snapshot was taken.
        version: Snapshot format version.
        entities: Entity type -> list of legacy records, exactly as stored.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    version: str = "1.0"
    entities: dict[str, list[EntityRecord]] = Field(default_factory=dict)

    @classmethod
    def capture(cls, entities: dict[str, list[EntityRecord]]) -> BackupSnapshot:
        """
        Build a snapshot of the given legacy contents, stamped with now.

        Args:
            entities: Entity type -> list of legacy records.

        Returns:
            New BackupSnapshot.
        """
        taken_at = _utcnow()
        return cls(
            id=f"migration_backup_{int(taken_at.timestamp() * 1000)}",
            timestamp=taken_at,
            entities=entities,
        )

    @property
    def record_count(self) -> int:
        """Total number of records in the snapshot."""
        return sum(len(records) for records in self.entities.values())


class TimelineEntry(BaseModel):
    """
    Append-only audit record describing one change made through the store.

    Attributes:
        id: Unique entry id.
        entity_type: Entity type that was changed.
        ref_id: Id of the changed record.
        action: Kind of change.
        payload: Data written (the record for create, the patch for update).
        actor: Who made the change.
        timestamp: When the change was made.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"timeline_{uuid4().hex}")
    entity_type: str
    ref_id: str
    action: TimelineAction
    payload: dict[str, Any] = Field(default_factory=dict)
    actor: str = "system"
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_record(self) -> EntityRecord:
        """Convert to a JSON-compatible record for storage in a backend."""
        return self.model_dump(mode="json")


# =============================================================================
# Reports
# =============================================================================


@dataclass
class EntityCount:
    """
    Record counts for one entity type in each backend.

    Attributes:
        legacy: Records in the legacy store.
        target: Records in the target store.
    """

    legacy: int = 0
    target: int = 0

    @property
    def is_short(self) -> bool:
        """True if the target holds fewer records than the legacy store."""
        return self.target < self.legacy

    def to_dict(self) -> dict[str, int]:
        """Convert to the dashboard JSON shape."""
        return {"legacy": self.legacy, "target": self.target}


@dataclass
class RecordFailure:
    """
    One record that failed to transform or be written to the target.

    Attributes:
        entity_type: Entity type of the record.
        record_id: Id of the record (None if it had none and transform failed).
        category: TRANSIENT or PERMANENT.
        error_code: Code of the underlying error.
        message: Error message.
        record: The legacy record, kept so the failure can be retried.
        occurrence: Index among identical id-less legacy records, so a
            retry regenerates the same id.
    """

    entity_type: str
    record_id: str | None
    category: ErrorCategory
    error_code: str
    message: str
    record: EntityRecord = field(default_factory=dict, repr=False)
    occurrence: int = 0

    def __str__(self) -> str:
        ref = self.record_id or "<no id>"
        return f"{self.entity_type}/{ref}: [{self.category.value}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "entity_type": self.entity_type,
            "record_id": self.record_id,
            "category": self.category.value,
            "error_code": self.error_code,
            "message": self.message,
        }


@dataclass(frozen=True)
class IntegrityViolation:
    """
    One integrity problem found in the target store.

    Attributes:
        entity_type: Entity type of the offending record.
        record_id: Id of the offending record.
        kind: Kind of violation.
        field: Field involved (foreign key or required field), if any.
        message: Human-readable description.
    """

    entity_type: str
    record_id: str | None
    kind: ViolationKind
    field: str | None
    message: str

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "entity_type": self.entity_type,
            "record_id": self.record_id,
            "kind": self.kind.value,
            "field": self.field,
            "message": self.message,
        }


@dataclass
class MigrationReport:
    """
    Output of every migrator operation.

    A report is a write-once artifact: operations build one, fill it in and
    hand it back. ``passed`` is the pass/fail summary.

    Attributes:
        operation: Name of the operation that produced the report.
        mode: Migration mode at the end of the operation.
        entity_counts: Entity type -> counts in each backend.
        record_failures: Records that failed to migrate.
        violations: Integrity violations found.
        errors: Other problems (unreadable collections, short entity types).
        warnings: Observations that do not fail the report (e.g. id-less
            legacy records that will receive generated ids).
        records_migrated: Records newly written to the target.
        records_skipped: Records already present in the target.
        cancelled: True if the run stopped at an entity-type boundary.
        started_at: When the operation started.
        completed_at: When the operation finished.
    """

    operation: str
    mode: MigrationMode
    entity_counts: dict[str, EntityCount] = field(default_factory=dict)
    record_failures: list[RecordFailure] = field(default_factory=list)
    violations: list[IntegrityViolation] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    records_migrated: int = 0
    records_skipped: int = 0
    cancelled: bool = False
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def passed(self) -> bool:
        """True if the operation found no failure, violation or error."""
        return not (self.record_failures or self.violations or self.errors or self.cancelled)

    @property
    def status(self) -> str:
        """'passed' or 'failed'."""
        return "passed" if self.passed else "failed"

    @property
    def transient_failures(self) -> list[RecordFailure]:
        """Failures worth retrying unchanged."""
        return [f for f in self.record_failures if f.category == ErrorCategory.TRANSIENT]

    @property
    def permanent_failures(self) -> list[RecordFailure]:
        """Failures that need the record fixed first."""
        return [f for f in self.record_failures if f.category == ErrorCategory.PERMANENT]

    def error_messages(self) -> list[str]:
        """All problems in the report as flat strings."""
        return [
            *self.errors,
            *(str(f) for f in self.record_failures),
            *(str(v) for v in self.violations),
        ]

    def finish(self, mode: MigrationMode) -> MigrationReport:
        """Stamp completion time and final mode; returns self for chaining."""
        self.mode = mode
        self.completed_at = _utcnow()
        return self

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to the JSON shape consumed by the dashboard.

        The ``entityCounts`` / ``errors`` / ``mode`` keys are the stable
        contract; the remaining keys are diagnostics.
        """
        return {
            "entityCounts": {t: c.to_dict() for t, c in self.entity_counts.items()},
            "errors": self.error_messages(),
            "warnings": list(self.warnings),
            "mode": self.mode.value,
            "operation": self.operation,
            "status": self.status,
            "recordsMigrated": self.records_migrated,
            "recordsSkipped": self.records_skipped,
            "cancelled": self.cancelled,
            "failures": [f.to_dict() for f in self.record_failures],
            "violations": [v.to_dict() for v in self.violations],
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class MigrationProgress:
    """
    Progress snapshot emitted after each entity type of a migration run.

    Attributes:
        entity_type: Entity type just processed.
        entity_types_done: Entity types processed so far.
        entity_types_total: Entity types in the run.
        records_processed: Records processed so far (migrated, skipped or failed).
        records_failed: Records failed so far.
    """

    entity_type: str
    entity_types_done: int
    entity_types_total: int
    records_processed: int
    records_failed: int

    @property
    def progress_percent(self) -> float:
        """Progress as a percentage of entity types (0-100)."""
        if self.entity_types_total == 0:
            return 100.0
        return min(100.0, (self.entity_types_done / self.entity_types_total) * 100)


@dataclass(frozen=True)
class MigrationStatus:
    """
    Point-in-time view of the migrator for dashboards.

    Attributes:
        mode: Current migration mode.
        running: True while a migration or retry run is in progress.
        last_migrated_at: When the last fully successful run finished.
        active_backup_id: Backup a rollback would restore from.
        last_report: Report of the most recent mutating operation (migrate,
            retry, rollback or cutover), if any. Assessments and integrity
            checks never replace it.
    """

    mode: MigrationMode
    running: bool
    last_migrated_at: datetime | None
    active_backup_id: str | None
    last_report: MigrationReport | None

    @property
    def started_at(self) -> datetime | None:
        """Start of the most recent mutating operation."""
        return self.last_report.started_at if self.last_report else None

    @property
    def completed_at(self) -> datetime | None:
        """Completion of the most recent operation (None while running)."""
        return self.last_report.completed_at if self.last_report else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "mode": self.mode.value,
            "running": self.running,
            "lastMigratedAt": self.last_migrated_at.isoformat() if self.last_migrated_at else None,
            "activeBackupId": self.active_backup_id,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "lastReport": self.last_report.to_dict() if self.last_report else None,
        }


__all__ = [
    "EntityRecord",
    "MigrationMode",
    "TimelineAction",
    "ViolationKind",
    "MigrationConfig",
    "MigrationMetadata",
    "BackupSnapshot",
    "TimelineEntry",
    "EntityCount",
    "RecordFailure",
    "IntegrityViolation",
    "MigrationReport",
    "MigrationProgress",
    "MigrationStatus",
]
