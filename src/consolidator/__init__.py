"""
consolidator - Storage consolidation engine for Python.

This library provides:
- A uniform storage backend protocol with in-memory, flat key-value and
  SQLAlchemy implementations
- Entity mapping rules with deterministic, idempotent record transforms
- A persistent migration state machine (legacy -> transitioning -> modern)
- A storage migrator with backups, partial-failure reports, integrity
  validation and non-destructive rollback
- A mode-aware dual-write facade with an audit timeline
- Read-only health and assessment reporting
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("store-consolidator")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Storage backends
from consolidator.backends import (
    DEFAULT_KEY_PREFIX,
    BulkWriteOutcome,
    InMemoryKeyValueStore,
    InMemoryRecordStore,
    JsonFileKeyValueStore,
    KeyValueBackend,
    KeyValueStore,
    OutcomeStatus,
    SQLAlchemyRecordStore,
    StorageBackend,
)

# Entity shapes and mapping
from consolidator.entities import EntityModel, to_canonical_timestamp

# Exceptions
from consolidator.exceptions import (
    NO_RETRY,
    TRANSIENT_RETRY_CONFIG,
    BackendError,
    BackendUnavailableError,
    BackupRequiredError,
    ConsolidatorError,
    CorruptPayloadError,
    DuplicateKeyError,
    ErrorCategory,
    ErrorSeverity,
    InvalidTransitionError,
    NoBackupAvailableError,
    PermanentBackendError,
    PreconditionError,
    RecordNotFoundError,
    RetryConfig,
    TransformError,
    TransientBackendError,
    classify_exception,
)
from consolidator.health import HealthReporter
from consolidator.mapping import DEFAULT_MAPPING_RULES, EntityMappingRule, EntityMappingTable
from consolidator.migrator import StorageMigrator

# Models
from consolidator.models import (
    BackupSnapshot,
    EntityCount,
    EntityRecord,
    IntegrityViolation,
    MigrationConfig,
    MigrationMetadata,
    MigrationMode,
    MigrationProgress,
    MigrationReport,
    MigrationStatus,
    RecordFailure,
    TimelineAction,
    TimelineEntry,
    ViolationKind,
)

# Repositories
from consolidator.repositories import (
    BackendTimelineRepository,
    InMemoryBackupRepository,
    InMemoryMetadataRepository,
    InMemoryTimelineRepository,
    KeyValueBackupRepository,
    KeyValueMetadataRepository,
)
from consolidator.state_machine import MigrationStateMachine
from consolidator.unified_store import MirrorFailure, MirrorFailureStats, UnifiedStore

__all__ = [
    "__version__",
    # Backends
    "StorageBackend",
    "BulkWriteOutcome",
    "OutcomeStatus",
    "InMemoryRecordStore",
    "DEFAULT_KEY_PREFIX",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "KeyValueBackend",
    "SQLAlchemyRecordStore",
    # Entities and mapping
    "EntityModel",
    "to_canonical_timestamp",
    "EntityMappingRule",
    "EntityMappingTable",
    "DEFAULT_MAPPING_RULES",
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
    "ErrorCategory",
    "ErrorSeverity",
    "RetryConfig",
    "NO_RETRY",
    "TRANSIENT_RETRY_CONFIG",
    "classify_exception",
    # Models
    "EntityRecord",
    "MigrationMode",
    "MigrationConfig",
    "MigrationMetadata",
    "BackupSnapshot",
    "TimelineAction",
    "TimelineEntry",
    "EntityCount",
    "RecordFailure",
    "IntegrityViolation",
    "ViolationKind",
    "MigrationReport",
    "MigrationProgress",
    "MigrationStatus",
    # Repositories
    "InMemoryMetadataRepository",
    "KeyValueMetadataRepository",
    "InMemoryBackupRepository",
    "KeyValueBackupRepository",
    "InMemoryTimelineRepository",
    "BackendTimelineRepository",
    # Engine
    "MigrationStateMachine",
    "StorageMigrator",
    "UnifiedStore",
    "MirrorFailure",
    "MirrorFailureStats",
    "HealthReporter",
]
