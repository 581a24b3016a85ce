"""
Standard span attributes for consolidator.

Attribute keys used across all consolidator components so that spans from
the backends, the migrator and the unified store can be correlated.
OpenTelemetry semantic conventions are used where one exists.

Example:
    >>> from consolidator.observability.attributes import ATTR_ENTITY_TYPE
    >>>
    >>> with tracer.span(
    ...     "consolidator.unified_store.create",
    ...     {ATTR_ENTITY_TYPE: "clients"},
    ... ):
    ...     pass
"""

# =============================================================================
# Entity Attributes
# =============================================================================

ATTR_ENTITY_TYPE = "consolidator.entity.type"
"""Entity type (collection) name, e.g. 'clients' or 'cases'."""

ATTR_RECORD_ID = "consolidator.record.id"
"""Stable identifier of a single record."""

ATTR_RECORD_COUNT = "consolidator.record.count"
"""Number of records handled by an operation (integer)."""

ATTR_BATCH_SIZE = "consolidator.batch.size"
"""Number of records in one bulk write (integer)."""

# =============================================================================
# Backend Attributes
# =============================================================================

ATTR_BACKEND = "consolidator.backend"
"""Logical role of a backend: 'legacy' or 'target'."""

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (OTEL semantic convention), e.g. 'sqlite'."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (OTEL semantic convention), e.g. 'SELECT'."""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_MIGRATION_MODE = "consolidator.migration.mode"
"""Current migration mode: 'legacy', 'transitioning' or 'modern'."""

ATTR_MIGRATION_TARGET_MODE = "consolidator.migration.target_mode"
"""Mode requested by a transition."""

ATTR_MIGRATION_RECORDS_MIGRATED = "consolidator.migration.records_migrated"
"""Records written to the target during a run (integer)."""

ATTR_MIGRATION_RECORDS_FAILED = "consolidator.migration.records_failed"
"""Records that failed during a run (integer)."""

ATTR_BACKUP_ID = "consolidator.backup.id"
"""Identifier of a backup snapshot."""

ATTR_ERROR_TYPE = "error.type"
"""Exception class name for failed operations."""

__all__ = [
    "ATTR_ENTITY_TYPE",
    "ATTR_RECORD_ID",
    "ATTR_RECORD_COUNT",
    "ATTR_BATCH_SIZE",
    "ATTR_BACKEND",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_MIGRATION_MODE",
    "ATTR_MIGRATION_TARGET_MODE",
    "ATTR_MIGRATION_RECORDS_MIGRATED",
    "ATTR_MIGRATION_RECORDS_FAILED",
    "ATTR_BACKUP_ID",
    "ATTR_ERROR_TYPE",
]
