"""
Observability utilities for consolidator.

Provides the composition-based tracer, the standard span attribute keys
and the fire-and-forget helper used for best-effort side effects.

Example:
    >>> from consolidator.observability import create_tracer
    >>>
    >>> class MyStore:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
"""

from consolidator.observability.attributes import (
    ATTR_BACKEND,
    ATTR_BACKUP_ID,
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_TYPE,
    ATTR_ERROR_TYPE,
    ATTR_MIGRATION_MODE,
    ATTR_MIGRATION_RECORDS_FAILED,
    ATTR_MIGRATION_RECORDS_MIGRATED,
    ATTR_MIGRATION_TARGET_MODE,
    ATTR_RECORD_COUNT,
    ATTR_RECORD_ID,
)
from consolidator.observability.best_effort import fire_and_forget
from consolidator.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanAttributes,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanAttributes",
    "create_tracer",
    # Best-effort side effects
    "fire_and_forget",
    # Attributes
    "ATTR_BACKEND",
    "ATTR_BACKUP_ID",
    "ATTR_BATCH_SIZE",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_ENTITY_TYPE",
    "ATTR_ERROR_TYPE",
    "ATTR_MIGRATION_MODE",
    "ATTR_MIGRATION_RECORDS_FAILED",
    "ATTR_MIGRATION_RECORDS_MIGRATED",
    "ATTR_MIGRATION_TARGET_MODE",
    "ATTR_RECORD_COUNT",
    "ATTR_RECORD_ID",
]
