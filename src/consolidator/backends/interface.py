"""
Storage backend adapter protocol.

A storage backend is pure storage mechanics: collections of records keyed
by id, one collection per entity type. Backends know nothing about
migration modes; the unified store and the migrator decide which backend
to talk to.

Errors raised by backends follow the taxonomy in consolidator.exceptions:
``DuplicateKeyError`` and ``RecordNotFoundError`` for contract violations,
``TransientBackendError`` for conditions worth retrying and
``PermanentBackendError`` for everything a retry cannot fix.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from consolidator.exceptions import ConsolidatorError, ErrorCategory, classify_exception
from consolidator.models import EntityRecord


class OutcomeStatus(Enum):
    """Result of writing one record in a bulk operation."""

    CREATED = "created"
    FAILED = "failed"


@dataclass(frozen=True)
class BulkWriteOutcome:
    """
    Per-record result of ``bulk_create``.

    Bulk writes never drop a record silently: every input record produces
    exactly one outcome, in input order.

    Attributes:
        index: Position of the record in the input list.
        record_id: Id of the record, if it had one.
        status: CREATED or FAILED.
        record: The stored record (CREATED only).
        error: The exception that rejected the record (FAILED only).
    """

    index: int
    record_id: str | None
    status: OutcomeStatus
    record: EntityRecord | None = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        """True if the record was stored."""
        return self.status == OutcomeStatus.CREATED

    @property
    def category(self) -> ErrorCategory | None:
        """Taxonomy category of the failure, or None on success."""
        if self.error is None:
            return None
        return classify_exception(self.error)

    @property
    def error_code(self) -> str | None:
        """Error code of the failure, or None on success."""
        if self.error is None:
            return None
        if isinstance(self.error, ConsolidatorError):
            return self.error.error_code
        return type(self.error).__name__

    @classmethod
    def created(cls, index: int, record: EntityRecord) -> BulkWriteOutcome:
        """Build a success outcome."""
        return cls(
            index=index,
            record_id=record_id_of(record),
            status=OutcomeStatus.CREATED,
            record=record,
        )

    @classmethod
    def failed(cls, index: int, record: EntityRecord, error: Exception) -> BulkWriteOutcome:
        """Build a failure outcome."""
        return cls(
            index=index,
            record_id=record_id_of(record),
            status=OutcomeStatus.FAILED,
            error=error,
        )


def record_id_of(record: EntityRecord) -> str | None:
    """
    Get the id of a record as a string.

    Args:
        record: Record to inspect.

    Returns:
        The id as a string, or None if absent or empty.
    """
    value = record.get("id")
    if value is None or value == "":
        return None
    return str(value)


@runtime_checkable
class StorageBackend(Protocol):
    """
    Uniform interface over a concrete storage backend.

    All methods are async. Records are plain dictionaries that must carry an
    ``id`` to be created. Implementations return copies, so mutating a
    returned record never changes stored data.
    """

    @property
    def name(self) -> str:
        """Human-readable backend name used in logs and reports."""
        ...

    async def get_all(self, entity_type: str) -> list[EntityRecord]:
        """
        Get every record of an entity type.

        Args:
            entity_type: Collection name.

        Returns:
            List of records (empty if the collection does not exist).
        """
        ...

    async def get_by_id(self, entity_type: str, record_id: str) -> EntityRecord | None:
        """
        Get a record by id.

        Args:
            entity_type: Collection name.
            record_id: Id of the record.

        Returns:
            The record, or None if not found.
        """
        ...

    async def create(self, entity_type: str, record: EntityRecord) -> EntityRecord:
        """
        Store a new record.

        Args:
            entity_type: Collection name.
            record: Record to store; must carry an ``id``.

        Returns:
            The stored record.

        Raises:
            DuplicateKeyError: If a record with the same id exists.
            PermanentBackendError: If the record has no id.
        """
        ...

    async def update(
        self,
        entity_type: str,
        record_id: str,
        partial: EntityRecord,
    ) -> EntityRecord:
        """
        Merge fields into an existing record.

        Args:
            entity_type: Collection name.
            record_id: Id of the record to update.
            partial: Fields to overwrite; ``id`` is never changed.

        Returns:
            The updated record.

        Raises:
            RecordNotFoundError: If no record has the id.
        """
        ...

    async def delete(self, entity_type: str, record_id: str) -> None:
        """
        Delete a record.

        Raises:
            RecordNotFoundError: If no record has the id.
        """
        ...

    async def bulk_create(
        self,
        entity_type: str,
        records: list[EntityRecord],
    ) -> list[BulkWriteOutcome]:
        """
        Store many records, each succeeding or failing independently.

        Args:
            entity_type: Collection name.
            records: Records to store.

        Returns:
            One outcome per input record, in input order.
        """
        ...

    async def count(self, entity_type: str) -> int:
        """Number of records of an entity type."""
        ...

    async def entity_types(self) -> list[str]:
        """Entity types that currently hold at least one record."""
        ...

    async def clear(self, entity_type: str) -> None:
        """Remove every record of an entity type."""
        ...

    async def clear_all(self) -> None:
        """Remove every record of every entity type."""
        ...

    async def replace_all(self, entity_type: str, records: list[EntityRecord]) -> None:
        """
        Replace an entity type's contents with exactly the given records.

        Used to restore backup snapshots, so records are stored verbatim.
        Backends keyed by id reject records without one.
        """
        ...


__all__ = [
    "StorageBackend",
    "BulkWriteOutcome",
    "OutcomeStatus",
    "record_id_of",
]
