"""
In-memory structured record store.

Provides a fast StorageBackend for testing and embedding. All data is kept
in Python dictionaries and lost when the process terminates.
"""

import asyncio
import copy

from consolidator.backends.interface import BulkWriteOutcome, record_id_of
from consolidator.exceptions import DuplicateKeyError, PermanentBackendError, RecordNotFoundError
from consolidator.models import EntityRecord
from consolidator.observability import (
    ATTR_BATCH_SIZE,
    ATTR_ENTITY_TYPE,
    ATTR_RECORD_ID,
    Tracer,
    create_tracer,
)


class InMemoryRecordStore:
    """
    In-memory implementation of StorageBackend.

    Records are stored per entity type in insertion order, keyed by id.
    Reads and writes deep-copy records so callers never share state with
    the store. Access is serialised with an asyncio.Lock.

    Example:
        >>> store = InMemoryRecordStore()
        >>> await store.create("clients", {"id": "c1", "display_name": "Acme"})
        >>> await store.get_by_id("clients", "c1")
        {'id': 'c1', 'display_name': 'Acme'}
    """

    def __init__(
        self,
        name: str = "memory",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the in-memory store.

        Args:
            name: Backend name used in logs and reports.
            tracer: Optional tracer (if not provided, one will be created).
            enable_tracing: Whether to enable OpenTelemetry tracing (default True).
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._name = name
        self._collections: dict[str, dict[str, EntityRecord]] = {}
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    async def get_all(self, entity_type: str) -> list[EntityRecord]:
        with self._tracer.span(
            "consolidator.memory_store.get_all",
            {ATTR_ENTITY_TYPE: entity_type},
        ):
            async with self._lock:
                collection = self._collections.get(entity_type, {})
                return [copy.deepcopy(r) for r in collection.values()]

    async def get_by_id(self, entity_type: str, record_id: str) -> EntityRecord | None:
        with self._tracer.span(
            "consolidator.memory_store.get_by_id",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_RECORD_ID: record_id},
        ):
            async with self._lock:
                record = self._collections.get(entity_type, {}).get(record_id)
                return copy.deepcopy(record) if record is not None else None

    async def create(self, entity_type: str, record: EntityRecord) -> EntityRecord:
        record_id = record_id_of(record)
        with self._tracer.span(
            "consolidator.memory_store.create",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_RECORD_ID: record_id or ""},
        ):
            async with self._lock:
                return self._insert(entity_type, record)

    async def update(
        self,
        entity_type: str,
        record_id: str,
        partial: EntityRecord,
    ) -> EntityRecord:
        with self._tracer.span(
            "consolidator.memory_store.update",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_RECORD_ID: record_id},
        ):
            async with self._lock:
                collection = self._collections.get(entity_type, {})
                if record_id not in collection:
                    raise RecordNotFoundError(entity_type, record_id)
                merged = {**collection[record_id], **copy.deepcopy(partial), "id": record_id}
                collection[record_id] = merged
                return copy.deepcopy(merged)

    async def delete(self, entity_type: str, record_id: str) -> None:
        with self._tracer.span(
            "consolidator.memory_store.delete",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_RECORD_ID: record_id},
        ):
            async with self._lock:
                collection = self._collections.get(entity_type, {})
                if record_id not in collection:
                    raise RecordNotFoundError(entity_type, record_id)
                del collection[record_id]

    async def bulk_create(
        self,
        entity_type: str,
        records: list[EntityRecord],
    ) -> list[BulkWriteOutcome]:
        with self._tracer.span(
            "consolidator.memory_store.bulk_create",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_BATCH_SIZE: len(records)},
        ):
            outcomes: list[BulkWriteOutcome] = []
            async with self._lock:
                for index, record in enumerate(records):
                    try:
                        stored = self._insert(entity_type, record)
                    except PermanentBackendError as e:
                        outcomes.append(BulkWriteOutcome.failed(index, record, e))
                    else:
                        outcomes.append(BulkWriteOutcome.created(index, stored))
            return outcomes

    async def count(self, entity_type: str) -> int:
        async with self._lock:
            return len(self._collections.get(entity_type, {}))

    async def entity_types(self) -> list[str]:
        async with self._lock:
            return [t for t, records in self._collections.items() if records]

    async def clear(self, entity_type: str) -> None:
        async with self._lock:
            self._collections.pop(entity_type, None)

    async def clear_all(self) -> None:
        async with self._lock:
            self._collections.clear()

    async def replace_all(self, entity_type: str, records: list[EntityRecord]) -> None:
        replacement: dict[str, EntityRecord] = {}
        for record in records:
            record_id = record_id_of(record)
            if record_id is None:
                raise PermanentBackendError("Record has no id", entity_type=entity_type)
            replacement[record_id] = {**copy.deepcopy(record), "id": record_id}
        async with self._lock:
            if replacement:
                self._collections[entity_type] = replacement
            else:
                self._collections.pop(entity_type, None)

    def _insert(self, entity_type: str, record: EntityRecord) -> EntityRecord:
        """Insert without locking; caller holds the lock."""
        record_id = record_id_of(record)
        if record_id is None:
            raise PermanentBackendError("Record has no id", entity_type=entity_type)
        collection = self._collections.setdefault(entity_type, {})
        if record_id in collection:
            raise DuplicateKeyError(entity_type, record_id)
        stored = copy.deepcopy(record)
        stored["id"] = record_id
        collection[record_id] = stored
        return copy.deepcopy(stored)

    def __repr__(self) -> str:
        return f"InMemoryRecordStore(name={self._name!r}, entity_types={len(self._collections)})"


__all__ = ["InMemoryRecordStore"]
