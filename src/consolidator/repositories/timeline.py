"""
TimelineRepository - append-only audit trail of changes.

Entries are appended by the unified store after each successful mutating
call and are never updated or deleted by the engine.

Implementations:
    - InMemoryTimelineRepository: for tests
    - BackendTimelineRepository: appends entries to the ``timeline``
      collection of any StorageBackend
"""

from __future__ import annotations

import asyncio
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from consolidator.backends.interface import StorageBackend
from consolidator.exceptions import CorruptPayloadError
from consolidator.models import TimelineEntry

TIMELINE_COLLECTION = "timeline"


@runtime_checkable
class TimelineRepository(Protocol):
    """Protocol for timeline persistence."""

    async def append(self, entry: TimelineEntry) -> None:
        """Append an entry."""
        ...

    async def list(self, entity_type: str | None = None) -> list[TimelineEntry]:
        """
        Entries in append order.

        Args:
            entity_type: Only return entries for this entity type.
        """
        ...

    async def for_ref(self, entity_type: str, ref_id: str) -> list[TimelineEntry]:
        """Entries describing one record, in append order."""
        ...


class InMemoryTimelineRepository:
    """In-memory timeline repository for testing."""

    def __init__(self) -> None:
        self._entries: list[TimelineEntry] = []
        self._lock = asyncio.Lock()

    async def append(self, entry: TimelineEntry) -> None:
        async with self._lock:
            self._entries.append(entry)

    async def list(self, entity_type: str | None = None) -> list[TimelineEntry]:
        async with self._lock:
            return [e for e in self._entries if entity_type in (None, e.entity_type)]

    async def for_ref(self, entity_type: str, ref_id: str) -> list[TimelineEntry]:
        entries = await self.list(entity_type)
        return [e for e in entries if e.ref_id == ref_id]

    def __len__(self) -> int:
        return len(self._entries)


class BackendTimelineRepository:
    """
    Timeline stored as records of a storage backend collection.

    Example:
        >>> timeline = BackendTimelineRepository(target_store)
        >>> await timeline.append(TimelineEntry(entity_type="clients", ref_id="c1", action=...))
    """

    def __init__(self, backend: StorageBackend, collection: str = TIMELINE_COLLECTION) -> None:
        """
        Initialize the repository.

        Args:
            backend: Backend the entries are written to.
            collection: Collection name (default "timeline").
        """
        self._backend = backend
        self._collection = collection

    @property
    def collection(self) -> str:
        return self._collection

    async def append(self, entry: TimelineEntry) -> None:
        await self._backend.create(self._collection, entry.to_record())

    async def list(self, entity_type: str | None = None) -> list[TimelineEntry]:
        records = await self._backend.get_all(self._collection)
        try:
            entries = [TimelineEntry.model_validate(r) for r in records]
        except ValidationError as e:
            raise CorruptPayloadError(self._collection, f"unreadable timeline entry: {e}") from e
        if entity_type is not None:
            entries = [e for e in entries if e.entity_type == entity_type]
        return sorted(entries, key=lambda e: e.timestamp)

    async def for_ref(self, entity_type: str, ref_id: str) -> list[TimelineEntry]:
        entries = await self.list(entity_type)
        return [e for e in entries if e.ref_id == ref_id]


__all__ = [
    "TIMELINE_COLLECTION",
    "TimelineRepository",
    "InMemoryTimelineRepository",
    "BackendTimelineRepository",
]
