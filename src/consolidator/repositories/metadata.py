"""
MigrationMetadataRepository - persistence of the migration metadata singleton.

The metadata record holds the current MigrationMode, when the last fully
successful migration finished and which backup snapshot a rollback
restores from. It is stored alongside application data so the mode
survives restarts.

Implementations:
    - InMemoryMetadataRepository: for tests
    - KeyValueMetadataRepository: one JSON value under a fixed key of a
      KeyValueStore (next to the legacy entity arrays)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from consolidator.backends.key_value import KeyValueStore
from consolidator.exceptions import CorruptPayloadError
from consolidator.models import MigrationMetadata

logger = logging.getLogger(__name__)

METADATA_KEY = "migration_metadata"


@runtime_checkable
class MigrationMetadataRepository(Protocol):
    """
    Protocol for the migration metadata singleton.

    ``save`` must be durable before it returns: a ``load`` issued after
    ``save`` completes observes the saved value.
    """

    async def load(self) -> MigrationMetadata:
        """
        Load the metadata record.

        Returns:
            The persisted metadata, or a fresh LEGACY record if none exists.
        """
        ...

    async def save(self, metadata: MigrationMetadata) -> None:
        """
        Persist the metadata record, replacing the previous one.

        Args:
            metadata: Record to persist.
        """
        ...


class InMemoryMetadataRepository:
    """In-memory metadata repository for testing."""

    def __init__(self, initial: MigrationMetadata | None = None) -> None:
        self._metadata = initial.model_copy() if initial is not None else None
        self._lock = asyncio.Lock()

    async def load(self) -> MigrationMetadata:
        async with self._lock:
            if self._metadata is None:
                return MigrationMetadata()
            return self._metadata.model_copy()

    async def save(self, metadata: MigrationMetadata) -> None:
        async with self._lock:
            self._metadata = metadata.model_copy()


class KeyValueMetadataRepository:
    """
    Metadata repository storing the record as JSON under one key.

    Example:
        >>> repo = KeyValueMetadataRepository(kv_store)
        >>> metadata = await repo.load()
        >>> metadata.mode
        <MigrationMode.LEGACY: 'legacy'>
    """

    def __init__(self, store: KeyValueStore, key: str = METADATA_KEY) -> None:
        """
        Initialize the repository.

        Args:
            store: Key-value store the record lives in.
            key: Key of the record (default "migration_metadata").
        """
        self._store = store
        self._key = key
        self._lock = asyncio.Lock()

    async def load(self) -> MigrationMetadata:
        async with self._lock:
            raw = self._store.get_item(self._key)
            if raw is None:
                return MigrationMetadata()
            try:
                return MigrationMetadata.model_validate_json(raw)
            except ValidationError as e:
                raise CorruptPayloadError(self._key, f"unreadable migration metadata: {e}") from e

    async def save(self, metadata: MigrationMetadata) -> None:
        async with self._lock:
            self._store.set_item(self._key, metadata.model_dump_json())
        logger.debug("Saved migration metadata: mode=%s", metadata.mode.value)


__all__ = [
    "METADATA_KEY",
    "MigrationMetadataRepository",
    "InMemoryMetadataRepository",
    "KeyValueMetadataRepository",
]
