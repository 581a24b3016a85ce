"""
BackupRepository - storage of legacy-store snapshots.

Snapshots are immutable. They are created before a migration run and
destroyed only by an explicit ``discard``. The repository never rewrites an
existing snapshot: saving a snapshot whose id is already taken stores it
under a suffixed id instead.

Implementations:
    - InMemoryBackupRepository: for tests
    - KeyValueBackupRepository: one JSON value per snapshot under
      ``migration_backup_<epoch-ms>`` in a KeyValueStore
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from consolidator.backends.key_value import KeyValueStore
from consolidator.exceptions import CorruptPayloadError
from consolidator.models import BackupSnapshot

logger = logging.getLogger(__name__)

BACKUP_KEY_PREFIX = "migration_backup_"


@runtime_checkable
class BackupRepository(Protocol):
    """Protocol for backup snapshot persistence."""

    async def save(self, snapshot: BackupSnapshot) -> BackupSnapshot:
        """
        Persist a new snapshot.

        Args:
            snapshot: Snapshot to store.

        Returns:
            The stored snapshot (its id may carry a suffix if the original
            id was already taken).
        """
        ...

    async def get(self, snapshot_id: str) -> BackupSnapshot | None:
        """Get a snapshot by id, or None if it does not exist."""
        ...

    async def latest(self) -> BackupSnapshot | None:
        """Get the most recently created snapshot, or None if there is none."""
        ...

    async def list(self) -> list[BackupSnapshot]:
        """All snapshots, oldest first."""
        ...

    async def discard(self, snapshot_id: str) -> bool:
        """
        Delete a snapshot.

        Returns:
            True if a snapshot was deleted, False if none had that id.
        """
        ...


def _unique_id(snapshot_id: str, taken: set[str]) -> str:
    if snapshot_id not in taken:
        return snapshot_id
    suffix = 1
    while f"{snapshot_id}_{suffix}" in taken:
        suffix += 1
    return f"{snapshot_id}_{suffix}"


class InMemoryBackupRepository:
    """In-memory backup repository for testing."""

    def __init__(self) -> None:
        self._snapshots: dict[str, BackupSnapshot] = {}
        self._lock = asyncio.Lock()

    async def save(self, snapshot: BackupSnapshot) -> BackupSnapshot:
        async with self._lock:
            snapshot_id = _unique_id(snapshot.id, set(self._snapshots))
            if snapshot_id != snapshot.id:
                snapshot = snapshot.model_copy(update={"id": snapshot_id})
            self._snapshots[snapshot.id] = snapshot
            return snapshot

    async def get(self, snapshot_id: str) -> BackupSnapshot | None:
        async with self._lock:
            return self._snapshots.get(snapshot_id)

    async def latest(self) -> BackupSnapshot | None:
        snapshots = await self.list()
        return snapshots[-1] if snapshots else None

    async def list(self) -> list[BackupSnapshot]:
        async with self._lock:
            # dict order is insertion order, which breaks created_at ties
            return sorted(self._snapshots.values(), key=lambda s: s.timestamp)

    async def discard(self, snapshot_id: str) -> bool:
        async with self._lock:
            return self._snapshots.pop(snapshot_id, None) is not None


class KeyValueBackupRepository:
    """
    Backup repository storing each snapshot as JSON under its own key.

    Each value is ``{"id", "timestamp", "version", "entities"}``; the key is
    the snapshot id, so snapshots sort by creation time.
    """

    def __init__(self, store: KeyValueStore, key_prefix: str = BACKUP_KEY_PREFIX) -> None:
        """
        Initialize the repository.

        Args:
            store: Key-value store holding the snapshots.
            key_prefix: Prefix identifying snapshot keys.
        """
        self._store = store
        self._key_prefix = key_prefix
        self._lock = asyncio.Lock()

    async def save(self, snapshot: BackupSnapshot) -> BackupSnapshot:
        async with self._lock:
            snapshot_id = _unique_id(snapshot.id, set(self._keys()))
            if snapshot_id != snapshot.id:
                snapshot = snapshot.model_copy(update={"id": snapshot_id})
            self._store.set_item(snapshot.id, snapshot.model_dump_json())
        logger.debug("Stored backup %s (%d records)", snapshot.id, snapshot.record_count)
        return snapshot

    async def get(self, snapshot_id: str) -> BackupSnapshot | None:
        async with self._lock:
            if not snapshot_id.startswith(self._key_prefix):
                return None
            return self._read(snapshot_id)

    async def latest(self) -> BackupSnapshot | None:
        snapshots = await self.list()
        return snapshots[-1] if snapshots else None

    async def list(self) -> list[BackupSnapshot]:
        async with self._lock:
            snapshots = [self._read(key) for key in self._keys()]
        found = [s for s in snapshots if s is not None]
        return sorted(found, key=lambda s: (s.timestamp, s.id))

    async def discard(self, snapshot_id: str) -> bool:
        async with self._lock:
            if snapshot_id not in self._keys():
                return False
            self._store.remove_item(snapshot_id)
        logger.info("Discarded backup %s", snapshot_id)
        return True

    def _keys(self) -> list[str]:
        return [k for k in self._store.keys() if k.startswith(self._key_prefix)]

    def _read(self, key: str) -> BackupSnapshot | None:
        raw = self._store.get_item(key)
        if raw is None:
            return None
        try:
            return BackupSnapshot.model_validate_json(raw)
        except ValidationError as e:
            raise CorruptPayloadError(key, f"unreadable backup snapshot: {e}") from e


__all__ = [
    "BACKUP_KEY_PREFIX",
    "BackupRepository",
    "InMemoryBackupRepository",
    "KeyValueBackupRepository",
]
