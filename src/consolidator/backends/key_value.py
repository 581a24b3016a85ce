"""
Legacy flat key-value storage.

The legacy store is a flat string-to-string mapping in the style of a
browser ``localStorage``: each entity type lives under one key as a JSON
array of records. ``KeyValueBackend`` adapts such a mapping to the
StorageBackend protocol with read-modify-write of the whole array.

Key layout:
    <key_prefix><entity_type>   JSON array of records (e.g. "lawfirm_clients")

Other keys in the same store (migration metadata, backups) are ignored by
the backend; see consolidator.repositories for those.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from consolidator.backends.interface import BulkWriteOutcome, record_id_of
from consolidator.exceptions import (
    BackendUnavailableError,
    CorruptPayloadError,
    DuplicateKeyError,
    PermanentBackendError,
    RecordNotFoundError,
    TransientBackendError,
)
from consolidator.models import EntityRecord
from consolidator.observability import (
    ATTR_BATCH_SIZE,
    ATTR_ENTITY_TYPE,
    ATTR_RECORD_ID,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "lawfirm_"


@runtime_checkable
class KeyValueStore(Protocol):
    """
    Protocol for a flat string key-value store.

    Implementations are synchronous, like the storage API they model.
    ``set_item`` may raise TransientBackendError when a quota is exceeded.
    """

    def get_item(self, key: str) -> str | None:
        """Get the value for a key, or None if absent."""
        ...

    def set_item(self, key: str, value: str) -> None:
        """Set the value for a key."""
        ...

    def remove_item(self, key: str) -> None:
        """Remove a key; no-op if absent."""
        ...

    def keys(self) -> list[str]:
        """All keys currently present."""
        ...


class InMemoryKeyValueStore:
    """
    Dictionary-backed KeyValueStore with an optional size quota.

    Args:
        quota_bytes: Maximum total size of all values (UTF-8 bytes);
            ``set_item`` raises TransientBackendError beyond it.
        initial: Initial contents.
    """

    def __init__(
        self,
        quota_bytes: int | None = None,
        initial: dict[str, str] | None = None,
    ) -> None:
        self._items: dict[str, str] = dict(initial or {})
        self._quota_bytes = quota_bytes

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self._quota_bytes is not None:
            size = sum(len(v.encode()) for k, v in self._items.items() if k != key)
            if size + len(value.encode()) > self._quota_bytes:
                raise TransientBackendError(f"Storage quota of {self._quota_bytes} bytes exceeded")
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


class JsonFileKeyValueStore:
    """
    KeyValueStore persisted as a single JSON object on disk.

    Every write rewrites the file atomically (temp file + rename), so a
    crash mid-write leaves the previous contents intact.

    Args:
        path: Path of the JSON file; created on first write.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._items = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value
        self._flush()

    def remove_item(self, key: str) -> None:
        if self._items.pop(key, None) is not None:
            self._flush()

    def keys(self) -> list[str]:
        return list(self._items)

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise BackendUnavailableError(str(self._path), str(e)) from e
        except json.JSONDecodeError as e:
            raise CorruptPayloadError("*", f"{self._path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise CorruptPayloadError("*", f"{self._path} does not hold a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._items, f)
            os.replace(tmp_path, self._path)
        except OSError as e:
            Path(tmp_path).unlink(missing_ok=True)
            raise TransientBackendError(f"Could not write {self._path}: {e}") from e


class KeyValueBackend:
    """
    StorageBackend over a flat KeyValueStore (the legacy store).

    Each entity type is one JSON array under ``<key_prefix><entity_type>``.
    Legacy arrays may contain records without an ``id``; such records are
    returned by ``get_all`` but cannot be addressed by id.

    Example:
        >>> kv = InMemoryKeyValueStore()
        >>> legacy = KeyValueBackend(kv)
        >>> await legacy.create("clients", {"id": "c1", "name": "Acme"})
        >>> kv.get_item("lawfirm_clients")
        '[{"id": "c1", "name": "Acme"}]'
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        name: str = "legacy",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the key-value backend.

        Args:
            store: Underlying flat key-value store.
            key_prefix: Prefix for entity-type keys (must be non-empty).
            name: Backend name used in logs and reports.
            tracer: Optional tracer (if not provided, one will be created).
            enable_tracing: Whether to enable OpenTelemetry tracing (default True).
        """
        if not key_prefix:
            raise ValueError("key_prefix must be non-empty")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._store = store
        self._key_prefix = key_prefix
        self._name = name
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def store(self) -> KeyValueStore:
        """The underlying flat key-value store."""
        return self._store

    def key_for(self, entity_type: str) -> str:
        """Storage key holding an entity type's array."""
        return f"{self._key_prefix}{entity_type}"

    async def get_all(self, entity_type: str) -> list[EntityRecord]:
        with self._tracer.span(
            "consolidator.key_value.get_all",
            {ATTR_ENTITY_TYPE: entity_type},
        ):
            async with self._lock:
                return self._read(entity_type)

    async def get_by_id(self, entity_type: str, record_id: str) -> EntityRecord | None:
        with self._tracer.span(
            "consolidator.key_value.get_by_id",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_RECORD_ID: record_id},
        ):
            async with self._lock:
                records = self._read(entity_type)
                index = self._index_of(records, record_id)
                return records[index] if index is not None else None

    async def create(self, entity_type: str, record: EntityRecord) -> EntityRecord:
        with self._tracer.span(
            "consolidator.key_value.create",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_RECORD_ID: record_id_of(record) or ""},
        ):
            async with self._lock:
                records = self._read(entity_type)
                stored = self._append(entity_type, records, record)
                self._write(entity_type, records)
                return copy.deepcopy(stored)

    async def update(
        self,
        entity_type: str,
        record_id: str,
        partial: EntityRecord,
    ) -> EntityRecord:
        with self._tracer.span(
            "consolidator.key_value.update",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_RECORD_ID: record_id},
        ):
            async with self._lock:
                records = self._read(entity_type)
                index = self._index_of(records, record_id)
                if index is None:
                    raise RecordNotFoundError(entity_type, record_id)
                records[index] = {**records[index], **copy.deepcopy(partial), "id": record_id}
                self._write(entity_type, records)
                return copy.deepcopy(records[index])

    async def delete(self, entity_type: str, record_id: str) -> None:
        with self._tracer.span(
            "consolidator.key_value.delete",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_RECORD_ID: record_id},
        ):
            async with self._lock:
                records = self._read(entity_type)
                index = self._index_of(records, record_id)
                if index is None:
                    raise RecordNotFoundError(entity_type, record_id)
                del records[index]
                self._write(entity_type, records)

    async def bulk_create(
        self,
        entity_type: str,
        records: list[EntityRecord],
    ) -> list[BulkWriteOutcome]:
        """
        Store many records with one write of the underlying key.

        Records rejected for id problems fail individually. If the final
        write of the array fails (e.g. quota), every record that had been
        accepted is reported with that error instead.
        """
        with self._tracer.span(
            "consolidator.key_value.bulk_create",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_BATCH_SIZE: len(records)},
        ):
            async with self._lock:
                existing = self._read(entity_type)
                outcomes: list[BulkWriteOutcome] = []
                for index, record in enumerate(records):
                    try:
                        stored = self._append(entity_type, existing, record)
                    except PermanentBackendError as e:
                        outcomes.append(BulkWriteOutcome.failed(index, record, e))
                    else:
                        outcomes.append(BulkWriteOutcome.created(index, copy.deepcopy(stored)))

                if any(o.succeeded for o in outcomes):
                    try:
                        self._write(entity_type, existing)
                    except TransientBackendError as e:
                        return [
                            BulkWriteOutcome.failed(o.index, records[o.index], e)
                            if o.succeeded
                            else o
                            for o in outcomes
                        ]
                return outcomes

    async def count(self, entity_type: str) -> int:
        async with self._lock:
            return len(self._read(entity_type))

    async def entity_types(self) -> list[str]:
        """
        Entity types with a non-empty array.

        Unreadable arrays are listed too, so callers see the
        CorruptPayloadError when they read that entity type.
        """
        async with self._lock:
            result = []
            for key in self._store.keys():
                if key.startswith(self._key_prefix):
                    entity_type = key[len(self._key_prefix) :]
                    try:
                        present = bool(self._read(entity_type))
                    except CorruptPayloadError:
                        present = True
                    if present:
                        result.append(entity_type)
            return result

    async def clear(self, entity_type: str) -> None:
        async with self._lock:
            self._store.remove_item(self.key_for(entity_type))

    async def clear_all(self) -> None:
        async with self._lock:
            for key in self._store.keys():
                if key.startswith(self._key_prefix):
                    self._store.remove_item(key)

    async def replace_all(self, entity_type: str, records: list[EntityRecord]) -> None:
        """
        Overwrite an entity type's array verbatim, id-less records included.

        Used to restore backups, which must reproduce the legacy contents
        exactly rather than going through ``create``.
        """
        async with self._lock:
            self._write(entity_type, copy.deepcopy(records))

    def _read(self, entity_type: str) -> list[EntityRecord]:
        raw = self._store.get_item(self.key_for(entity_type))
        if raw is None:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptPayloadError(entity_type, f"invalid JSON: {e}") from e
        if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
            raise CorruptPayloadError(entity_type, "expected a JSON array of objects")
        return data

    def _write(self, entity_type: str, records: list[EntityRecord]) -> None:
        self._store.set_item(self.key_for(entity_type), json.dumps(records, default=str))

    @staticmethod
    def _index_of(records: list[EntityRecord], record_id: str) -> int | None:
        for index, record in enumerate(records):
            if record_id_of(record) == record_id:
                return index
        return None

    def _append(
        self,
        entity_type: str,
        records: list[EntityRecord],
        record: EntityRecord,
    ) -> EntityRecord:
        record_id = record_id_of(record)
        if record_id is None:
            raise PermanentBackendError("Record has no id", entity_type=entity_type)
        if self._index_of(records, record_id) is not None:
            raise DuplicateKeyError(entity_type, record_id)
        stored = copy.deepcopy(record)
        records.append(stored)
        return stored

    def __repr__(self) -> str:
        return f"KeyValueBackend(name={self._name!r}, key_prefix={self._key_prefix!r})"


__all__ = [
    "DEFAULT_KEY_PREFIX",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "KeyValueBackend",
]
