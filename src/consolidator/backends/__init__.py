"""
Storage backend adapters.

    - StorageBackend: the protocol every backend implements
    - InMemoryRecordStore: structured store kept in memory
    - KeyValueBackend: legacy flat key-value store (JSON array per entity type)
    - SQLAlchemyRecordStore: structured target store over SQLAlchemy async
"""

from consolidator.backends.in_memory import InMemoryRecordStore
from consolidator.backends.interface import (
    BulkWriteOutcome,
    OutcomeStatus,
    StorageBackend,
    record_id_of,
)
from consolidator.backends.key_value import (
    DEFAULT_KEY_PREFIX,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    KeyValueBackend,
    KeyValueStore,
)
from consolidator.backends.sqlalchemy import SQLAlchemyRecordStore

__all__ = [
    "StorageBackend",
    "BulkWriteOutcome",
    "OutcomeStatus",
    "record_id_of",
    "InMemoryRecordStore",
    "DEFAULT_KEY_PREFIX",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "KeyValueBackend",
    "SQLAlchemyRecordStore",
]
