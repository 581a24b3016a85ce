"""
Shared pytest fixtures for the consolidator tests.

This module provides:
- Legacy store fixtures (kv_store, legacy, seed_legacy)
- Target store fixtures (target, sqlite_engine, sql_target)
- Migration state fixtures (metadata_repo, state_machine, backups)
- Engine fixtures (migrator, timeline, store)
- Sample data (property-7 style clients and cases)

All components are built with tracing disabled unless a test injects a
MockTracer.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from consolidator.backends import (
    InMemoryKeyValueStore,
    InMemoryRecordStore,
    KeyValueBackend,
    SQLAlchemyRecordStore,
)
from consolidator.migrator import StorageMigrator
from consolidator.models import MigrationConfig
from consolidator.repositories import (
    InMemoryTimelineRepository,
    KeyValueBackupRepository,
    KeyValueMetadataRepository,
)
from consolidator.state_machine import MigrationStateMachine
from consolidator.unified_store import UnifiedStore

SeedLegacy = Callable[[str, list[dict[str, Any]]], None]


# ============================================================================
# Sample data
# ============================================================================


@pytest.fixture
def sample_clients() -> list[dict[str, Any]]:
    """Three legacy clients, the first without an id."""
    return [
        {"name": "Acme"},
        {"id": "client-1", "name": "Globex", "createdAt": "2024-01-15T09:30:00Z"},
        {"id": "client-2", "displayName": "Initech", "createdAt": 1705311000000},
    ]


@pytest.fixture
def sample_cases() -> list[dict[str, Any]]:
    """Two legacy cases, each referencing one client id."""
    return [
        {"id": "case-1", "title": "Globex v State", "clientId": "client-1"},
        {
            "id": "case-2",
            "title": "Initech appeal",
            "clientId": "client-2",
            "nextHearingDate": "2024-03-01",
        },
    ]


# ============================================================================
# Legacy store
# ============================================================================


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    """Empty in-memory flat key-value store."""
    return InMemoryKeyValueStore()


@pytest.fixture
def legacy(kv_store: InMemoryKeyValueStore) -> KeyValueBackend:
    """Legacy backend over the kv_store fixture."""
    return KeyValueBackend(kv_store, enable_tracing=False)


@pytest.fixture
def seed_legacy(kv_store: InMemoryKeyValueStore, legacy: KeyValueBackend) -> SeedLegacy:
    """Write raw legacy arrays, bypassing create() so id-less records can be stored."""

    def seed(entity_type: str, records: list[dict[str, Any]]) -> None:
        kv_store.set_item(legacy.key_for(entity_type), json.dumps(records))

    return seed


# ============================================================================
# Target store
# ============================================================================


@pytest.fixture
def target() -> InMemoryRecordStore:
    """In-memory structured target store."""
    return InMemoryRecordStore(name="target", enable_tracing=False)


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Async SQLAlchemy engine over a file-backed SQLite database.

    A file database is used so every pooled connection sees the same data.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'target.db'}")
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def sql_target(sqlite_engine: AsyncEngine) -> SQLAlchemyRecordStore:
    """Initialized SQLAlchemy target store."""
    store = SQLAlchemyRecordStore(sqlite_engine, enable_tracing=False)
    await store.initialize()
    return store


# ============================================================================
# Migration state
# ============================================================================


@pytest.fixture
def metadata_repo(kv_store: InMemoryKeyValueStore) -> KeyValueMetadataRepository:
    """Metadata persisted next to the legacy data."""
    return KeyValueMetadataRepository(kv_store)


@pytest.fixture
def state_machine(metadata_repo: KeyValueMetadataRepository) -> MigrationStateMachine:
    """State machine starting in LEGACY."""
    return MigrationStateMachine(metadata_repo, enable_tracing=False)


@pytest.fixture
def backups(kv_store: InMemoryKeyValueStore) -> KeyValueBackupRepository:
    """Backups persisted next to the legacy data."""
    return KeyValueBackupRepository(kv_store)


# ============================================================================
# Engine
# ============================================================================


@pytest.fixture
def migration_config() -> MigrationConfig:
    """Default migration configuration."""
    return MigrationConfig()


@pytest.fixture
def migrator(
    legacy: KeyValueBackend,
    target: InMemoryRecordStore,
    state_machine: MigrationStateMachine,
    backups: KeyValueBackupRepository,
    migration_config: MigrationConfig,
) -> StorageMigrator:
    """Migrator from the legacy fixture to the in-memory target."""
    return StorageMigrator(
        legacy,
        target,
        state_machine,
        backups,
        config=migration_config,
        enable_tracing=False,
    )


@pytest.fixture
def timeline() -> InMemoryTimelineRepository:
    """In-memory timeline."""
    return InMemoryTimelineRepository()


@pytest.fixture
def store(
    legacy: KeyValueBackend,
    target: InMemoryRecordStore,
    state_machine: MigrationStateMachine,
    timeline: InMemoryTimelineRepository,
) -> UnifiedStore:
    """Unified store over the legacy and in-memory target fixtures."""
    return UnifiedStore(legacy, target, state_machine, timeline=timeline, enable_tracing=False)
