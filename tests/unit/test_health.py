"""
Unit tests for HealthReporter.

Tests cover:
- The assessment document
- Health checks per mode
- Backend and metadata failures
"""

from typing import Any
from unittest.mock import AsyncMock

import pytest

from consolidator.backends import InMemoryKeyValueStore, InMemoryRecordStore, KeyValueBackend
from consolidator.exceptions import BackendUnavailableError, TransientBackendError
from consolidator.health import HealthReporter
from consolidator.migrator import StorageMigrator
from consolidator.models import MigrationMode
from consolidator.state_machine import MigrationStateMachine
from consolidator.unified_store import UnifiedStore


@pytest.fixture
def reporter(
    migrator: StorageMigrator,
    legacy: KeyValueBackend,
    target: InMemoryRecordStore,
    state_machine: MigrationStateMachine,
    store: UnifiedStore,
) -> HealthReporter:
    """Reporter over the shared fixtures."""
    return HealthReporter(migrator, legacy, target, state_machine, store=store)


class TestAssessment:
    """Tests for assessment()."""

    @pytest.mark.asyncio
    async def test_document_shape(self, reporter: HealthReporter, seed_legacy: Any) -> None:
        """Test the dashboard document."""
        seed_legacy("clients", [{"id": "c1", "name": "A"}])

        document = await reporter.assessment()

        assert document == {
            "entityCounts": {"clients": {"legacy": 1, "target": 0}},
            "errors": ["clients: 1 record(s) in legacy store, 0 in target store"],
            "mode": "legacy",
        }

    @pytest.mark.asyncio
    async def test_empty_stores(self, reporter: HealthReporter) -> None:
        """Test assessing empty stores."""
        assert await reporter.assessment() == {"entityCounts": {}, "errors": [], "mode": "legacy"}

    @pytest.mark.asyncio
    async def test_polling_keeps_failed_run_report(
        self, reporter: HealthReporter, migrator: StorageMigrator, seed_legacy: Any
    ) -> None:
        """Test that polling the dashboard leaves the failed run's report in place."""
        seed_legacy("clients", [{"id": "c1", "name": "A"}, {"id": "c1", "name": "A"}])
        await migrator.create_backup()
        run = await migrator.migrate_from_local_storage()
        assert not run.passed

        await reporter.assessment()
        await reporter.assessment()

        status = await migrator.get_status()
        assert status.last_report is run
        assert status.last_report.operation == "migrate"
        assert len(status.last_report.record_failures) == 1


class TestHealthCheck:
    """Tests for health_check()."""

    @pytest.mark.asyncio
    async def test_healthy_legacy(self, reporter: HealthReporter, seed_legacy: Any) -> None:
        """Test a healthy system in LEGACY."""
        seed_legacy("clients", [{"id": "c1", "name": "A"}])

        result = await reporter.health_check()

        assert result["healthy"] is True
        assert result["errors"] == []
        info = result["info"]
        assert info["mode"] == "legacy"
        assert info["lastMigratedAt"] is None
        assert info["migrationRunning"] is False
        assert info["legacy"] == {"name": "legacy", "reachable": True, "entityTypes": ["clients"]}
        assert info["target"] == {"name": "target", "reachable": True, "entityTypes": []}
        assert info["mirrorFailures"]["total_failures"] == 0

    @pytest.mark.asyncio
    async def test_unused_backend_failure_is_not_fatal(
        self, reporter: HealthReporter, target: InMemoryRecordStore
    ) -> None:
        """Test that the target does not matter in LEGACY."""
        target.entity_types = AsyncMock(  # type: ignore[method-assign]
            side_effect=BackendUnavailableError("target", "connection refused")
        )

        result = await reporter.health_check()

        assert result["healthy"] is True
        assert result["info"]["target"] == {"name": "target", "reachable": False}

    @pytest.mark.asyncio
    async def test_required_backend_failure(
        self,
        reporter: HealthReporter,
        target: InMemoryRecordStore,
        state_machine: MigrationStateMachine,
    ) -> None:
        """Test that the target matters once the mode uses it."""
        await state_machine.advance(MigrationMode.TRANSITIONING)
        await state_machine.record_migration_success()
        target.entity_types = AsyncMock(  # type: ignore[method-assign]
            side_effect=BackendUnavailableError("target", "connection refused")
        )

        result = await reporter.health_check()

        assert result["healthy"] is False
        assert len(result["errors"]) == 1
        assert "target store 'target' unreachable" in result["errors"][0]

    @pytest.mark.asyncio
    async def test_modern_without_migration_record(
        self, reporter: HealthReporter, state_machine: MigrationStateMachine
    ) -> None:
        """Test that a non-legacy mode needs a recorded successful migration."""
        await state_machine.advance(MigrationMode.TRANSITIONING)
        await state_machine.advance(MigrationMode.MODERN)

        result = await reporter.health_check()

        assert result["healthy"] is False
        assert result["errors"] == ["Mode is modern but no successful migration is recorded"]

    @pytest.mark.asyncio
    async def test_corrupt_metadata(
        self, reporter: HealthReporter, kv_store: InMemoryKeyValueStore
    ) -> None:
        """Test that unreadable metadata is reported, not raised."""
        kv_store.set_item("migration_metadata", "not json")

        result = await reporter.health_check()

        assert result["healthy"] is False
        assert result["info"] is None
        assert result["errors"][0].startswith("Health check failed")

    @pytest.mark.asyncio
    async def test_mirror_failures_are_reported(
        self,
        reporter: HealthReporter,
        store: UnifiedStore,
        legacy: KeyValueBackend,
        state_machine: MigrationStateMachine,
    ) -> None:
        """Test that mirror failure stats appear in the info block."""
        await state_machine.advance(MigrationMode.TRANSITIONING)
        await state_machine.record_migration_success()
        legacy.create = AsyncMock(  # type: ignore[method-assign]
            side_effect=TransientBackendError("Storage quota exceeded")
        )
        await store.create("clients", {"id": "c1"})

        result = await reporter.health_check()

        assert result["healthy"] is True
        assert result["info"]["mirrorFailures"]["failures_by_entity_type"] == {"clients": 1}

    @pytest.mark.asyncio
    async def test_without_store(
        self,
        migrator: StorageMigrator,
        legacy: KeyValueBackend,
        target: InMemoryRecordStore,
        state_machine: MigrationStateMachine,
    ) -> None:
        """Test that mirror stats are omitted without a unified store."""
        reporter = HealthReporter(migrator, legacy, target, state_machine)

        result = await reporter.health_check()

        assert "mirrorFailures" not in result["info"]

    @pytest.mark.asyncio
    async def test_is_read_only(
        self, reporter: HealthReporter, kv_store: InMemoryKeyValueStore, seed_legacy: Any
    ) -> None:
        """Test that health checks never write."""
        seed_legacy("clients", [{"id": "c1", "name": "A"}])
        before = {k: kv_store.get_item(k) for k in kv_store.keys()}

        await reporter.health_check()
        await reporter.assessment()

        assert {k: kv_store.get_item(k) for k in kv_store.keys()} == before
