"""
Unit tests for MigrationStateMachine.

Tests cover:
- Valid and invalid transitions
- Persistence across instances
- Rollback semantics
- Metadata helpers
"""

from datetime import UTC, datetime

import pytest

from consolidator.backends import InMemoryKeyValueStore
from consolidator.exceptions import InvalidTransitionError
from consolidator.models import MigrationMode
from consolidator.observability import ATTR_MIGRATION_TARGET_MODE, MockTracer
from consolidator.repositories import InMemoryMetadataRepository, KeyValueMetadataRepository
from consolidator.state_machine import MigrationStateMachine


@pytest.fixture
def machine() -> MigrationStateMachine:
    return MigrationStateMachine(InMemoryMetadataRepository(), enable_tracing=False)


class TestTransitions:
    """Tests for advance()."""

    @pytest.mark.asyncio
    async def test_starts_in_legacy(self, machine: MigrationStateMachine) -> None:
        """Test the initial mode."""
        assert await machine.current_mode() == MigrationMode.LEGACY

    @pytest.mark.asyncio
    async def test_full_forward_path(self, machine: MigrationStateMachine) -> None:
        """Test LEGACY -> TRANSITIONING -> MODERN."""
        await machine.advance(MigrationMode.TRANSITIONING)
        metadata = await machine.advance(MigrationMode.MODERN)

        assert metadata.mode == MigrationMode.MODERN
        assert await machine.current_mode() == MigrationMode.MODERN

    @pytest.mark.asyncio
    async def test_legacy_to_modern_is_rejected(self, machine: MigrationStateMachine) -> None:
        """Test that the transitioning window cannot be skipped."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            await machine.advance(MigrationMode.MODERN)

        assert exc_info.value.current_mode == MigrationMode.LEGACY
        assert exc_info.value.requested_mode == MigrationMode.MODERN
        assert await machine.current_mode() == MigrationMode.LEGACY

    @pytest.mark.asyncio
    async def test_self_transition_is_rejected(self, machine: MigrationStateMachine) -> None:
        """Test that advancing to the current mode fails."""
        with pytest.raises(InvalidTransitionError):
            await machine.advance(MigrationMode.LEGACY)

    @pytest.mark.asyncio
    async def test_transition_is_persisted(self) -> None:
        """Test that a new instance over the same store sees the mode."""
        kv = InMemoryKeyValueStore()
        await MigrationStateMachine(
            KeyValueMetadataRepository(kv), enable_tracing=False
        ).advance(MigrationMode.TRANSITIONING)

        reopened = MigrationStateMachine(KeyValueMetadataRepository(kv), enable_tracing=False)

        assert await reopened.current_mode() == MigrationMode.TRANSITIONING

    @pytest.mark.asyncio
    async def test_advance_is_traced(self) -> None:
        """Test the transition span."""
        tracer = MockTracer()
        machine = MigrationStateMachine(InMemoryMetadataRepository(), tracer=tracer)

        await machine.advance(MigrationMode.TRANSITIONING)

        name, attributes = tracer.spans[0]
        assert name == "consolidator.state_machine.advance"
        assert attributes is not None
        assert attributes[ATTR_MIGRATION_TARGET_MODE] == "transitioning"


class TestRollback:
    """Tests for rollback()."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "path",
        [[MigrationMode.TRANSITIONING], [MigrationMode.TRANSITIONING, MigrationMode.MODERN]],
    )
    async def test_rollback_to_legacy(
        self, machine: MigrationStateMachine, path: list[MigrationMode]
    ) -> None:
        """Test rollback from TRANSITIONING and MODERN."""
        for mode in path:
            await machine.advance(mode)

        metadata = await machine.rollback()

        assert metadata.mode == MigrationMode.LEGACY
        assert await machine.current_mode() == MigrationMode.LEGACY

    @pytest.mark.asyncio
    async def test_rollback_in_legacy_is_noop(self, machine: MigrationStateMachine) -> None:
        """Test that a repeated rollback does not fail."""
        before = await machine.metadata()

        after = await machine.rollback()

        assert after == before

    @pytest.mark.asyncio
    async def test_rollback_keeps_other_metadata(self, machine: MigrationStateMachine) -> None:
        """Test that rollback only changes the mode."""
        await machine.set_active_backup("migration_backup_1")
        await machine.advance(MigrationMode.TRANSITIONING)

        metadata = await machine.rollback()

        assert metadata.active_backup_id == "migration_backup_1"


class TestMetadataHelpers:
    """Tests for record_migration_success() and set_active_backup()."""

    @pytest.mark.asyncio
    async def test_record_migration_success(self, machine: MigrationStateMachine) -> None:
        """Test the last successful migration stamp."""
        completed = datetime(2024, 1, 15, 9, 30, tzinfo=UTC)

        await machine.record_migration_success(completed)

        assert (await machine.metadata()).last_migrated_at == completed

    @pytest.mark.asyncio
    async def test_set_and_clear_active_backup(self, machine: MigrationStateMachine) -> None:
        """Test the active backup reference."""
        await machine.set_active_backup("migration_backup_1")
        assert (await machine.metadata()).active_backup_id == "migration_backup_1"

        await machine.set_active_backup(None)
        assert (await machine.metadata()).active_backup_id is None

    @pytest.mark.asyncio
    async def test_helpers_do_not_change_mode(self, machine: MigrationStateMachine) -> None:
        """Test that metadata helpers leave the mode alone."""
        await machine.advance(MigrationMode.TRANSITIONING)

        await machine.record_migration_success()
        await machine.set_active_backup("b")

        assert await machine.current_mode() == MigrationMode.TRANSITIONING
