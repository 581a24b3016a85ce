"""
MigrationStateMachine - tracks which storage backend is authoritative.

States:
    LEGACY (initial) -> TRANSITIONING -> MODERN
    TRANSITIONING -> LEGACY, MODERN -> LEGACY (rollback)

The state machine persists every transition through a
MigrationMetadataRepository before returning, so a ``current_mode()``
issued after ``advance()`` returns always observes the new mode. It never
touches entity data.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from consolidator.exceptions import InvalidTransitionError
from consolidator.models import MigrationMetadata, MigrationMode
from consolidator.observability import (
    ATTR_MIGRATION_MODE,
    ATTR_MIGRATION_TARGET_MODE,
    Tracer,
    create_tracer,
)
from consolidator.repositories.metadata import MigrationMetadataRepository

logger = logging.getLogger(__name__)


class MigrationStateMachine:
    """
    Persistent MigrationMode with validated transitions.

    Only the storage migrator should call the mutating methods; the unified
    store reads ``current_mode()`` on every call.

    Example:
        >>> machine = MigrationStateMachine(InMemoryMetadataRepository())
        >>> await machine.current_mode()
        <MigrationMode.LEGACY: 'legacy'>
        >>> await machine.advance(MigrationMode.TRANSITIONING)
        >>> await machine.advance(MigrationMode.LEGACY)  # rollback
    """

    def __init__(
        self,
        metadata_repo: MigrationMetadataRepository,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the state machine.

        Args:
            metadata_repo: Repository holding the metadata singleton.
            tracer: Optional tracer (if not provided, one will be created).
            enable_tracing: Whether to enable OpenTelemetry tracing (default True).
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._repo = metadata_repo
        # Serialises read-modify-write of the metadata record
        self._lock = asyncio.Lock()

    async def current_mode(self) -> MigrationMode:
        """Read the persisted mode."""
        metadata = await self._repo.load()
        return metadata.mode

    async def metadata(self) -> MigrationMetadata:
        """Read the full persisted metadata record."""
        return await self._repo.load()

    async def advance(self, to: MigrationMode) -> MigrationMetadata:
        """
        Transition to a new mode.

        Args:
            to: Requested mode.

        Returns:
            The persisted metadata after the transition.

        Raises:
            InvalidTransitionError: If ``to`` is not reachable from the
                current mode (e.g. LEGACY -> MODERN, or a self-transition).
        """
        async with self._lock:
            metadata = await self._repo.load()
            current = metadata.mode
            with self._tracer.span(
                "consolidator.state_machine.advance",
                {ATTR_MIGRATION_MODE: current.value, ATTR_MIGRATION_TARGET_MODE: to.value},
            ):
                if not current.can_transition_to(to):
                    raise InvalidTransitionError(current, to)

                updated = metadata.model_copy(update={"mode": to, "updated_at": datetime.now(UTC)})
                await self._repo.save(updated)

        logger.info("Migration mode changed: %s -> %s", current.value, to.value)
        return updated

    async def rollback(self) -> MigrationMetadata:
        """
        Force the mode back to LEGACY.

        Rolling back while already in LEGACY is a no-op rather than an
        error, so an interrupted rollback can be re-issued.

        Returns:
            The persisted metadata.
        """
        async with self._lock:
            metadata = await self._repo.load()
            if metadata.mode == MigrationMode.LEGACY:
                return metadata
            previous = metadata.mode
            updated = metadata.model_copy(
                update={"mode": MigrationMode.LEGACY, "updated_at": datetime.now(UTC)}
            )
            await self._repo.save(updated)

        logger.info("Migration mode rolled back: %s -> legacy", previous.value)
        return updated

    async def record_migration_success(self, completed_at: datetime | None = None) -> None:
        """Stamp the time of the last fully successful migration run."""
        await self._update(last_migrated_at=completed_at or datetime.now(UTC))

    async def set_active_backup(self, backup_id: str | None) -> None:
        """Point the metadata at the backup a rollback should restore from."""
        await self._update(active_backup_id=backup_id)

    async def _update(self, **changes: object) -> None:
        async with self._lock:
            metadata = await self._repo.load()
            await self._repo.save(
                metadata.model_copy(update={**changes, "updated_at": datetime.now(UTC)})
            )


__all__ = ["MigrationStateMachine"]
