"""
UnifiedStore - mode-aware read/write facade used by application code.

The unified store routes every call according to the current migration
mode, read from the state machine on every call:

    LEGACY         reads and writes go to the legacy store only
    TRANSITIONING  writes go to the target store first, then are mirrored
                   to the legacy store; reads try the target first and fall
                   back to the legacy store on not-found or transient errors
    MODERN         the legacy store is not touched

Consistency Guarantees:
    - In TRANSITIONING the target write always succeeds or the call fails
    - The legacy mirror is best-effort: failures are logged and tracked,
      never raised, since the legacy copy is disposable after cutover
    - A crash between the two writes leaves the target consistent
    - A record found only in the legacy store is copied to the target when
      updated and deleted from the legacy store when deleted

Every successful create/update/delete appends a TimelineEntry through
``fire_and_forget``; a failed append is logged and never fails the call.

Usage:
    >>> store = UnifiedStore(legacy, target, state_machine)
    >>> client = await store.create("clients", {"display_name": "Acme"})
    >>> await store.get_by_id("clients", client["id"])
    >>> stats = store.get_mirror_failure_stats()
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from consolidator.backends.interface import BulkWriteOutcome, StorageBackend, record_id_of
from consolidator.exceptions import ErrorCategory, RecordNotFoundError, classify_exception
from consolidator.models import (
    EntityRecord,
    MigrationConfig,
    MigrationMode,
    TimelineAction,
    TimelineEntry,
)
from consolidator.observability import (
    ATTR_BATCH_SIZE,
    ATTR_ENTITY_TYPE,
    ATTR_MIGRATION_MODE,
    ATTR_RECORD_ID,
    Tracer,
    create_tracer,
    fire_and_forget,
)
from consolidator.repositories.timeline import BackendTimelineRepository, TimelineRepository
from consolidator.state_machine import MigrationStateMachine

logger = logging.getLogger(__name__)

RecordPredicate = Callable[[EntityRecord], bool]


@dataclass
class MirrorFailure:
    """
    Records a failed write to the legacy mirror.

    Attributes:
        timestamp: When the failure occurred.
        entity_type: Entity type that was being written.
        record_id: Id of the record, if known.
        operation: "create", "update", "delete", "bulk_create" or "clear".
        error_message: The error message from the failed write.
    """

    timestamp: datetime
    entity_type: str
    record_id: str | None
    operation: str
    error_message: str


@dataclass
class MirrorFailureStats:
    """
    Statistics about legacy mirror failures.

    Attributes:
        total_failures: Number of failed mirror writes.
        first_failure_at: Timestamp of the first failure.
        last_failure_at: Timestamp of the most recent failure.
        unique_records_affected: Number of distinct records affected.
        failures_by_entity_type: Entity type -> failure count.
    """

    total_failures: int = 0
    first_failure_at: datetime | None = None
    last_failure_at: datetime | None = None
    unique_records_affected: int = 0
    failures_by_entity_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "total_failures": self.total_failures,
            "first_failure_at": (
                self.first_failure_at.isoformat() if self.first_failure_at else None
            ),
            "last_failure_at": (self.last_failure_at.isoformat() if self.last_failure_at else None),
            "unique_records_affected": self.unique_records_affected,
            "failures_by_entity_type": dict(self.failures_by_entity_type),
        }


class UnifiedStore:
    """
    CRUD facade routing to the legacy and/or target store by migration mode.

    Callers must serialise mutating calls on the same record id; the store
    provides no per-record locking.

    Example:
        >>> store = UnifiedStore(
        ...     legacy=KeyValueBackend(kv_store),
        ...     target=SQLAlchemyRecordStore(engine),
        ...     state_machine=state_machine,
        ... )
        >>> case = await store.create("cases", {"title": "Smith v Jones", "client_id": "c1"})
        >>> await store.update("cases", case["id"], {"status": "closed"})
        >>> [e.action for e in await store.timeline_for("cases", case["id"])]
        [<TimelineAction.CREATE: 'create'>, <TimelineAction.UPDATE: 'update'>]
    """

    def __init__(
        self,
        legacy: StorageBackend,
        target: StorageBackend,
        state_machine: MigrationStateMachine,
        timeline: TimelineRepository | None = None,
        config: MigrationConfig | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the unified store.

        Args:
            legacy: Legacy flat store.
            target: Structured target store.
            state_machine: Source of the current migration mode.
            timeline: Audit trail (default: the ``timeline`` collection of
                the target store).
            config: Configuration (actor and mirror failure history size).
            tracer: Optional tracer (if not provided, one will be created).
            enable_tracing: Whether to enable OpenTelemetry tracing (default True).
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._legacy = legacy
        self._target = target
        self._state_machine = state_machine
        self._timeline = timeline if timeline is not None else BackendTimelineRepository(target)
        self._config = config or MigrationConfig()

        self._mirror_failures: list[MirrorFailure] = []

    @property
    def legacy(self) -> StorageBackend:
        return self._legacy

    @property
    def target(self) -> StorageBackend:
        return self._target

    @property
    def timeline(self) -> TimelineRepository:
        return self._timeline

    async def mode(self) -> MigrationMode:
        """Current migration mode."""
        return await self._state_machine.current_mode()

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_all(self, entity_type: str) -> list[EntityRecord]:
        """
        All records of an entity type from the authoritative store.

        In TRANSITIONING, a transient target failure falls back to the
        legacy store.
        """
        mode = await self.mode()
        with self._tracer.span(
            "consolidator.unified_store.get_all",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_MIGRATION_MODE: mode.value},
        ):
            if mode == MigrationMode.LEGACY:
                return await self._legacy.get_all(entity_type)
            if mode == MigrationMode.MODERN:
                return await self._target.get_all(entity_type)
            try:
                return await self._target.get_all(entity_type)
            except Exception as e:
                if classify_exception(e) != ErrorCategory.TRANSIENT:
                    raise
                logger.warning(
                    "Target read of %s failed transiently, falling back to legacy: %s",
                    entity_type,
                    e,
                )
                return await self._legacy.get_all(entity_type)

    async def get_by_id(self, entity_type: str, record_id: str) -> EntityRecord | None:
        """
        One record by id, or None.

        In TRANSITIONING the target is tried first; the legacy copy is
        returned if the target reports not-found or fails transiently.
        """
        mode = await self.mode()
        with self._tracer.span(
            "consolidator.unified_store.get_by_id",
            {
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_RECORD_ID: record_id,
                ATTR_MIGRATION_MODE: mode.value,
            },
        ):
            if mode == MigrationMode.LEGACY:
                return await self._legacy.get_by_id(entity_type, record_id)
            if mode == MigrationMode.MODERN:
                return await self._target.get_by_id(entity_type, record_id)
            try:
                record = await self._target.get_by_id(entity_type, record_id)
            except Exception as e:
                if classify_exception(e) != ErrorCategory.TRANSIENT:
                    raise
                logger.warning(
                    "Target read of %s/%s failed transiently, falling back to legacy: %s",
                    entity_type,
                    record_id,
                    e,
                )
                return await self._legacy.get_by_id(entity_type, record_id)
            if record is None:
                logger.debug("%s/%s not in target, reading legacy copy", entity_type, record_id)
                return await self._legacy.get_by_id(entity_type, record_id)
            return record

    async def query(self, entity_type: str, predicate: RecordPredicate) -> list[EntityRecord]:
        """Records of an entity type for which ``predicate`` returns True."""
        return [r for r in await self.get_all(entity_type) if predicate(r)]

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(
        self,
        entity_type: str,
        record: EntityRecord,
        *,
        actor: str | None = None,
    ) -> EntityRecord:
        """
        Create a record; an id is generated when the record has none.

        Args:
            entity_type: Entity type to create in.
            record: Record fields.
            actor: Actor recorded on the timeline (default: config.actor).

        Returns:
            The stored record.

        Raises:
            DuplicateKeyError: If the id exists in the authoritative store.
        """
        record = self._with_id(record)
        record_id = str(record["id"])
        mode = await self.mode()
        with self._tracer.span(
            "consolidator.unified_store.create",
            {
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_RECORD_ID: record_id,
                ATTR_MIGRATION_MODE: mode.value,
            },
        ):
            created = await self._primary(mode).create(entity_type, record)
            if mode == MigrationMode.TRANSITIONING:
                await self._mirror(
                    entity_type,
                    record_id,
                    "create",
                    self._legacy.create(entity_type, created),
                )

        await self._append_timeline(entity_type, record_id, TimelineAction.CREATE, created, actor)
        return created

    async def update(
        self,
        entity_type: str,
        record_id: str,
        partial: EntityRecord,
        *,
        actor: str | None = None,
    ) -> EntityRecord:
        """
        Merge fields into an existing record.

        In TRANSITIONING a record that so far exists only in the legacy store
        is copied to the target with the fields merged in, and a record
        missing from the legacy mirror is re-created there from the updated
        target record.

        Raises:
            RecordNotFoundError: If no store the mode reads from holds the id.
        """
        mode = await self.mode()
        with self._tracer.span(
            "consolidator.unified_store.update",
            {
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_RECORD_ID: record_id,
                ATTR_MIGRATION_MODE: mode.value,
            },
        ):
            if mode == MigrationMode.TRANSITIONING:
                updated = await self._update_target(entity_type, record_id, partial)
                await self._mirror(
                    entity_type,
                    record_id,
                    "update",
                    self._mirror_update(entity_type, record_id, partial, updated),
                )
            else:
                updated = await self._primary(mode).update(entity_type, record_id, partial)

        await self._append_timeline(entity_type, record_id, TimelineAction.UPDATE, partial, actor)
        return updated

    async def delete(
        self,
        entity_type: str,
        record_id: str,
        *,
        actor: str | None = None,
    ) -> None:
        """
        Delete a record.

        In TRANSITIONING a record that exists only in the legacy store is
        deleted there, and that delete must succeed.

        Raises:
            RecordNotFoundError: If no store the mode reads from holds the id.
        """
        mode = await self.mode()
        with self._tracer.span(
            "consolidator.unified_store.delete",
            {
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_RECORD_ID: record_id,
                ATTR_MIGRATION_MODE: mode.value,
            },
        ):
            if mode != MigrationMode.TRANSITIONING:
                await self._primary(mode).delete(entity_type, record_id)
            elif not await self._delete_from_target(entity_type, record_id):
                await self._legacy.delete(entity_type, record_id)
            else:
                await self._mirror(
                    entity_type,
                    record_id,
                    "delete",
                    self._mirror_delete(entity_type, record_id),
                )

        await self._append_timeline(entity_type, record_id, TimelineAction.DELETE, {}, actor)

    async def bulk_create(
        self,
        entity_type: str,
        records: list[EntityRecord],
        *,
        actor: str | None = None,
    ) -> list[BulkWriteOutcome]:
        """
        Create many records with per-record outcomes.

        Only records created in the authoritative store are mirrored and
        recorded on the timeline.

        Returns:
            One BulkWriteOutcome per input record, in input order.
        """
        prepared = [self._with_id(r) for r in records]
        mode = await self.mode()
        with self._tracer.span(
            "consolidator.unified_store.bulk_create",
            {
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_BATCH_SIZE: len(prepared),
                ATTR_MIGRATION_MODE: mode.value,
            },
        ):
            outcomes = await self._primary(mode).bulk_create(entity_type, prepared)
            created = [o.record for o in outcomes if o.succeeded]
            if mode == MigrationMode.TRANSITIONING and created:
                await self._mirror_bulk(entity_type, created)

        for record in created:
            await self._append_timeline(
                entity_type, str(record["id"]), TimelineAction.CREATE, record, actor
            )
        return outcomes

    async def clear(self, entity_type: str) -> None:
        """Remove every record of an entity type from the active store(s)."""
        mode = await self.mode()
        await self._primary(mode).clear(entity_type)
        if mode == MigrationMode.TRANSITIONING:
            await self._mirror(entity_type, None, "clear", self._legacy.clear(entity_type))
        logger.info("Cleared %s (%s mode)", entity_type, mode.value)

    async def clear_all(self) -> None:
        """Remove every record of every entity type from the active store(s)."""
        mode = await self.mode()
        await self._primary(mode).clear_all()
        if mode == MigrationMode.TRANSITIONING:
            await self._mirror("*", None, "clear", self._legacy.clear_all())
        logger.info("Cleared all entity types (%s mode)", mode.value)

    # =========================================================================
    # Timeline
    # =========================================================================

    async def record_workflow(
        self,
        entity_type: str,
        ref_id: str,
        payload: dict[str, Any],
        *,
        actor: str | None = None,
    ) -> bool:
        """
        Record a workflow event (e.g. a stage change) on the timeline.

        Returns:
            True if the entry was appended.
        """
        return await self._append_timeline(
            entity_type, ref_id, TimelineAction.WORKFLOW, payload, actor
        )

    async def timeline_for(self, entity_type: str, ref_id: str) -> list[TimelineEntry]:
        """Timeline entries for one record, oldest first."""
        return await self._timeline.for_ref(entity_type, ref_id)

    # =========================================================================
    # Mirror failure tracking
    # =========================================================================

    def get_mirror_failures(self) -> list[MirrorFailure]:
        """
        Get the list of failed legacy mirror writes.

        Returns:
            List of MirrorFailure records in chronological order.
        """
        return list(self._mirror_failures)

    def get_mirror_failure_stats(self) -> MirrorFailureStats:
        """
        Get aggregate statistics about legacy mirror failures.

        Returns:
            MirrorFailureStats with summary metrics.
        """
        if not self._mirror_failures:
            return MirrorFailureStats()

        by_type: dict[str, int] = {}
        for failure in self._mirror_failures:
            by_type[failure.entity_type] = by_type.get(failure.entity_type, 0) + 1

        return MirrorFailureStats(
            total_failures=len(self._mirror_failures),
            first_failure_at=self._mirror_failures[0].timestamp,
            last_failure_at=self._mirror_failures[-1].timestamp,
            unique_records_affected=len(
                {(f.entity_type, f.record_id) for f in self._mirror_failures if f.record_id}
            ),
            failures_by_entity_type=by_type,
        )

    def clear_mirror_failures(self) -> int:
        """
        Clear the mirror failure history.

        Returns:
            Number of failure records cleared.
        """
        count = len(self._mirror_failures)
        self._mirror_failures.clear()
        return count

    # =========================================================================
    # Internals
    # =========================================================================

    def _primary(self, mode: MigrationMode) -> StorageBackend:
        """Store that must accept a write for the call to succeed."""
        return self._legacy if mode == MigrationMode.LEGACY else self._target

    @staticmethod
    def _with_id(record: EntityRecord) -> EntityRecord:
        if record_id_of(record) is not None:
            return dict(record)
        return {**record, "id": str(uuid4())}

    async def _mirror(
        self,
        entity_type: str,
        record_id: str | None,
        operation: str,
        write: Awaitable[object],
    ) -> None:
        """Await a legacy mirror write; track and log instead of raising."""
        try:
            await write
        except Exception as e:
            logger.warning(
                "Legacy mirror %s failed for %s/%s: %s",
                operation,
                entity_type,
                record_id or "*",
                e,
            )
            self._record_mirror_failure(entity_type, record_id, operation, e)

    async def _update_target(
        self,
        entity_type: str,
        record_id: str,
        partial: EntityRecord,
    ) -> EntityRecord:
        try:
            return await self._target.update(entity_type, record_id, partial)
        except RecordNotFoundError:
            legacy_copy = await self._legacy.get_by_id(entity_type, record_id)
            if legacy_copy is None:
                raise
        logger.info("%s/%s only in legacy store, copying it to the target", entity_type, record_id)
        return await self._target.create(entity_type, {**legacy_copy, **partial, "id": record_id})

    async def _delete_from_target(self, entity_type: str, record_id: str) -> bool:
        """Delete from the target; False if the record exists only in the legacy store."""
        try:
            await self._target.delete(entity_type, record_id)
        except RecordNotFoundError:
            if await self._legacy.get_by_id(entity_type, record_id) is None:
                raise
            return False
        return True

    async def _mirror_update(
        self,
        entity_type: str,
        record_id: str,
        partial: EntityRecord,
        updated: EntityRecord,
    ) -> None:
        try:
            await self._legacy.update(entity_type, record_id, partial)
        except RecordNotFoundError:
            logger.debug("%s/%s missing from legacy mirror, re-creating it", entity_type, record_id)
            await self._legacy.create(entity_type, updated)

    async def _mirror_delete(self, entity_type: str, record_id: str) -> None:
        try:
            await self._legacy.delete(entity_type, record_id)
        except RecordNotFoundError:
            logger.debug("%s/%s already absent from legacy mirror", entity_type, record_id)

    async def _mirror_bulk(self, entity_type: str, records: list[EntityRecord]) -> None:
        try:
            outcomes = await self._legacy.bulk_create(entity_type, records)
        except Exception as e:
            logger.warning("Legacy mirror bulk_create failed for %s: %s", entity_type, e)
            for record in records:
                self._record_mirror_failure(entity_type, record_id_of(record), "bulk_create", e)
            return
        for outcome in outcomes:
            if not outcome.succeeded and outcome.error is not None:
                self._record_mirror_failure(
                    entity_type, outcome.record_id, "bulk_create", outcome.error
                )

    def _record_mirror_failure(
        self,
        entity_type: str,
        record_id: str | None,
        operation: str,
        error: Exception,
    ) -> None:
        self._mirror_failures.append(
            MirrorFailure(
                timestamp=datetime.now(UTC),
                entity_type=entity_type,
                record_id=record_id,
                operation=operation,
                error_message=str(error),
            )
        )

        # Trim old failures to prevent unbounded growth
        limit = self._config.max_mirror_failure_history
        if len(self._mirror_failures) > limit:
            removed = len(self._mirror_failures) - limit
            self._mirror_failures = self._mirror_failures[removed:]
            logger.debug("Trimmed %d old mirror failure records", removed)

    async def _append_timeline(
        self,
        entity_type: str,
        ref_id: str,
        action: TimelineAction,
        payload: dict[str, Any],
        actor: str | None,
    ) -> bool:
        entry = TimelineEntry(
            entity_type=entity_type,
            ref_id=ref_id,
            action=action,
            payload=payload,
            actor=actor or self._config.actor,
        )
        return await fire_and_forget(
            self._timeline.append(entry),
            f"append {action.value} timeline entry for {entity_type}/{ref_id}",
            log=logger,
        )


__all__ = [
    "MirrorFailure",
    "MirrorFailureStats",
    "RecordPredicate",
    "UnifiedStore",
]
