"""
StorageMigrator - moves entity data from the legacy store to the target store.

The migrator is the only component allowed to change the migration mode.
Each operation is independently invocable and safe to re-issue:

    - assess_storage_state: read-only record counts per backend
    - create_backup: snapshot of the complete legacy store
    - migrate_from_local_storage: transform and copy, entity type by entity
      type in dependency order; advances LEGACY -> TRANSITIONING on full
      success
    - validate_integrity: foreign keys, duplicate ids, required fields
    - rollback_to_legacy: restore the legacy store from the latest snapshot
      and force LEGACY
    - complete_cutover: TRANSITIONING -> MODERN after a clean validation

Failure Semantics:
    Record-level failures (transform errors, rejected writes) are
    accumulated in the MigrationReport and the run continues with the next
    record. Backend errors that affect a whole collection are attached to
    the report as errors. Only PreconditionError subclasses and
    BackendUnavailableError propagate to the caller. A run that reports any
    failure never advances the mode.

Usage:
    >>> migrator = StorageMigrator(legacy, target, state_machine, backups)
    >>> await migrator.assess_storage_state()
    >>> await migrator.create_backup()
    >>> report = await migrator.migrate_from_local_storage()
    >>> report.passed
    True
    >>> await migrator.get_migration_mode()
    <MigrationMode.TRANSITIONING: 'transitioning'>
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from consolidator.backends.interface import BulkWriteOutcome, StorageBackend, record_id_of
from consolidator.exceptions import (
    BackendUnavailableError,
    BackupRequiredError,
    ConsolidatorError,
    DuplicateKeyError,
    ErrorCategory,
    InvalidTransitionError,
    NoBackupAvailableError,
    PreconditionError,
    TransformError,
    classify_exception,
    retry_transient,
)
from consolidator.mapping import EntityMappingTable
from consolidator.models import (
    BackupSnapshot,
    EntityCount,
    EntityRecord,
    IntegrityViolation,
    MigrationConfig,
    MigrationMode,
    MigrationProgress,
    MigrationReport,
    MigrationStatus,
    RecordFailure,
    ViolationKind,
)
from consolidator.observability import (
    ATTR_BACKUP_ID,
    ATTR_ENTITY_TYPE,
    ATTR_MIGRATION_MODE,
    ATTR_MIGRATION_RECORDS_FAILED,
    ATTR_MIGRATION_RECORDS_MIGRATED,
    ATTR_RECORD_COUNT,
    Tracer,
    create_tracer,
)
from consolidator.repositories.backup import BackupRepository
from consolidator.repositories.timeline import TIMELINE_COLLECTION
from consolidator.state_machine import MigrationStateMachine

logger = logging.getLogger(__name__)

SYSTEM_COLLECTIONS = frozenset({TIMELINE_COLLECTION})
"""Collections that hold engine data rather than entities; never migrated or restored."""

ProgressCallback = Callable[[MigrationProgress], None]


@dataclass
class _TypeResult:
    """Per-entity-type outcome of one pipeline stage."""

    migrated: int = 0
    skipped: int = 0
    failures: list[RecordFailure] = dataclasses.field(default_factory=list)


@dataclass(frozen=True)
class _Staged:
    """A transformed record waiting to be written."""

    legacy: EntityRecord
    record: EntityRecord
    occurrence: int


def _failure_from(
    entity_type: str,
    legacy_record: EntityRecord,
    error: BaseException,
    record_id: str | None = None,
    occurrence: int = 0,
) -> RecordFailure:
    category = classify_exception(error)
    if category not in (ErrorCategory.TRANSIENT, ErrorCategory.PERMANENT):
        category = ErrorCategory.PERMANENT
    error_code = error.error_code if isinstance(error, ConsolidatorError) else type(error).__name__
    message = error.message if isinstance(error, ConsolidatorError) else str(error)
    return RecordFailure(
        entity_type=entity_type,
        record_id=record_id or record_id_of(legacy_record),
        category=category,
        error_code=error_code,
        message=message,
        record=legacy_record,
        occurrence=occurrence,
    )


class StorageMigrator:
    """
    Orchestrates assessment, backup, migration, validation and rollback.

    Example:
        >>> migrator = StorageMigrator(
        ...     legacy=KeyValueBackend(kv_store),
        ...     target=SQLAlchemyRecordStore(engine),
        ...     state_machine=MigrationStateMachine(KeyValueMetadataRepository(kv_store)),
        ...     backups=KeyValueBackupRepository(kv_store),
        ...     config=MigrationConfig(batch_size=50),
        ... )
        >>> await migrator.create_backup()
        >>> report = await migrator.migrate_from_local_storage(progress_callback=print)
    """

    def __init__(
        self,
        legacy: StorageBackend,
        target: StorageBackend,
        state_machine: MigrationStateMachine,
        backups: BackupRepository,
        mapping: EntityMappingTable | None = None,
        config: MigrationConfig | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the migrator.

        Args:
            legacy: Legacy flat store.
            target: Structured target store.
            state_machine: Persistent migration mode.
            backups: Repository for legacy snapshots.
            mapping: Mapping rules (default: the built-in rule set).
            config: Migration configuration (default: MigrationConfig()).
            tracer: Optional tracer (if not provided, one will be created).
            enable_tracing: Whether to enable OpenTelemetry tracing (default True).
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._legacy = legacy
        self._target = target
        self._state_machine = state_machine
        self._backups = backups
        self._mapping = mapping or EntityMappingTable()
        self._config = config or MigrationConfig()

        self._running = False
        self._cancel_requested = False
        self._last_report: MigrationReport | None = None

    @property
    def mapping(self) -> EntityMappingTable:
        return self._mapping

    @property
    def config(self) -> MigrationConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        """True while a migration or retry run is in progress."""
        return self._running

    # =========================================================================
    # Mode
    # =========================================================================

    async def get_migration_mode(self) -> MigrationMode:
        """Current migration mode (passthrough to the state machine)."""
        return await self._state_machine.current_mode()

    async def get_status(self) -> MigrationStatus:
        """
        Snapshot of the migrator for dashboards.

        Returns:
            MigrationStatus with the mode, the last report and metadata
            timestamps.
        """
        metadata = await self._state_machine.metadata()
        return MigrationStatus(
            mode=metadata.mode,
            running=self._running,
            last_migrated_at=metadata.last_migrated_at,
            active_backup_id=metadata.active_backup_id,
            last_report=self._last_report,
        )

    # =========================================================================
    # Assessment
    # =========================================================================

    async def assess_storage_state(self) -> MigrationReport:
        """
        Count records per entity type in each backend.

        Read-only and safe in any mode. Entity types present in the legacy
        store but absent or short in the target are reported as errors;
        legacy records without an id are reported as warnings.

        Returns:
            MigrationReport with ``entity_counts`` for every entity type
            found in either backend.
        """
        mode = await self._state_machine.current_mode()
        report = MigrationReport(operation="assess", mode=mode)

        with self._tracer.span(
            "consolidator.migrator.assess_storage_state",
            {ATTR_MIGRATION_MODE: mode.value},
        ):
            legacy_types = await self._list_entity_types(self._legacy, report)
            target_types = await self._list_entity_types(self._target, report)

            for entity_type in self._mapping.migration_order(legacy_types | target_types):
                count = EntityCount()
                if entity_type in legacy_types:
                    records = await self._read_all(self._legacy, entity_type, report)
                    if records is not None:
                        count.legacy = len(records)
                        missing_ids = sum(1 for r in records if record_id_of(r) is None)
                        if missing_ids:
                            report.warnings.append(
                                f"{entity_type}: {missing_ids} legacy record(s) without an id "
                                "will receive generated ids"
                            )
                if entity_type in target_types:
                    target_count = await self._count(self._target, entity_type, report)
                    if target_count is not None:
                        count.target = target_count
                if count.is_short:
                    report.errors.append(
                        f"{entity_type}: {count.legacy} record(s) in legacy store, "
                        f"{count.target} in target store"
                    )
                report.entity_counts[entity_type] = count

        report.finish(mode)
        logger.info(
            "Assessed storage: %d entity type(s), %d discrepancy(ies)",
            len(report.entity_counts),
            len(report.errors),
        )
        return report

    # =========================================================================
    # Backups
    # =========================================================================

    async def create_backup(self) -> BackupSnapshot:
        """
        Snapshot the complete legacy store and make it the active backup.

        The snapshot is either stored complete or not at all: a failure to
        read any legacy collection aborts the backup and propagates, since
        there is no report to attach a partial backup to.

        Returns:
            The stored BackupSnapshot.

        Raises:
            BackendError: If the legacy store cannot be read.
        """
        with self._tracer.span("consolidator.migrator.create_backup") as span:
            entities: dict[str, list[EntityRecord]] = {}
            for entity_type in sorted(set(await self._legacy.entity_types()) - SYSTEM_COLLECTIONS):
                entities[entity_type] = await self._legacy.get_all(entity_type)

            snapshot = await self._backups.save(BackupSnapshot.capture(entities))
            await self._state_machine.set_active_backup(snapshot.id)

            if span is not None:
                span.set_attribute(ATTR_BACKUP_ID, snapshot.id)
                span.set_attribute(ATTR_RECORD_COUNT, snapshot.record_count)

        logger.info(
            "Created backup %s: %d record(s) across %d entity type(s)",
            snapshot.id,
            snapshot.record_count,
            len(snapshot.entities),
        )
        return snapshot

    async def list_backups(self) -> list[BackupSnapshot]:
        """All stored backups, oldest first."""
        return await self._backups.list()

    async def discard_backup(self, snapshot_id: str) -> bool:
        """
        Delete a backup snapshot (explicit operator action).

        Discarding the active backup clears the metadata reference, so a
        new backup is required before the next migration run.

        Args:
            snapshot_id: Id of the snapshot to delete.

        Returns:
            True if a snapshot was deleted.
        """
        discarded = await self._backups.discard(snapshot_id)
        if discarded:
            metadata = await self._state_machine.metadata()
            if metadata.active_backup_id == snapshot_id:
                await self._state_machine.set_active_backup(None)
            logger.info("Backup %s discarded by operator", snapshot_id)
        return discarded

    # =========================================================================
    # Migration
    # =========================================================================

    async def migrate_from_local_storage(
        self,
        progress_callback: ProgressCallback | None = None,
    ) -> MigrationReport:
        """
        Transform and copy every legacy record into the target store.

        Entity types are processed strictly sequentially in dependency
        order; records inside one type may be written concurrently up to
        ``config.max_concurrency``. Records already present in the target
        with identical content are skipped, so re-running after a
        successful run is a no-op.

        On full success from LEGACY the mode advances to TRANSITIONING.

        Args:
            progress_callback: Called with a MigrationProgress after each
                entity type.

        Returns:
            MigrationReport describing the run.

        Raises:
            BackupRequiredError: If no active backup exists.
            InvalidTransitionError: If the system is already MODERN.
            PreconditionError: If another run is in progress.
            BackendUnavailableError: If a backend cannot be reached.
        """
        mode = await self._start_run()
        report = MigrationReport(operation="migrate", mode=mode)
        self._last_report = report
        self._cancel_requested = False

        try:
            with self._tracer.span(
                "consolidator.migrator.migrate",
                {ATTR_MIGRATION_MODE: mode.value},
            ) as span:
                legacy_types = await self._list_entity_types(self._legacy, report)
                order = self._mapping.migration_order(legacy_types)
                logger.info("Starting migration of %d entity type(s): %s", len(order), order)

                for done, entity_type in enumerate(order, start=1):
                    if self._cancel_requested:
                        report.cancelled = True
                        logger.warning(
                            "Migration cancelled before %s (%d/%d entity types done)",
                            entity_type,
                            done - 1,
                            len(order),
                        )
                        break

                    records = await self._read_all(self._legacy, entity_type, report)
                    if records is not None:
                        result = await self._run_stage(entity_type, records, report)
                        await self._record_counts(
                            entity_type, len(records), len(result.failures), report
                        )

                    self._notify(
                        progress_callback,
                        MigrationProgress(
                            entity_type=entity_type,
                            entity_types_done=done,
                            entity_types_total=len(order),
                            records_processed=(
                                report.records_migrated
                                + report.records_skipped
                                + len(report.record_failures)
                            ),
                            records_failed=len(report.record_failures),
                        ),
                    )

                if report.passed and self._config.verify_after_migrate:
                    report.violations.extend(await self._collect_violations(report))

                if span is not None:
                    span.set_attribute(ATTR_MIGRATION_RECORDS_MIGRATED, report.records_migrated)
                    span.set_attribute(ATTR_MIGRATION_RECORDS_FAILED, len(report.record_failures))

            final_mode = await self._conclude_run(mode, report)
        finally:
            self._running = False

        report.finish(final_mode)
        self._log_run_result(report)
        return report

    async def retry_failed(self, previous: MigrationReport) -> MigrationReport:
        """
        Re-run only the records that failed in a previous run.

        Records go through the same transform, so records that made it into
        the target in the meantime are skipped rather than duplicated.
        DUPLICATE_KEY failures are carried into the new report unchanged,
        since only fixing the legacy data resolves them. When
        every failure is resolved, and the previous run had no
        collection-level errors, the mode advances as after a full success.

        Args:
            previous: Report of an earlier migrate or retry run.

        Returns:
            MigrationReport for the retry run.

        Raises:
            BackupRequiredError: If no active backup exists.
            InvalidTransitionError: If the system is already MODERN.
            PreconditionError: If another run is in progress.
            BackendUnavailableError: If a backend cannot be reached.
        """
        mode = await self._start_run()
        report = MigrationReport(operation="retry", mode=mode)
        self._last_report = report
        self._cancel_requested = False

        pending: dict[str, list[RecordFailure]] = {}
        for failure in previous.record_failures:
            if failure.error_code == "DUPLICATE_KEY":
                # rewriting the same record cannot resolve a clash of ids
                report.record_failures.append(failure)
                continue
            pending.setdefault(failure.entity_type, []).append(failure)

        try:
            with self._tracer.span(
                "consolidator.migrator.retry_failed",
                {ATTR_MIGRATION_MODE: mode.value, ATTR_RECORD_COUNT: len(previous.record_failures)},
            ):
                for entity_type in self._mapping.migration_order(pending):
                    failures = pending[entity_type]
                    await self._run_stage(
                        entity_type,
                        [f.record for f in failures],
                        report,
                        occurrences=[f.occurrence for f in failures],
                    )

            if previous.errors or previous.cancelled:
                report.warnings.append(
                    "Previous run had collection-level errors or was cancelled; "
                    "run a full migration to complete it"
                )
                final_mode = mode
            else:
                final_mode = await self._conclude_run(mode, report)
        finally:
            self._running = False

        report.finish(final_mode)
        self._log_run_result(report)
        return report

    def cancel(self) -> None:
        """
        Request cancellation of the running migration.

        The run stops at the next entity-type boundary, reports
        ``cancelled=True`` and does not advance the mode.
        """
        if not self._running:
            logger.debug("Cancel requested with no migration running")
            return
        self._cancel_requested = True
        logger.info("Migration cancellation requested")

    # =========================================================================
    # Validation
    # =========================================================================

    async def validate_integrity(self) -> MigrationReport:
        """
        Check the target store for integrity violations.

        Checks every record for (a) foreign keys resolving to an existing
        record of the referenced type, (b) unique ids within an entity type
        and (c) required fields being present and non-empty. Violations are
        reported, never corrected.

        Returns:
            MigrationReport with ``violations`` and target counts.
        """
        mode = await self._state_machine.current_mode()
        report = MigrationReport(operation="validate", mode=mode)
        with self._tracer.span(
            "consolidator.migrator.validate_integrity",
            {ATTR_MIGRATION_MODE: mode.value},
        ):
            report.violations.extend(await self._collect_violations(report))
        report.finish(mode)
        logger.info("Integrity validation found %d violation(s)", len(report.violations))
        return report

    # =========================================================================
    # Rollback and cutover
    # =========================================================================

    async def rollback_to_legacy(self) -> MigrationReport:
        """
        Restore the legacy store from the latest backup and force LEGACY.

        Entity types absent from the snapshot are cleared from the legacy
        store. The target store is left untouched for inspection. If any
        collection cannot be restored the mode is left unchanged and the
        report lists the failures; the rollback can be re-issued.

        Returns:
            MigrationReport with the restored legacy counts.

        Raises:
            NoBackupAvailableError: If no backup exists.
            BackendUnavailableError: If the legacy store cannot be reached.
        """
        snapshot = await self._backups.latest()
        if snapshot is None:
            raise NoBackupAvailableError()

        mode = await self._state_machine.current_mode()
        report = MigrationReport(operation="rollback", mode=mode)

        with self._tracer.span(
            "consolidator.migrator.rollback",
            {ATTR_MIGRATION_MODE: mode.value, ATTR_BACKUP_ID: snapshot.id},
        ):
            current_types = await self._list_entity_types(self._legacy, report)
            for entity_type in sorted(current_types - set(snapshot.entities)):
                await self._restore(entity_type, [], report)
            for entity_type, records in snapshot.entities.items():
                if entity_type in SYSTEM_COLLECTIONS:
                    continue
                await self._restore(entity_type, records, report)

            if report.errors:
                final_mode = mode
                logger.error(
                    "Rollback from %s incomplete; mode left at %s", snapshot.id, mode.value
                )
            else:
                await self._state_machine.rollback()
                await self._state_machine.set_active_backup(snapshot.id)
                final_mode = MigrationMode.LEGACY
                logger.info("Rolled back to legacy from backup %s", snapshot.id)

        self._last_report = report.finish(final_mode)
        return report

    async def complete_cutover(self) -> MigrationReport:
        """
        Advance TRANSITIONING -> MODERN after validating integrity.

        With ``config.require_clean_integrity_for_cutover`` (the default)
        any violation or validation error blocks the cutover and the report
        is returned with the mode unchanged.

        Returns:
            MigrationReport of the validation run.

        Raises:
            InvalidTransitionError: If the current mode is not TRANSITIONING.
        """
        mode = await self._state_machine.current_mode()
        if mode != MigrationMode.TRANSITIONING:
            raise InvalidTransitionError(mode, MigrationMode.MODERN)

        report = MigrationReport(operation="cutover", mode=mode)
        with self._tracer.span(
            "consolidator.migrator.complete_cutover",
            {ATTR_MIGRATION_MODE: mode.value},
        ):
            report.violations.extend(await self._collect_violations(report))
            final_mode = mode
            if report.passed or not self._config.require_clean_integrity_for_cutover:
                await self._state_machine.advance(MigrationMode.MODERN)
                final_mode = MigrationMode.MODERN
            else:
                logger.warning(
                    "Cutover blocked: %d violation(s), %d error(s)",
                    len(report.violations),
                    len(report.errors),
                )

        self._last_report = report.finish(final_mode)
        return report

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _run_stage(
        self,
        entity_type: str,
        legacy_records: list[EntityRecord],
        report: MigrationReport,
        occurrences: list[int] | None = None,
    ) -> _TypeResult:
        """
        Transform and write one entity type; fold the outcome into the report.

        Two records of one stage that map to the same id are never both
        written: the later one fails with DUPLICATE_KEY instead of being
        mistaken for a record already migrated by an earlier run.
        """
        if occurrences is None:
            occurrences = self._mapping.occurrences(entity_type, legacy_records)

        with self._tracer.span(
            "consolidator.migrator.migrate_entity_type",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_RECORD_COUNT: len(legacy_records)},
        ):
            result = _TypeResult()
            staged: list[_Staged] = []
            staged_ids: set[str] = set()
            for legacy_record, occurrence in zip(legacy_records, occurrences, strict=True):
                try:
                    record = self._mapping.transform(entity_type, legacy_record, occurrence)
                except TransformError as e:
                    logger.debug("Transform failed for %s record: %s", entity_type, e)
                    result.failures.append(
                        _failure_from(entity_type, legacy_record, e, occurrence=occurrence)
                    )
                    continue

                record_id = record_id_of(record)
                if record_id is not None and record_id in staged_ids:
                    logger.debug("Duplicate id %s within %s", record_id, entity_type)
                    result.failures.append(
                        _failure_from(
                            entity_type,
                            legacy_record,
                            DuplicateKeyError(entity_type, record_id),
                            record_id,
                            occurrence,
                        )
                    )
                    continue
                if record_id is not None:
                    staged_ids.add(record_id)
                staged.append(_Staged(legacy_record, record, occurrence))

            batch_size = self._config.batch_size
            for start in range(0, len(staged), batch_size):
                batch = staged[start : start + batch_size]
                await self._write_batch(entity_type, batch, result)

        report.records_migrated += result.migrated
        report.records_skipped += result.skipped
        report.record_failures.extend(result.failures)
        if result.failures:
            logger.warning(
                "%s: %d migrated, %d skipped, %d failed",
                entity_type,
                result.migrated,
                result.skipped,
                len(result.failures),
            )
        else:
            logger.info(
                "%s: %d migrated, %d already present", entity_type, result.migrated, result.skipped
            )
        return result

    async def _write_batch(
        self,
        entity_type: str,
        batch: list[_Staged],
        result: _TypeResult,
    ) -> None:
        """Write one batch, split into concurrent chunks when configured."""
        chunks = max(1, min(self._config.max_concurrency, len(batch)))
        chunk_size = -(-len(batch) // chunks)
        parts = [batch[i : i + chunk_size] for i in range(0, len(batch), chunk_size)]
        outcomes = await asyncio.gather(*(self._write_chunk(entity_type, p) for p in parts))
        for part, part_outcomes in zip(parts, outcomes, strict=True):
            for item, outcome in zip(part, part_outcomes, strict=True):
                await self._settle(entity_type, item, outcome, result)

    async def _write_chunk(
        self,
        entity_type: str,
        chunk: list[_Staged],
    ) -> list[BulkWriteOutcome]:
        records = [item.record for item in chunk]
        try:
            return await self._target.bulk_create(entity_type, records)
        except BackendUnavailableError:
            raise
        except Exception as e:
            logger.warning(
                "bulk_create of %d %s record(s) failed: %s", len(records), entity_type, e
            )
            return [BulkWriteOutcome.failed(i, r, e) for i, r in enumerate(records)]

    async def _settle(
        self,
        entity_type: str,
        item: _Staged,
        outcome: BulkWriteOutcome,
        result: _TypeResult,
    ) -> None:
        """Turn one write outcome into migrated, skipped or failed."""
        if outcome.succeeded:
            result.migrated += 1
            return

        error = outcome.error
        assert error is not None
        record = item.record
        record_id = record_id_of(record)

        if isinstance(error, DuplicateKeyError) and record_id is not None:
            # ids are unique within a stage, so the existing row predates this run
            try:
                existing = await self._target.get_by_id(entity_type, record_id)
            except BackendUnavailableError:
                raise
            except Exception as e:
                logger.debug("Could not compare duplicate %s/%s: %s", entity_type, record_id, e)
                existing = None
            if existing == record:
                result.skipped += 1
                return
            result.failures.append(
                _failure_from(entity_type, item.legacy, error, record_id, item.occurrence)
            )
            return

        if classify_exception(error) == ErrorCategory.TRANSIENT:
            error = await self._retry_write(entity_type, record, error)
            if error is None:
                result.migrated += 1
                return

        logger.debug("Write failed for %s/%s: %s", entity_type, record_id, error)
        result.failures.append(
            _failure_from(entity_type, item.legacy, error, record_id, item.occurrence)
        )

    async def _retry_write(
        self,
        entity_type: str,
        record: EntityRecord,
        first_error: Exception,
    ) -> Exception | None:
        """
        Retry a transiently failed write per ``config.transient_retry``.

        Returns:
            None if a retry succeeded, otherwise the last error.
        """
        policy = self._config.transient_retry
        if policy.max_attempts <= 1:
            return first_error

        await asyncio.sleep(policy.get_delay_ms(0) / 1000)
        remaining = dataclasses.replace(policy, max_attempts=policy.max_attempts - 1)
        try:
            await retry_transient(
                lambda: self._target.create(entity_type, record),
                remaining,
                description=f"write of {entity_type}/{record_id_of(record)}",
            )
        except BackendUnavailableError:
            raise
        except DuplicateKeyError:
            # an earlier attempt landed before its error was reported
            return None
        except Exception as e:
            return e
        return None

    async def _conclude_run(self, mode: MigrationMode, report: MigrationReport) -> MigrationMode:
        """Advance the mode after a fully successful run; return the resulting mode."""
        if not report.passed:
            return mode
        await self._state_machine.record_migration_success()
        if mode == MigrationMode.LEGACY:
            await self._state_machine.advance(MigrationMode.TRANSITIONING)
            return MigrationMode.TRANSITIONING
        return mode

    async def _start_run(self) -> MigrationMode:
        """Claim the single run slot and check preconditions; returns the current mode."""
        if self._running:
            raise PreconditionError("A migration run is already in progress")
        # claimed before the first await so concurrent callers see it
        self._running = True
        try:
            metadata = await self._state_machine.metadata()
            if metadata.mode == MigrationMode.MODERN:
                raise InvalidTransitionError(metadata.mode, MigrationMode.TRANSITIONING)

            if metadata.active_backup_id is None:
                raise BackupRequiredError()
            if await self._backups.get(metadata.active_backup_id) is None:
                raise BackupRequiredError()
        except BaseException:
            self._running = False
            raise
        return metadata.mode

    # =========================================================================
    # Integrity checks
    # =========================================================================

    async def _collect_violations(self, report: MigrationReport) -> list[IntegrityViolation]:
        target_types = await self._list_entity_types(self._target, report)
        entity_types = self._mapping.migration_order(
            (set(self._mapping.entity_types) | target_types) - SYSTEM_COLLECTIONS
        )

        contents: dict[str, list[EntityRecord]] = {}
        for entity_type in entity_types:
            records = await self._read_all(self._target, entity_type, report)
            if records is not None:
                contents[entity_type] = records
                count = report.entity_counts.setdefault(entity_type, EntityCount())
                count.target = len(records)

        known_ids = {t: {record_id_of(r) for r in records} for t, records in contents.items()}

        violations: list[IntegrityViolation] = []
        for entity_type, records in contents.items():
            violations.extend(self._duplicate_ids(entity_type, records))
            rule = self._mapping.rule_for(entity_type)
            for record in records:
                record_id = record_id_of(record)
                for field_name in rule.required_fields:
                    value = record.get(field_name)
                    if value is None or value == "":
                        violations.append(
                            IntegrityViolation(
                                entity_type=entity_type,
                                record_id=record_id,
                                kind=ViolationKind.MISSING_REQUIRED_FIELD,
                                field=field_name,
                                message=(
                                    f"{entity_type}/{record_id}: required field "
                                    f"'{field_name}' is missing"
                                ),
                            )
                        )
                for field_name, referenced_type in rule.foreign_keys.items():
                    value = record.get(field_name)
                    if value is None or value == "":
                        continue
                    if referenced_type not in known_ids:
                        # unreadable referenced collection is already in report.errors
                        continue
                    if str(value) not in known_ids[referenced_type]:
                        violations.append(
                            IntegrityViolation(
                                entity_type=entity_type,
                                record_id=record_id,
                                kind=ViolationKind.ORPHANED_REFERENCE,
                                field=field_name,
                                message=(
                                    f"{entity_type}/{record_id}: {field_name}={value} "
                                    f"does not resolve to a record in {referenced_type}"
                                ),
                            )
                        )
        return violations

    @staticmethod
    def _duplicate_ids(
        entity_type: str, records: Iterable[EntityRecord]
    ) -> list[IntegrityViolation]:
        counts = Counter(record_id_of(r) for r in records)
        return [
            IntegrityViolation(
                entity_type=entity_type,
                record_id=record_id,
                kind=ViolationKind.DUPLICATE_ID,
                field="id",
                message=f"{entity_type}: id {record_id} occurs {n} times",
            )
            for record_id, n in counts.items()
            if n > 1
        ]

    # =========================================================================
    # Guarded backend access
    # =========================================================================

    async def _list_entity_types(
        self, backend: StorageBackend, report: MigrationReport
    ) -> set[str]:
        try:
            return set(await backend.entity_types()) - SYSTEM_COLLECTIONS
        except BackendUnavailableError:
            raise
        except Exception as e:
            report.errors.append(f"{backend.name}: could not list entity types: {e}")
            logger.warning("Could not list entity types of %s: %s", backend.name, e)
            return set()

    async def _read_all(
        self,
        backend: StorageBackend,
        entity_type: str,
        report: MigrationReport,
    ) -> list[EntityRecord] | None:
        try:
            return await backend.get_all(entity_type)
        except BackendUnavailableError:
            raise
        except Exception as e:
            report.errors.append(f"{entity_type}: could not read from {backend.name}: {e}")
            logger.warning("Could not read %s from %s: %s", entity_type, backend.name, e)
            return None

    async def _count(
        self,
        backend: StorageBackend,
        entity_type: str,
        report: MigrationReport,
    ) -> int | None:
        try:
            return await backend.count(entity_type)
        except BackendUnavailableError:
            raise
        except Exception as e:
            report.errors.append(f"{entity_type}: could not count in {backend.name}: {e}")
            return None

    async def _record_counts(
        self,
        entity_type: str,
        legacy_count: int,
        failed: int,
        report: MigrationReport,
    ) -> None:
        """Store the counts of one entity type; a shortfall not covered by failures is an error."""
        target_count = await self._count(self._target, entity_type, report)
        count = EntityCount(legacy=legacy_count, target=target_count or 0)
        report.entity_counts[entity_type] = count
        if target_count is not None and count.target + failed < count.legacy:
            report.errors.append(
                f"{entity_type}: {count.legacy} record(s) in legacy store but only "
                f"{count.target} in target store and {failed} reported failure(s)"
            )
            logger.error(
                "%s: target holds %d of %d legacy record(s) with %d failure(s)",
                entity_type,
                count.target,
                count.legacy,
                failed,
            )

    async def _restore(
        self,
        entity_type: str,
        records: list[EntityRecord],
        report: MigrationReport,
    ) -> None:
        try:
            await self._legacy.replace_all(entity_type, records)
        except BackendUnavailableError:
            raise
        except Exception as e:
            report.errors.append(f"{entity_type}: could not restore legacy records: {e}")
            logger.error("Could not restore %s into legacy store: %s", entity_type, e)
            return
        report.entity_counts[entity_type] = EntityCount(legacy=len(records))

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _notify(callback: ProgressCallback | None, progress: MigrationProgress) -> None:
        if callback is None:
            return
        try:
            callback(progress)
        except Exception as e:
            logger.warning("Progress callback failed: %s", e)

    @staticmethod
    def _log_run_result(report: MigrationReport) -> None:
        if report.passed:
            logger.info(
                "Migration %s passed: %d migrated, %d skipped; mode is %s",
                report.operation,
                report.records_migrated,
                report.records_skipped,
                report.mode.value,
            )
        else:
            logger.error(
                "Migration %s failed: %d record failure(s), %d error(s), %d violation(s)%s; "
                "mode is %s",
                report.operation,
                len(report.record_failures),
                len(report.errors),
                len(report.violations),
                " (cancelled)" if report.cancelled else "",
                report.mode.value,
            )


__all__ = [
    "SYSTEM_COLLECTIONS",
    "ProgressCallback",
    "StorageMigrator",
]
