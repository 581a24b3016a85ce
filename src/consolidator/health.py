"""
HealthReporter - read-only diagnostics for dashboards.

Nothing here is authoritative state: every call re-reads the backends and
the migration metadata, and no call mutates anything.

    - assessment(): the ``{entityCounts, errors, mode}`` document
    - health_check(): ``{healthy, errors, info}`` from probing both
      backends and the metadata record
"""

from __future__ import annotations

import logging
from typing import Any

from consolidator.backends.interface import StorageBackend
from consolidator.migrator import SYSTEM_COLLECTIONS, StorageMigrator
from consolidator.models import MigrationMode
from consolidator.state_machine import MigrationStateMachine
from consolidator.unified_store import UnifiedStore

logger = logging.getLogger(__name__)


class HealthReporter:
    """
    Read-only health and assessment reporting.

    Example:
        >>> reporter = HealthReporter(migrator, legacy, target, state_machine, store=store)
        >>> await reporter.assessment()
        {'entityCounts': {'clients': {'legacy': 3, 'target': 0}}, 'errors': [...], 'mode': 'legacy'}
        >>> (await reporter.health_check())["healthy"]
        True
    """

    def __init__(
        self,
        migrator: StorageMigrator,
        legacy: StorageBackend,
        target: StorageBackend,
        state_machine: MigrationStateMachine,
        store: UnifiedStore | None = None,
    ) -> None:
        """
        Initialize the reporter.

        Args:
            migrator: Migrator whose assessment is reported.
            legacy: Legacy store to probe.
            target: Target store to probe.
            state_machine: Source of the migration metadata.
            store: Unified store whose mirror failures are reported, if any.
        """
        self._migrator = migrator
        self._legacy = legacy
        self._target = target
        self._state_machine = state_machine
        self._store = store

    async def assessment(self) -> dict[str, Any]:
        """
        Current assessment as the dashboard document.

        Returns:
            ``{"entityCounts": {type: {"legacy", "target"}}, "errors": [...], "mode": str}``
        """
        report = await self._migrator.assess_storage_state()
        full = report.to_dict()
        return {key: full[key] for key in ("entityCounts", "errors", "mode")}

    async def health_check(self) -> dict[str, Any]:
        """
        Probe both backends and the migration metadata.

        A backend that is not in use in the current mode is still probed,
        but its failure only makes the check unhealthy when the mode
        depends on it.

        Returns:
            ``{"healthy": bool, "errors": [str], "info": dict | None}``
        """
        errors: list[str] = []
        try:
            metadata = await self._state_machine.metadata()
        except Exception as e:
            logger.warning("Health check could not read migration metadata: %s", e)
            return {
                "healthy": False,
                "errors": [f"Health check failed: migration metadata unreadable: {e}"],
                "info": None,
            }

        mode = metadata.mode
        info: dict[str, Any] = {
            "mode": mode.value,
            "lastMigratedAt": (
                metadata.last_migrated_at.isoformat() if metadata.last_migrated_at else None
            ),
            "activeBackupId": metadata.active_backup_id,
            "migrationRunning": self._migrator.is_running,
        }

        for role, backend, required in (
            ("legacy", self._legacy, mode.uses_legacy),
            ("target", self._target, mode.uses_target),
        ):
            try:
                entity_types = set(await backend.entity_types()) - SYSTEM_COLLECTIONS
            except Exception as e:
                message = f"{role} store '{backend.name}' unreachable: {e}"
                logger.warning("Health check: %s", message)
                if required:
                    errors.append(message)
                info[role] = {"name": backend.name, "reachable": False}
                continue
            info[role] = {
                "name": backend.name,
                "reachable": True,
                "entityTypes": sorted(entity_types),
            }

        if self._store is not None:
            info["mirrorFailures"] = self._store.get_mirror_failure_stats().to_dict()

        if mode != MigrationMode.LEGACY and metadata.last_migrated_at is None:
            errors.append(f"Mode is {mode.value} but no successful migration is recorded")

        return {"healthy": not errors, "errors": errors, "info": info}


__all__ = ["HealthReporter"]
