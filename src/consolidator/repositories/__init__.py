"""
Persistence for migration state that is not entity data.

    - metadata: the migration metadata singleton (current mode, last
      successful migration, active backup)
    - backup: legacy-store snapshots
    - timeline: the append-only audit trail
"""

from consolidator.repositories.backup import (
    BACKUP_KEY_PREFIX,
    BackupRepository,
    InMemoryBackupRepository,
    KeyValueBackupRepository,
)
from consolidator.repositories.metadata import (
    METADATA_KEY,
    InMemoryMetadataRepository,
    KeyValueMetadataRepository,
    MigrationMetadataRepository,
)
from consolidator.repositories.timeline import (
    TIMELINE_COLLECTION,
    BackendTimelineRepository,
    InMemoryTimelineRepository,
    TimelineRepository,
)

__all__ = [
    # Metadata
    "METADATA_KEY",
    "MigrationMetadataRepository",
    "InMemoryMetadataRepository",
    "KeyValueMetadataRepository",
    # Backups
    "BACKUP_KEY_PREFIX",
    "BackupRepository",
    "InMemoryBackupRepository",
    "KeyValueBackupRepository",
    # Timeline
    "TIMELINE_COLLECTION",
    "TimelineRepository",
    "InMemoryTimelineRepository",
    "BackendTimelineRepository",
]
