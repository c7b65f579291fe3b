"""Age-based retention for one source's snapshots and changes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import structlog

from crdbhistory.storage.store import SnapshotStore

_log = structlog.get_logger(component="collector.retention")


@dataclass(frozen=True)
class SweepResult:
    """Rows removed by one sweep."""

    snapshots: int = 0
    changes: int = 0

    @property
    def total(self) -> int:
        return self.snapshots + self.changes


class RetentionSweeper:
    """Deletes history older than *retention*, one source at a time."""

    def __init__(self, store: SnapshotStore, retention: timedelta) -> None:
        if retention <= timedelta(0):
            raise ValueError(f"retention must be positive, got {retention}")
        self._store = store
        self._retention = retention

    @property
    def retention(self) -> timedelta:
        return self._retention

    async def sweep(self, source_id: str) -> SweepResult:
        snapshots = await self._store.cleanup_old_snapshots(source_id, self._retention)
        changes = await self._store.cleanup_old_changes(source_id, self._retention)
        result = SweepResult(snapshots=snapshots, changes=changes)
        if result.total:
            _log.info(
                "retention_sweep",
                source_id=source_id,
                snapshots_removed=snapshots,
                changes_removed=changes,
            )
        return result
