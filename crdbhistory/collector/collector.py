"""Source Collector: periodic settings sampling for one monitored cluster.

Lifecycle::

    IDLE --run()--> RUNNING --stop event--> STOPPED

On entering RUNNING the collector performs one collection cycle immediately,
then one per interval.  A cycle is:

    1. refresh metadata (cluster id, version)   -- failures are warnings
    2. fetch SHOW CLUSTER SETTINGS               -- failure aborts the cycle
    3. SnapshotStore.save_snapshot               -- failure aborts the cycle

followed by a retention sweep when a retention horizon is configured.  Cycle
errors are logged and absorbed; the next tick is the retry.  Cycles for one
source never overlap: the stop event is only observed between cycles, so an
in-flight cycle always runs to completion.
"""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta
from enum import StrEnum

from crdbhistory.collector.retention import RetentionSweeper
from crdbhistory.collector.source import SourceClient
from crdbhistory.models.history import SnapshotResult
from crdbhistory.observability.logging import get_logger
from crdbhistory.storage.store import SnapshotStore

_VERSION_PATTERN = r"v\d+\.\d+\.\d+"


class CollectorState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class SourceCollector:
    """Collects settings from one source into the shared SnapshotStore.

    Args:
        source_id: Operator-chosen slug identifying the source.
        source:    Client connected to the monitored cluster.  Owned by the
                   collector and closed by :meth:`close`.
        store:     Shared history store.
        interval:  Time between collection cycles.
        retention: Optional retention horizon; enables a sweep after every
                   cycle.
    """

    def __init__(
        self,
        source_id: str,
        source: SourceClient,
        store: SnapshotStore,
        interval: timedelta,
        retention: timedelta | None = None,
    ) -> None:
        if interval <= timedelta(0):
            raise ValueError(f"interval must be positive, got {interval}")
        self._source_id = source_id
        self._source = source
        self._store = store
        self._interval = interval
        self._sweeper: RetentionSweeper | None = None
        self._version_re = re.compile(_VERSION_PATTERN)
        self._state = CollectorState.IDLE
        self._log = get_logger("collector", source_id=source_id)
        if retention:
            self.with_retention(retention)

    @property
    def source_id(self) -> str:
        return self._source_id

    @property
    def state(self) -> CollectorState:
        return self._state

    @property
    def interval(self) -> timedelta:
        return self._interval

    @property
    def retention(self) -> timedelta | None:
        return self._sweeper.retention if self._sweeper is not None else None

    def with_retention(self, retention: timedelta) -> SourceCollector:
        """Enable a retention sweep after every scheduled cycle."""
        self._sweeper = RetentionSweeper(self._store, retention)
        return self

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def run(self, stop: asyncio.Event) -> None:
        """Collect now, then on every tick, until *stop* is set.

        Ticks are scheduled on a fixed rate from the first cycle.  A cycle
        that overruns its slot delays the next one instead of skipping it.
        """
        loop = asyncio.get_running_loop()
        interval = self._interval.total_seconds()
        self._state = CollectorState.RUNNING
        self._log.info("collector_started", interval_seconds=interval)
        try:
            await self._cycle()
            next_tick = loop.time() + interval
            while not stop.is_set():
                delay = max(0.0, next_tick - loop.time())
                try:
                    await asyncio.wait_for(stop.wait(), timeout=delay)
                except TimeoutError:
                    pass
                if stop.is_set():
                    break
                await self._cycle()
                next_tick = max(next_tick + interval, loop.time())
        finally:
            self._state = CollectorState.STOPPED
            self._log.info("collector_stopped")

    async def _cycle(self) -> None:
        """One scheduled cycle.  Never raises except on cancellation."""
        try:
            await self.collect()
        except Exception as exc:
            self._log.error("collection_failed", error=str(exc), error_type=type(exc).__name__)

        if self._sweeper is None:
            return
        try:
            await self._sweeper.sweep(self._source_id)
        except Exception as exc:
            self._log.error("retention_sweep_failed", error=str(exc), error_type=type(exc).__name__)

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    async def collect(self) -> SnapshotResult:
        """Run one collection cycle now and return what it recorded.

        Independent of the timer: calling this does not move the next tick.
        Fetch and save errors propagate to the caller.
        """
        self._log.debug("collection_started")
        version = await self._refresh_metadata()
        settings = await self._source.fetch_settings()
        result = await self._store.save_snapshot(self._source_id, settings, version)
        self._log.info(
            "collection_completed",
            settings=result.setting_count,
            changes=len(result.changes),
            snapshot_id=result.snapshot_id,
            version=version,
        )
        return result

    async def _refresh_metadata(self) -> str:
        """Upsert the cluster id and version; return the short version.

        Every failure here is logged and swallowed.  If the version cannot be
        read the short version is empty and the cycle's changes are stamped
        with an empty version.
        """
        try:
            cluster_id = await self._source.fetch_cluster_id()
            await self._store.set_source_cluster_id(self._source_id, cluster_id)
        except Exception as exc:
            self._log.warning("cluster_id_refresh_failed", error=str(exc))

        try:
            full_version = await self._source.fetch_version()
        except Exception as exc:
            self._log.warning("version_refresh_failed", error=str(exc))
            return ""

        try:
            await self._store.set_database_version(self._source_id, full_version)
        except Exception as exc:
            self._log.warning("version_store_failed", error=str(exc))

        return self.short_version(full_version)

    def short_version(self, full_version: str) -> str:
        """Extract ``vMAJOR.MINOR.PATCH`` from *full_version*.

        Falls back to the full string when no such token is present.
        """
        match = self._version_re.search(full_version)
        return match.group(0) if match else full_version

    async def close(self) -> None:
        await self._source.close()
