"""Collector Supervisor: one SourceCollector per configured source.

The supervisor is a fan-out/fan-in join, not a restart supervisor.
Construction is all-or-nothing, ``run`` blocks until every collector has
observed the shared stop event and finished its in-flight cycle, and
``collect`` triggers every collector once and aggregates the failures.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable

import structlog

from crdbhistory.collector.collector import SourceCollector
from crdbhistory.collector.source import CockroachSource, SourceClient
from crdbhistory.models.config import CRDBHistoryConfig, SourceConfig
from crdbhistory.models.history import SnapshotResult
from crdbhistory.storage.store import SnapshotStore

_log = structlog.get_logger(component="collector.supervisor")

SourceConnector = Callable[[SourceConfig], Awaitable[SourceClient]]


async def connect_cockroach(source: SourceConfig) -> SourceClient:
    """Default connector: an asyncpg-backed CockroachSource."""
    return await CockroachSource.connect(source.database_url)


class CollectorStartupError(Exception):
    """Raised when a collector cannot be built for a configured source."""

    def __init__(self, source_id: str, cause: Exception) -> None:
        super().__init__(f"failed to create collector for source '{source_id}': {cause}")
        self.source_id = source_id
        self.cause = cause


class CollectionError(Exception):
    """One or more sources failed a manual collection.

    ``errors`` maps each failing source id to the exception it raised;
    ``results`` holds the snapshots recorded for every other source.
    """

    def __init__(
        self,
        errors: dict[str, Exception],
        results: dict[str, SnapshotResult] | None = None,
    ) -> None:
        detail = "; ".join(f"{source_id}: {exc}" for source_id, exc in sorted(errors.items()))
        super().__init__(f"collection failed for {len(errors)} source(s): {detail}")
        self.errors = errors
        self.results = results or {}


class CollectorSupervisor:
    """Owns the registry of collectors, keyed by source id.

    Every caller in this package runs on the event loop thread.  Registry
    mutation (construction, close) and lookups still share a lock, so a
    lookup from any other thread sees either the full registry or the empty
    one left by close.
    """

    def __init__(self) -> None:
        self._collectors: dict[str, SourceCollector] = {}
        self._lock = threading.Lock()

    @classmethod
    async def create(
        cls,
        config: CRDBHistoryConfig,
        store: SnapshotStore,
        connect: SourceConnector = connect_cockroach,
    ) -> CollectorSupervisor:
        """Connect to every configured source and build its collector.

        If any source cannot be reached, every collector built so far is
        closed and CollectorStartupError is raised: there is no partially
        constructed supervisor.
        """
        supervisor = cls()
        for source in config.sources:
            try:
                if supervisor.get_collector(source.id) is not None:
                    raise ValueError(f"duplicate source id: {source.id}")
                client = await connect(source)
            except Exception as exc:
                await supervisor.close()
                raise CollectorStartupError(source.id, exc) from exc

            collector = SourceCollector(
                source_id=source.id,
                source=client,
                store=store,
                interval=config.poll_interval,
                retention=config.retention or None,
            )
            supervisor.add(collector)
            _log.info("collector_created", source_id=source.id, name=source.name)
        return supervisor

    def add(self, collector: SourceCollector) -> None:
        with self._lock:
            if collector.source_id in self._collectors:
                raise ValueError(f"duplicate source id: {collector.source_id}")
            self._collectors[collector.source_id] = collector

    def get_collector(self, source_id: str) -> SourceCollector | None:
        with self._lock:
            return self._collectors.get(source_id)

    def source_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._collectors)

    def _collectors_snapshot(self) -> list[SourceCollector]:
        with self._lock:
            return list(self._collectors.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._collectors)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self, stop: asyncio.Event) -> None:
        """Run every collector concurrently until *stop* is set.

        Returns once all collectors have stopped.  A collector's per-cycle
        errors never end its loop, so this only returns early on
        cancellation.
        """
        collectors = self._collectors_snapshot()
        if not collectors:
            _log.warning("no_collectors_to_run")
            return
        tasks = [
            asyncio.create_task(self._run_one(collector, stop), name=f"collector-{collector.source_id}")
            for collector in collectors
        ]
        await asyncio.gather(*tasks)

    @staticmethod
    async def _run_one(collector: SourceCollector, stop: asyncio.Event) -> None:
        _log.info("collector_starting", source_id=collector.source_id)
        await collector.run(stop)
        _log.info("collector_exited", source_id=collector.source_id)

    async def collect(self) -> dict[str, SnapshotResult]:
        """Trigger one collection on every collector, concurrently.

        A failing source does not stop the others from being collected.
        Raises CollectionError carrying every failure if any source failed.
        """
        collectors = self._collectors_snapshot()
        outcomes = await asyncio.gather(
            *(collector.collect() for collector in collectors),
            return_exceptions=True,
        )

        results: dict[str, SnapshotResult] = {}
        errors: dict[str, Exception] = {}
        for collector, outcome in zip(collectors, outcomes, strict=True):
            if isinstance(outcome, Exception):
                errors[collector.source_id] = outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results[collector.source_id] = outcome

        if errors:
            _log.warning("manual_collection_failed", failed_sources=sorted(errors))
            raise CollectionError(errors, results)
        return results

    async def close(self) -> None:
        """Close every collector's source connection and empty the registry."""
        with self._lock:
            collectors = list(self._collectors.items())
            self._collectors = {}

        for source_id, collector in collectors:
            try:
                await collector.close()
                _log.info("collector_closed", source_id=source_id)
            except Exception as exc:
                _log.error("collector_close_failed", source_id=source_id, error=str(exc))
