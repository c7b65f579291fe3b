"""Unit tests for SourceCollector and RetentionSweeper.

The monitored cluster is an in-memory FakeSource and the store is a mock, so
these tests only exercise scheduling, metadata refresh and error absorption.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from crdbhistory.collector.collector import CollectorState, SourceCollector
from crdbhistory.collector.retention import RetentionSweeper, SweepResult
from crdbhistory.models.history import Setting, SnapshotResult

_FULL_VERSION = "CockroachDB CCL v23.1.11 (x86_64-pc-linux-gnu, built 2023/09/27 01:53:43, go1.19.10)"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeSource:
    """In-memory SourceClient."""

    def __init__(
        self,
        settings: list[Setting] | None = None,
        version: str = _FULL_VERSION,
        cluster_id: str = "b1e3c1a2-cluster",
    ) -> None:
        self.settings = settings if settings is not None else [Setting("kv.rangefeed.enabled", "true")]
        self.version = version
        self.cluster_id = cluster_id
        self.fail_settings: Exception | None = None
        self.fail_version: Exception | None = None
        self.fail_cluster_id: Exception | None = None
        self.fetch_count = 0
        self.closed = False

    async def fetch_settings(self) -> list[Setting]:
        self.fetch_count += 1
        if self.fail_settings is not None:
            raise self.fail_settings
        return list(self.settings)

    async def fetch_version(self) -> str:
        if self.fail_version is not None:
            raise self.fail_version
        return self.version

    async def fetch_cluster_id(self) -> str:
        if self.fail_cluster_id is not None:
            raise self.fail_cluster_id
        return self.cluster_id

    async def close(self) -> None:
        self.closed = True


def _make_result(source_id: str = "prod", changes: int = 0) -> SnapshotResult:
    return SnapshotResult(
        snapshot_id=1,
        source_id=source_id,
        collected_at=datetime(2024, 1, 15, 10, 0, tzinfo=UTC),
        setting_count=1,
        changes=[MagicMock() for _ in range(changes)],
    )


def _make_store() -> MagicMock:
    store = MagicMock()
    store.save_snapshot = AsyncMock(return_value=_make_result())
    store.set_source_cluster_id = AsyncMock()
    store.set_database_version = AsyncMock()
    store.cleanup_old_snapshots = AsyncMock(return_value=0)
    store.cleanup_old_changes = AsyncMock(return_value=0)
    return store


def _make_collector(
    source: FakeSource | None = None,
    store: MagicMock | None = None,
    interval: timedelta = timedelta(seconds=60),
    retention: timedelta | None = None,
) -> SourceCollector:
    return SourceCollector(
        source_id="prod",
        source=source or FakeSource(),
        store=store or _make_store(),
        interval=interval,
        retention=retention,
    )


# ---------------------------------------------------------------------------
# Construction and versions
# ---------------------------------------------------------------------------


class TestConstruction:
    @pytest.mark.parametrize("interval", [timedelta(0), timedelta(seconds=-5)])
    def test_rejects_non_positive_interval(self, interval: timedelta) -> None:
        with pytest.raises(ValueError, match="interval must be positive"):
            _make_collector(interval=interval)

    def test_initial_state(self) -> None:
        collector = _make_collector()
        assert collector.state == CollectorState.IDLE
        assert collector.source_id == "prod"
        assert collector.retention is None

    def test_with_retention(self) -> None:
        collector = _make_collector().with_retention(timedelta(days=30))
        assert collector.retention == timedelta(days=30)


class TestShortVersion:
    @pytest.mark.parametrize(
        ("full", "short"),
        [
            (_FULL_VERSION, "v23.1.11"),
            ("CockroachDB OSS v22.2.0-beta.1 (aarch64)", "v22.2.0"),
            ("PostgreSQL 16.1 on x86_64-pc-linux-gnu", "PostgreSQL 16.1 on x86_64-pc-linux-gnu"),
            ("", ""),
        ],
    )
    def test_short_version(self, full: str, short: str) -> None:
        assert _make_collector().short_version(full) == short


# ---------------------------------------------------------------------------
# Single collection
# ---------------------------------------------------------------------------


class TestCollect:
    async def test_collect_saves_settings_with_short_version(self) -> None:
        source = FakeSource(settings=[Setting("a", "1"), Setting("b", "2")])
        store = _make_store()
        collector = _make_collector(source=source, store=store)

        result = await collector.collect()

        assert result.snapshot_id == 1
        store.save_snapshot.assert_awaited_once_with("prod", source.settings, "v23.1.11")
        store.set_source_cluster_id.assert_awaited_once_with("prod", "b1e3c1a2-cluster")
        store.set_database_version.assert_awaited_once_with("prod", _FULL_VERSION)

    async def test_metadata_failures_are_not_fatal(self) -> None:
        source = FakeSource()
        source.fail_cluster_id = RuntimeError("permission denied")
        source.fail_version = RuntimeError("timeout")
        store = _make_store()

        await _make_collector(source=source, store=store).collect()

        store.set_source_cluster_id.assert_not_awaited()
        store.set_database_version.assert_not_awaited()
        store.save_snapshot.assert_awaited_once()
        assert store.save_snapshot.await_args.args[2] == ""

    async def test_version_store_failure_still_stamps_version(self) -> None:
        store = _make_store()
        store.set_database_version.side_effect = RuntimeError("history db busy")

        await _make_collector(store=store).collect()

        assert store.save_snapshot.await_args.args[2] == "v23.1.11"

    async def test_fetch_failure_propagates_and_skips_save(self) -> None:
        source = FakeSource()
        source.fail_settings = ConnectionError("node unreachable")
        store = _make_store()

        with pytest.raises(ConnectionError):
            await _make_collector(source=source, store=store).collect()
        store.save_snapshot.assert_not_awaited()

    async def test_save_failure_propagates(self) -> None:
        store = _make_store()
        store.save_snapshot.side_effect = RuntimeError("serialization failure")
        with pytest.raises(RuntimeError, match="serialization failure"):
            await _make_collector(store=store).collect()

    async def test_close_closes_source(self) -> None:
        source = FakeSource()
        await _make_collector(source=source).close()
        assert source.closed


# ---------------------------------------------------------------------------
# Scheduling loop
# ---------------------------------------------------------------------------


class TestRun:
    async def test_collects_immediately_then_stops(self) -> None:
        """The first cycle runs on start; a set stop event ends the loop."""
        source = FakeSource()
        collector = _make_collector(source=source, interval=timedelta(hours=1))
        stop = asyncio.Event()

        task = asyncio.create_task(collector.run(stop))
        await asyncio.sleep(0.05)
        assert collector.state == CollectorState.RUNNING
        assert source.fetch_count == 1

        stop.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert collector.state == CollectorState.STOPPED
        assert source.fetch_count == 1

    async def test_ticks_repeat_on_interval(self) -> None:
        source = FakeSource()
        collector = _make_collector(source=source, interval=timedelta(milliseconds=20))
        stop = asyncio.Event()

        task = asyncio.create_task(collector.run(stop))
        await asyncio.sleep(0.15)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert source.fetch_count >= 3

    async def test_cycle_errors_do_not_stop_the_loop(self) -> None:
        source = FakeSource()
        source.fail_settings = ConnectionError("node unreachable")
        store = _make_store()
        collector = _make_collector(source=source, store=store, interval=timedelta(milliseconds=20))
        stop = asyncio.Event()

        task = asyncio.create_task(collector.run(stop))
        await asyncio.sleep(0.1)
        assert not task.done()
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert source.fetch_count >= 2
        store.save_snapshot.assert_not_awaited()

    async def test_stop_set_before_start_still_runs_one_cycle(self) -> None:
        source = FakeSource()
        stop = asyncio.Event()
        stop.set()
        await asyncio.wait_for(_make_collector(source=source).run(stop), timeout=1.0)
        assert source.fetch_count == 1

    async def test_retention_sweep_runs_after_each_cycle(self) -> None:
        store = _make_store()
        collector = _make_collector(store=store, retention=timedelta(days=7))
        stop = asyncio.Event()
        stop.set()

        await collector.run(stop)

        store.cleanup_old_snapshots.assert_awaited_once_with("prod", timedelta(days=7))
        store.cleanup_old_changes.assert_awaited_once_with("prod", timedelta(days=7))

    async def test_sweep_runs_even_when_collection_fails(self) -> None:
        source = FakeSource()
        source.fail_settings = ConnectionError("down")
        store = _make_store()
        stop = asyncio.Event()
        stop.set()

        await _make_collector(source=source, store=store, retention=timedelta(days=1)).run(stop)

        store.cleanup_old_snapshots.assert_awaited_once()

    async def test_sweep_failure_is_absorbed(self) -> None:
        store = _make_store()
        store.cleanup_old_snapshots.side_effect = RuntimeError("lock timeout")
        stop = asyncio.Event()
        stop.set()

        await _make_collector(store=store, retention=timedelta(days=1)).run(stop)

        store.save_snapshot.assert_awaited_once()


# ---------------------------------------------------------------------------
# Retention sweeper
# ---------------------------------------------------------------------------


class TestRetentionSweeper:
    @pytest.mark.parametrize("retention", [timedelta(0), timedelta(hours=-1)])
    def test_rejects_non_positive_retention(self, retention: timedelta) -> None:
        with pytest.raises(ValueError, match="retention must be positive"):
            RetentionSweeper(_make_store(), retention)

    async def test_sweep_reports_counts(self) -> None:
        store = _make_store()
        store.cleanup_old_snapshots.return_value = 3
        store.cleanup_old_changes.return_value = 5

        result = await RetentionSweeper(store, timedelta(days=30)).sweep("prod")

        assert result == SweepResult(snapshots=3, changes=5)
        assert result.total == 8
