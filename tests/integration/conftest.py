"""Shared fixtures for crdbhistory integration tests.

Provides a SnapshotStore wired to an in-memory pool that understands every
statement in ``crdbhistory.storage.schema``, so the compare-and-record
pipeline can be exercised end to end without a running database.  The pool
honours transactions (rollback on error), ON DELETE CASCADE, and the
annotation foreign-key and uniqueness constraints.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import asyncpg
import pytest

from crdbhistory.storage import schema
from crdbhistory.storage.store import SnapshotStore

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

_START = datetime(2024, 1, 15, 10, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock handed to SnapshotStore."""

    def __init__(self, start: datetime = _START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


# ---------------------------------------------------------------------------
# In-memory pool
# ---------------------------------------------------------------------------


@dataclass
class _Tables:
    snapshots: dict[int, dict[str, Any]] = field(default_factory=dict)
    settings: list[dict[str, Any]] = field(default_factory=list)
    changes: dict[int, dict[str, Any]] = field(default_factory=dict)
    metadata: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)
    annotations: dict[int, dict[str, Any]] = field(default_factory=dict)
    sequences: dict[str, int] = field(default_factory=dict)

    def next_id(self, table: str) -> int:
        self.sequences[table] = self.sequences.get(table, 0) + 1
        return self.sequences[table]


def _newest_first(rows: list[dict[str, Any]], ts_key: str) -> list[dict[str, Any]]:
    return sorted(rows, key=lambda r: (r[ts_key], r["id"]), reverse=True)


class FakeConnection:
    """Connection handed out by FakePool.acquire()."""

    def __init__(self, pool: FakePool) -> None:
        self._pool = pool

    @asynccontextmanager
    async def transaction(self, isolation: str | None = None) -> AsyncIterator[None]:
        # Transactions are fully serialised, which is at least as strong as
        # SERIALIZABLE.  State is restored wholesale on any error.
        async with self._pool.tx_lock:
            self._pool.isolation_levels.append(isolation)
            saved = copy.deepcopy(self._pool.tables)
            try:
                yield
            except BaseException:
                self._pool.tables = saved
                self._pool.rollbacks += 1
                raise

    async def execute(self, query: str, *args: Any) -> str:
        status, _ = await self._run(query, args)
        return status

    async def executemany(self, query: str, args: list[tuple[Any, ...]]) -> None:
        for params in args:
            await self._run(query, params)

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        _, rows = await self._run(query, args)
        return rows

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        _, rows = await self._run(query, args)
        return rows[0] if rows else None

    async def fetchval(self, query: str, *args: Any) -> Any:
        _, rows = await self._run(query, args)
        if not rows:
            return None
        return next(iter(rows[0].values()))

    async def _run(self, query: str, args: tuple[Any, ...]) -> tuple[str, list[dict[str, Any]]]:
        # Yield so that unsynchronised callers would actually interleave.
        await asyncio.sleep(0)
        self._pool.queries.append(query)
        failure = self._pool.fail_on.get(query)
        if failure is not None:
            raise failure
        return _dispatch(self._pool.tables, query, args)


class FakePool:
    """Stands in for an ``asyncpg.Pool`` in store tests."""

    def __init__(self) -> None:
        self.tables = _Tables()
        self.tx_lock = asyncio.Lock()
        self.isolation_levels: list[str | None] = []
        self.queries: list[str] = []
        self.fail_on: dict[str, Exception] = {}
        self.rollbacks = 0
        self.closed = False

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[FakeConnection]:
        if self.closed:
            raise RuntimeError("pool is closed")
        yield FakeConnection(self)

    async def close(self) -> None:
        self.closed = True


def _dispatch(t: _Tables, query: str, args: tuple[Any, ...]) -> tuple[str, list[dict[str, Any]]]:  # noqa: C901
    if query in schema.SCHEMA_STATEMENTS:
        return "CREATE", []

    # --- snapshots and settings ------------------------------------------
    if query == schema.SQL_LATEST_SNAPSHOT_ID:
        rows = _newest_first([r for r in t.snapshots.values() if r["source_id"] == args[0]], "collected_at")
        return "SELECT", [{"id": r["id"]} for r in rows[:1]]
    if query == schema.SQL_SNAPSHOT_EXISTS:
        return "SELECT 1", [{"exists": args[0] in t.snapshots}]
    if query == schema.SQL_SNAPSHOT_SETTINGS:
        rows = [
            {k: s[k] for k in ("variable", "value", "setting_type", "description")}
            for s in t.settings
            if s["snapshot_id"] == args[0]
        ]
        return f"SELECT {len(rows)}", rows
    if query == schema.SQL_INSERT_SNAPSHOT:
        snapshot_id = t.next_id("snapshots")
        t.snapshots[snapshot_id] = {"id": snapshot_id, "source_id": args[0], "collected_at": args[1]}
        return "INSERT 0 1", [{"id": snapshot_id}]
    if query == schema.SQL_INSERT_SETTING:
        snapshot_id, variable, value, setting_type, description = args
        t.settings.append(
            {
                "snapshot_id": snapshot_id,
                "variable": variable,
                "value": value,
                "setting_type": setting_type,
                "description": description,
            }
        )
        return "INSERT 0 1", []
    if query == schema.SQL_LIST_SNAPSHOTS:
        rows = _newest_first([r for r in t.snapshots.values() if r["source_id"] == args[0]], "collected_at")
        return "SELECT", [dict(r) for r in rows[: args[1]]]
    if query == schema.SQL_DELETE_OLD_SNAPSHOTS:
        doomed = {i for i, r in t.snapshots.items() if r["source_id"] == args[0] and r["collected_at"] < args[1]}
        for snapshot_id in doomed:
            del t.snapshots[snapshot_id]
        t.settings = [s for s in t.settings if s["snapshot_id"] not in doomed]
        return f"DELETE {len(doomed)}", []

    # --- changes -----------------------------------------------------------
    if query == schema.SQL_INSERT_CHANGE:
        change_id = t.next_id("changes")
        keys = ("source_id", "detected_at", "variable", "old_value", "new_value", "description", "version")
        t.changes[change_id] = {"id": change_id, **dict(zip(keys, args, strict=True))}
        return "INSERT 0 1", []
    if query == schema.SQL_GET_CHANGES:
        rows = _newest_first([r for r in t.changes.values() if r["source_id"] == args[0]], "detected_at")
        return "SELECT", [dict(r) for r in rows[: args[1]]]
    if query == schema.SQL_GET_ALL_CHANGES:
        rows = _newest_first(list(t.changes.values()), "detected_at")
        return "SELECT", [dict(r) for r in rows[: args[0]]]
    if query == schema.SQL_GET_CHANGES_WITH_ANNOTATIONS:
        rows = _newest_first([r for r in t.changes.values() if r["source_id"] == args[0]], "detected_at")
        joined = []
        for change in rows[: args[1]]:
            note = next((a for a in t.annotations.values() if a["change_id"] == change["id"]), None)
            row = dict(change)
            row["annotation_id"] = note["id"] if note else None
            for key in ("content", "created_by", "created_at", "updated_by", "updated_at"):
                row[key] = note[key] if note else None
            joined.append(row)
        return "SELECT", joined
    if query == schema.SQL_DELETE_OLD_CHANGES:
        doomed = {i for i, r in t.changes.items() if r["source_id"] == args[0] and r["detected_at"] < args[1]}
        for change_id in doomed:
            del t.changes[change_id]
        t.annotations = {i: a for i, a in t.annotations.items() if a["change_id"] not in doomed}
        return f"DELETE {len(doomed)}", []

    # --- metadata ----------------------------------------------------------
    if query == schema.SQL_UPSERT_METADATA:
        source_id, key, value, updated_at = args
        t.metadata[(source_id, key)] = {"value": value, "updated_at": updated_at}
        return "INSERT 0 1", []
    if query == schema.SQL_GET_METADATA:
        row = t.metadata.get((args[0], args[1]))
        return "SELECT", [{"value": row["value"]}] if row else []
    if query == schema.SQL_LIST_METADATA:
        rows = [{"key": k, "value": v["value"]} for (s, k), v in sorted(t.metadata.items()) if s == args[0]]
        return "SELECT", rows
    if query == schema.SQL_LIST_SOURCES:
        ids = {r["source_id"] for r in t.snapshots.values()}
        ids |= {r["source_id"] for r in t.changes.values()}
        ids |= {s for s, _ in t.metadata}
        return "SELECT", [{"source_id": s} for s in sorted(ids)]

    # --- annotations -------------------------------------------------------
    if query == schema.SQL_INSERT_ANNOTATION:
        change_id, content, created_by, created_at = args
        if change_id not in t.changes:
            raise asyncpg.ForeignKeyViolationError("annotations_change_id_fkey")
        if any(a["change_id"] == change_id for a in t.annotations.values()):
            raise asyncpg.UniqueViolationError("annotations_change_id_key")
        annotation_id = t.next_id("annotations")
        row = {
            "id": annotation_id,
            "change_id": change_id,
            "content": content,
            "created_by": created_by,
            "created_at": created_at,
            "updated_by": None,
            "updated_at": None,
        }
        t.annotations[annotation_id] = row
        return "INSERT 0 1", [dict(row)]
    if query == schema.SQL_GET_ANNOTATION:
        row = t.annotations.get(args[0])
        return "SELECT", [dict(row)] if row else []
    if query == schema.SQL_GET_ANNOTATION_BY_CHANGE:
        rows = [dict(a) for a in t.annotations.values() if a["change_id"] == args[0]]
        return "SELECT", rows
    if query == schema.SQL_UPDATE_ANNOTATION:
        content, updated_by, updated_at, annotation_id = args
        row = t.annotations.get(annotation_id)
        if row is None:
            return "UPDATE 0", []
        row.update(content=content, updated_by=updated_by, updated_at=updated_at)
        return "UPDATE 1", []
    if query == schema.SQL_DELETE_ANNOTATION:
        removed = t.annotations.pop(args[0], None)
        return f"DELETE {1 if removed else 0}", []

    raise AssertionError(f"unexpected query: {query}")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def pool() -> FakePool:
    return FakePool()


@pytest.fixture()
async def store(pool: FakePool, clock: FakeClock) -> SnapshotStore:
    snapshot_store = SnapshotStore(pool, clock=clock)
    await snapshot_store.init_schema()
    return snapshot_store
