"""Snapshot Store: durable history of cluster settings and their changes.

The store owns the history schema and exposes an atomic compare-and-record
operation (:meth:`SnapshotStore.save_snapshot`).  Reading the previous
snapshot, writing the new one and writing the resulting change rows all
happen inside a single SERIALIZABLE transaction, so two concurrent
collections for the same source cannot both diff against the same
predecessor.  Collections for different sources touch disjoint rows and never
contend.

All reads are side-effect free and safe at any concurrency; the underlying
asyncpg pool hands out one connection per operation.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import asyncpg
import structlog

from crdbhistory.models.history import (
    Annotation,
    Change,
    ChangeWithAnnotation,
    Setting,
    SnapshotInfo,
    SnapshotResult,
)
from crdbhistory.storage import schema
from crdbhistory.storage.diff import build_working_set, diff_settings

_log = structlog.get_logger(component="storage.store")

METADATA_SOURCE_CLUSTER_ID = "source_cluster_id"
METADATA_DATABASE_VERSION = "database_version"

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class AnnotationNotFoundError(LookupError):
    """Raised when updating or deleting an annotation that does not exist."""

    def __init__(self, annotation_id: int) -> None:
        super().__init__(f"annotation {annotation_id} not found")
        self.annotation_id = annotation_id


class ChangeNotFoundError(LookupError):
    """Raised when annotating a change id that does not exist."""

    def __init__(self, change_id: int) -> None:
        super().__init__(f"change {change_id} not found")
        self.change_id = change_id


class AnnotationExistsError(ValueError):
    """Raised when a change already carries an annotation."""

    def __init__(self, change_id: int) -> None:
        super().__init__(f"change {change_id} already has an annotation")
        self.change_id = change_id


class SnapshotStore:
    """History database access layer.

    Args:
        pool:  asyncpg connection pool (or anything exposing ``acquire()``
               and ``close()`` with the same semantics).
        clock: Returns the current UTC time.  Every timestamp the store
               writes or compares against comes from here.
    """

    def __init__(self, pool: Any, clock: Clock | None = None) -> None:
        self._pool = pool
        self._clock = clock or _utcnow

    @classmethod
    async def connect(
        cls,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        clock: Clock | None = None,
    ) -> SnapshotStore:
        """Open a pool against *dsn* and make sure the schema exists."""
        pool = await asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size)
        store = cls(pool, clock=clock)
        try:
            await store.init_schema()
        except Exception:
            await pool.close()
            raise
        return store

    async def init_schema(self) -> None:
        """Create tables and indexes if they are missing.  Idempotent."""
        async with self._pool.acquire() as conn:
            for statement in schema.SCHEMA_STATEMENTS:
                await conn.execute(statement)
        _log.debug("schema_ready", statements=len(schema.SCHEMA_STATEMENTS))

    async def close(self) -> None:
        await self._pool.close()

    # ------------------------------------------------------------------
    # Compare-and-record
    # ------------------------------------------------------------------

    async def save_snapshot(
        self,
        source_id: str,
        settings: Iterable[Setting],
        version: str = "",
    ) -> SnapshotResult:
        """Record a new snapshot for *source_id* and the changes it implies.

        Steps, all in one transaction:

        1. read the latest snapshot's settings for the source (none on the
           very first collection);
        2. insert the new snapshot stamped with the current time and its
           settings;
        3. diff previous against current;
        4. insert one change row per difference, stamped with the same time
           and *version*.

        Duplicate names in *settings* are last-write-wins.  Any failure rolls
        the whole unit back and the exception propagates unchanged.
        """
        current = build_working_set(settings)

        async with self._pool.acquire() as conn:
            async with conn.transaction(isolation="serializable"):
                now = self._clock()
                previous = await self._latest_settings(conn, source_id)

                snapshot_id = await conn.fetchval(schema.SQL_INSERT_SNAPSHOT, source_id, now)
                if current:
                    await conn.executemany(
                        schema.SQL_INSERT_SETTING,
                        [
                            (snapshot_id, s.variable, s.value, s.setting_type, s.description)
                            for s in current.values()
                        ],
                    )

                diffs = diff_settings(previous, current)
                changes = [
                    Change(
                        source_id=source_id,
                        detected_at=now,
                        variable=d.variable,
                        old_value=d.old_value,
                        new_value=d.new_value,
                        description=d.description,
                        version=version,
                    )
                    for d in diffs
                ]
                if changes:
                    await conn.executemany(
                        schema.SQL_INSERT_CHANGE,
                        [
                            (
                                c.source_id,
                                c.detected_at,
                                c.variable,
                                c.old_value,
                                c.new_value,
                                c.description,
                                c.version,
                            )
                            for c in changes
                        ],
                    )

        _log.debug(
            "snapshot_saved",
            source_id=source_id,
            snapshot_id=snapshot_id,
            settings=len(current),
            changes=len(changes),
            bootstrap=previous is None,
        )
        return SnapshotResult(
            snapshot_id=snapshot_id,
            source_id=source_id,
            collected_at=now,
            setting_count=len(current),
            changes=changes,
        )

    async def _latest_settings(self, conn: Any, source_id: str) -> dict[str, Setting] | None:
        """Settings of the newest snapshot, or None if there is no snapshot."""
        snapshot_id = await conn.fetchval(schema.SQL_LATEST_SNAPSHOT_ID, source_id)
        if snapshot_id is None:
            return None
        return await self._snapshot_settings(conn, snapshot_id)

    @staticmethod
    async def _snapshot_settings(conn: Any, snapshot_id: int) -> dict[str, Setting]:
        rows = await conn.fetch(schema.SQL_SNAPSHOT_SETTINGS, snapshot_id)
        return build_working_set(
            Setting(
                variable=row["variable"],
                value=row["value"],
                setting_type=row["setting_type"] or "",
                description=row["description"] or "",
            )
            for row in rows
        )

    # ------------------------------------------------------------------
    # Snapshot reads
    # ------------------------------------------------------------------

    async def get_latest_snapshot(self, source_id: str) -> dict[str, Setting]:
        """Settings of the newest snapshot; empty if never collected."""
        async with self._pool.acquire() as conn:
            latest = await self._latest_settings(conn, source_id)
        return latest or {}

    async def list_snapshots(self, source_id: str, limit: int = 100) -> list[SnapshotInfo]:
        """Snapshot headers for *source_id*, newest first."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(schema.SQL_LIST_SNAPSHOTS, source_id, limit)
        return [
            SnapshotInfo(id=row["id"], source_id=row["source_id"], collected_at=row["collected_at"])
            for row in rows
        ]

    async def get_snapshot(self, snapshot_id: int) -> dict[str, Setting] | None:
        """Settings of one snapshot by id, or None if it does not exist."""
        async with self._pool.acquire() as conn:
            exists = await conn.fetchval(schema.SQL_SNAPSHOT_EXISTS, snapshot_id)
            if not exists:
                return None
            return await self._snapshot_settings(conn, snapshot_id)

    # ------------------------------------------------------------------
    # Change reads
    # ------------------------------------------------------------------

    async def get_changes(self, source_id: str, limit: int = 100) -> list[Change]:
        """Change log for *source_id*, newest first."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(schema.SQL_GET_CHANGES, source_id, limit)
        return [_change_from_row(row) for row in rows]

    async def get_all_changes(self, limit: int = 1000) -> list[Change]:
        """Change log across every source, newest first."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(schema.SQL_GET_ALL_CHANGES, limit)
        return [_change_from_row(row) for row in rows]

    async def get_changes_with_annotations(
        self, source_id: str, limit: int = 100
    ) -> list[ChangeWithAnnotation]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(schema.SQL_GET_CHANGES_WITH_ANNOTATIONS, source_id, limit)

        results: list[ChangeWithAnnotation] = []
        for row in rows:
            annotation = None
            if row["annotation_id"] is not None:
                annotation = Annotation(
                    id=row["annotation_id"],
                    change_id=row["id"],
                    content=row["content"],
                    created_by=row["created_by"],
                    created_at=row["created_at"],
                    updated_by=row["updated_by"] or "",
                    updated_at=row["updated_at"],
                )
            results.append(ChangeWithAnnotation(change=_change_from_row(row), annotation=annotation))
        return results

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def cleanup_old_snapshots(self, source_id: str, retention: timedelta) -> int:
        """Delete snapshots collected before ``now - retention``.

        Settings go with them through ON DELETE CASCADE.  A snapshot written
        concurrently is stamped "now" and can never fall before the cutoff.
        """
        cutoff = self._clock() - retention
        async with self._pool.acquire() as conn:
            status = await conn.execute(schema.SQL_DELETE_OLD_SNAPSHOTS, source_id, cutoff)
        return _affected_rows(status)

    async def cleanup_old_changes(self, source_id: str, retention: timedelta) -> int:
        """Delete change rows detected before ``now - retention``."""
        cutoff = self._clock() - retention
        async with self._pool.acquire() as conn:
            status = await conn.execute(schema.SQL_DELETE_OLD_CHANGES, source_id, cutoff)
        return _affected_rows(status)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def set_metadata(self, source_id: str, key: str, value: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(schema.SQL_UPSERT_METADATA, source_id, key, value, self._clock())

    async def get_metadata(self, source_id: str, key: str) -> str:
        """Stored value for *key*, or an empty string when unset."""
        async with self._pool.acquire() as conn:
            value = await conn.fetchval(schema.SQL_GET_METADATA, source_id, key)
        return value or ""

    async def list_metadata(self, source_id: str) -> dict[str, str]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(schema.SQL_LIST_METADATA, source_id)
        return {row["key"]: row["value"] for row in rows}

    async def set_source_cluster_id(self, source_id: str, cluster_id: str) -> None:
        await self.set_metadata(source_id, METADATA_SOURCE_CLUSTER_ID, cluster_id)

    async def get_source_cluster_id(self, source_id: str) -> str:
        return await self.get_metadata(source_id, METADATA_SOURCE_CLUSTER_ID)

    async def set_database_version(self, source_id: str, version: str) -> None:
        await self.set_metadata(source_id, METADATA_DATABASE_VERSION, version)

    async def get_database_version(self, source_id: str) -> str:
        return await self.get_metadata(source_id, METADATA_DATABASE_VERSION)

    async def list_sources(self) -> list[str]:
        """Every source id that has snapshots, changes or metadata."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(schema.SQL_LIST_SOURCES)
        return [row["source_id"] for row in rows]

    # ------------------------------------------------------------------
    # Annotations
    # ------------------------------------------------------------------

    async def create_annotation(self, change_id: int, content: str, created_by: str) -> Annotation:
        """Attach a note to a change.  Each change holds at most one."""
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    schema.SQL_INSERT_ANNOTATION, change_id, content, created_by, self._clock()
                )
        except asyncpg.ForeignKeyViolationError as exc:
            raise ChangeNotFoundError(change_id) from exc
        except asyncpg.UniqueViolationError as exc:
            raise AnnotationExistsError(change_id) from exc
        return _annotation_from_row(row)

    async def get_annotation(self, annotation_id: int) -> Annotation | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(schema.SQL_GET_ANNOTATION, annotation_id)
        return _annotation_from_row(row) if row is not None else None

    async def get_annotation_by_change_id(self, change_id: int) -> Annotation | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(schema.SQL_GET_ANNOTATION_BY_CHANGE, change_id)
        return _annotation_from_row(row) if row is not None else None

    async def update_annotation(self, annotation_id: int, content: str, updated_by: str) -> None:
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                schema.SQL_UPDATE_ANNOTATION, content, updated_by, self._clock(), annotation_id
            )
        if _affected_rows(status) == 0:
            raise AnnotationNotFoundError(annotation_id)

    async def delete_annotation(self, annotation_id: int) -> None:
        async with self._pool.acquire() as conn:
            status = await conn.execute(schema.SQL_DELETE_ANNOTATION, annotation_id)
        if _affected_rows(status) == 0:
            raise AnnotationNotFoundError(annotation_id)


def _affected_rows(status: str) -> int:
    """Parse an asyncpg command tag such as ``DELETE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


def _change_from_row(row: Mapping[str, Any]) -> Change:
    return Change(
        id=row["id"],
        source_id=row["source_id"],
        detected_at=row["detected_at"],
        variable=row["variable"],
        old_value=row["old_value"],
        new_value=row["new_value"],
        description=row["description"] or "",
        version=row["version"] or "",
    )


def _annotation_from_row(row: Mapping[str, Any]) -> Annotation:
    return Annotation(
        id=row["id"],
        change_id=row["change_id"],
        content=row["content"],
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_by=row["updated_by"] or "",
        updated_at=row["updated_at"],
    )
