"""History storage for crdbhistory.

Submodules:
    schema -- DDL and SQL statements for the history database.
    diff   -- Pure three-way diff between two settings working sets.
    store  -- SnapshotStore: asyncpg-backed compare-and-record and read API.
"""

from crdbhistory.storage.diff import build_working_set, diff_settings
from crdbhistory.storage.store import (
    METADATA_DATABASE_VERSION,
    METADATA_SOURCE_CLUSTER_ID,
    AnnotationExistsError,
    AnnotationNotFoundError,
    ChangeNotFoundError,
    SnapshotStore,
)

__all__ = [
    "METADATA_DATABASE_VERSION",
    "METADATA_SOURCE_CLUSTER_ID",
    "AnnotationExistsError",
    "AnnotationNotFoundError",
    "ChangeNotFoundError",
    "SnapshotStore",
    "build_working_set",
    "diff_settings",
]
