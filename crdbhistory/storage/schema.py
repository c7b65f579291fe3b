"""History database schema and the SQL statements the store issues.

Statements use asyncpg's ``$n`` placeholders and are valid on both
CockroachDB and PostgreSQL.
"""

from __future__ import annotations

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS snapshots (
        id SERIAL PRIMARY KEY,
        source_id TEXT NOT NULL,
        collected_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_snapshots_source ON snapshots (source_id, collected_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS settings (
        id SERIAL PRIMARY KEY,
        snapshot_id INT NOT NULL REFERENCES snapshots (id) ON DELETE CASCADE,
        variable TEXT NOT NULL,
        value TEXT NOT NULL,
        setting_type TEXT,
        description TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_settings_snapshot ON settings (snapshot_id)",
    """
    CREATE TABLE IF NOT EXISTS changes (
        id SERIAL PRIMARY KEY,
        source_id TEXT NOT NULL,
        detected_at TIMESTAMPTZ NOT NULL,
        variable TEXT NOT NULL,
        old_value TEXT,
        new_value TEXT,
        description TEXT,
        version TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_changes_source ON changes (source_id, detected_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS metadata (
        source_id TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (source_id, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS annotations (
        id SERIAL PRIMARY KEY,
        change_id INT NOT NULL UNIQUE REFERENCES changes (id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        created_by TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL,
        updated_by TEXT,
        updated_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_annotations_change ON annotations (change_id)",
)

# ---------------------------------------------------------------------------
# Snapshots and settings
# ---------------------------------------------------------------------------

SQL_LATEST_SNAPSHOT_ID = (
    "SELECT id FROM snapshots WHERE source_id = $1 ORDER BY collected_at DESC, id DESC LIMIT 1"
)
SQL_SNAPSHOT_EXISTS = "SELECT EXISTS (SELECT 1 FROM snapshots WHERE id = $1)"
SQL_SNAPSHOT_SETTINGS = (
    "SELECT variable, value, setting_type, description FROM settings WHERE snapshot_id = $1"
)
SQL_INSERT_SNAPSHOT = "INSERT INTO snapshots (source_id, collected_at) VALUES ($1, $2) RETURNING id"
SQL_INSERT_SETTING = (
    "INSERT INTO settings (snapshot_id, variable, value, setting_type, description) "
    "VALUES ($1, $2, $3, $4, $5)"
)
SQL_LIST_SNAPSHOTS = (
    "SELECT id, source_id, collected_at FROM snapshots "
    "WHERE source_id = $1 ORDER BY collected_at DESC, id DESC LIMIT $2"
)
SQL_DELETE_OLD_SNAPSHOTS = "DELETE FROM snapshots WHERE source_id = $1 AND collected_at < $2"

# ---------------------------------------------------------------------------
# Changes
# ---------------------------------------------------------------------------

SQL_INSERT_CHANGE = (
    "INSERT INTO changes (source_id, detected_at, variable, old_value, new_value, description, version) "
    "VALUES ($1, $2, $3, $4, $5, $6, $7)"
)
SQL_GET_CHANGES = (
    "SELECT id, source_id, detected_at, variable, old_value, new_value, description, version "
    "FROM changes WHERE source_id = $1 ORDER BY detected_at DESC, id DESC LIMIT $2"
)
SQL_GET_ALL_CHANGES = (
    "SELECT id, source_id, detected_at, variable, old_value, new_value, description, version "
    "FROM changes ORDER BY detected_at DESC, id DESC LIMIT $1"
)
SQL_GET_CHANGES_WITH_ANNOTATIONS = (
    "SELECT c.id, c.source_id, c.detected_at, c.variable, c.old_value, c.new_value, "
    "c.description, c.version, a.id AS annotation_id, a.content, a.created_by, "
    "a.created_at, a.updated_by, a.updated_at "
    "FROM changes c LEFT JOIN annotations a ON a.change_id = c.id "
    "WHERE c.source_id = $1 ORDER BY c.detected_at DESC, c.id DESC LIMIT $2"
)
SQL_DELETE_OLD_CHANGES = "DELETE FROM changes WHERE source_id = $1 AND detected_at < $2"

# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

SQL_UPSERT_METADATA = (
    "INSERT INTO metadata (source_id, key, value, updated_at) VALUES ($1, $2, $3, $4) "
    "ON CONFLICT (source_id, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at"
)
SQL_GET_METADATA = "SELECT value FROM metadata WHERE source_id = $1 AND key = $2"
SQL_LIST_METADATA = "SELECT key, value FROM metadata WHERE source_id = $1 ORDER BY key"
SQL_LIST_SOURCES = (
    "SELECT DISTINCT source_id FROM ("
    "SELECT source_id FROM snapshots UNION "
    "SELECT source_id FROM changes UNION "
    "SELECT source_id FROM metadata"
    ") AS sources ORDER BY source_id"
)

# ---------------------------------------------------------------------------
# Annotations
# ---------------------------------------------------------------------------

SQL_INSERT_ANNOTATION = (
    "INSERT INTO annotations (change_id, content, created_by, created_at) VALUES ($1, $2, $3, $4) "
    "RETURNING id, change_id, content, created_by, created_at, updated_by, updated_at"
)
SQL_GET_ANNOTATION = (
    "SELECT id, change_id, content, created_by, created_at, updated_by, updated_at "
    "FROM annotations WHERE id = $1"
)
SQL_GET_ANNOTATION_BY_CHANGE = (
    "SELECT id, change_id, content, created_by, created_at, updated_by, updated_at "
    "FROM annotations WHERE change_id = $1"
)
SQL_UPDATE_ANNOTATION = (
    "UPDATE annotations SET content = $1, updated_by = $2, updated_at = $3 WHERE id = $4"
)
SQL_DELETE_ANNOTATION = "DELETE FROM annotations WHERE id = $1"
