"""SQLite database schema and initialization for mailweave.

This module defines the database schema with 7 tables:
- messages: Message records as supplied by the message source
- manual_thread_overrides: Legacy single-message overrides (key -> thread id)
- manual_thread_groups: Persistent manual groups, in creation order
- manual_group_threads: Algorithmic thread ids absorbed by a group
- manual_group_messages: Message keys pinned into a group
- thread_membership: Effective thread per message after the last rethread
- agent_state: Key-value state persistence

Usage:
    from mailweave.db.models import init_database

    # Initialize database (creates tables if not exist)
    await init_database("data/mailweave.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailweave.core.errors import DatabaseError
from mailweave.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,                    -- Stable surrogate record id
    message_id TEXT,                        -- Raw Message-ID header
    received_at DATETIME NOT NULL,          -- ISO 8601, timezone-aware
    subject TEXT DEFAULT '',
    is_unread INTEGER DEFAULT 0,
    in_reply_to TEXT,
    references_json TEXT DEFAULT '[]',      -- JSON array of raw ids, oldest first
    thread_id TEXT,                         -- Algorithmic thread id from the last rethread
    mailbox_id TEXT DEFAULT 'inbox',
    sender TEXT DEFAULT '',
    recipients TEXT DEFAULT '',
    snippet TEXT DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_messages_received_at ON messages(received_at);
CREATE INDEX IF NOT EXISTS idx_messages_message_id ON messages(message_id);

-- Older per-message override store, superseded by manual groups
CREATE TABLE IF NOT EXISTS manual_thread_overrides (
    message_key TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS manual_thread_groups (
    id TEXT PRIMARY KEY,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS manual_group_threads (
    group_id TEXT NOT NULL REFERENCES manual_thread_groups(id) ON DELETE CASCADE,
    thread_id TEXT NOT NULL,
    PRIMARY KEY (group_id, thread_id)
);

CREATE TABLE IF NOT EXISTS manual_group_messages (
    group_id TEXT NOT NULL REFERENCES manual_thread_groups(id) ON DELETE CASCADE,
    message_key TEXT NOT NULL,
    PRIMARY KEY (group_id, message_key)
);

-- Effective thread per message key, rewritten after each rethread
CREATE TABLE IF NOT EXISTS thread_membership (
    message_key TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,                -- Algorithmic thread id
    effective_thread_id TEXT NOT NULL,      -- Thread id after manual layers
    manual_group_id TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_thread_membership_effective
    ON thread_membership(effective_thread_id);

-- Agent state persistence (cursors, counters)
CREATE TABLE IF NOT EXISTS agent_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
-- Keys: 'last_rethread_at', 'legacy_overrides_migrated'
"""

REQUIRED_TABLES = [
    "messages",
    "manual_thread_overrides",
    "manual_thread_groups",
    "manual_group_threads",
    "manual_group_messages",
    "thread_membership",
    "agent_state",
]


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode for
    concurrent access, and creates all tables and indexes.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Message headers and snippets are personal data: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error(
            "Database initialization failed",
            db_path=str(db_path),
            error=str(e),
        )
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Verify that the database has every required table.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(REQUIRED_TABLES) - existing_tables
            if missing:
                logger.warning(
                    "Missing database tables",
                    missing=sorted(missing),
                    db_path=str(db_path),
                )
                return False

            return True

    except aiosqlite.Error as e:
        logger.error(
            "Schema verification failed",
            db_path=str(db_path),
            error=str(e),
        )
        return False
