"""Database store for messages, manual threading state and membership.

This module provides the DatabaseStore class that encapsulates all database
operations for mailweave. It uses aiosqlite for async access and converts
rows to and from the engine's frozen dataclasses.

Usage:
    from mailweave.db.store import DatabaseStore

    store = DatabaseStore("data/mailweave.db")
    await store.initialize()

    await store.upsert_messages(records)
    messages = await store.fetch_messages(since=cutoff)

    groups = await store.fetch_manual_thread_groups()
    await store.upsert_manual_thread_groups([group])
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from mailweave.core.errors import DatabaseError
from mailweave.core.logging import get_logger
from mailweave.db.models import init_database
from mailweave.engine.models import ManualThreadGroup, MessageRecord, ThreadingResult

logger = get_logger(__name__)

# Snippets are previews, never full bodies
MAX_SNIPPET_LENGTH = 1000

LEGACY_GROUP_PREFIX = "legacy-"


def _to_db_datetime(value: datetime) -> str:
    """Store datetimes as UTC ISO strings so text order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _now() -> str:
    return datetime.now(UTC).isoformat()


class DatabaseStore:
    """Database store for all mailweave data.

    Attributes:
        db_path: Path to the SQLite database file
        _initialized: Whether the database has been initialized
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets the PRAGMAs every connection needs:
        - busy_timeout: 10s to handle a CLI command racing a rethread
        - foreign_keys: ON so group member rows cascade with their group
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            db.row_factory = aiosqlite.Row
            yield db

    async def checkpoint_wal(self) -> bool:
        """Fold the WAL back into the database file and truncate it.

        Every rethread rewrites the whole thread_membership table, so the
        pipeline checkpoints after each run to keep the WAL from growing.
        A failed checkpoint is logged and retried on the next run.

        Returns:
            True if the checkpoint completed without being blocked
        """
        try:
            async with self._db() as db:
                cursor = await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                busy, _, _ = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.warning("WAL checkpoint failed", error=str(e))
            return False
        logger.debug("WAL checkpoint complete", blocked=bool(busy))
        return not busy

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def upsert_messages(self, messages: Iterable[MessageRecord]) -> int:
        """Save or update message records in a single transaction.

        Args:
            messages: Records to save, keyed by their record id

        Returns:
            Number of messages saved

        Raises:
            DatabaseError: If the operation fails
        """
        messages = list(messages)
        if not messages:
            return 0

        truncated = 0
        rows = []
        for message in messages:
            snippet = message.snippet
            if len(snippet) > MAX_SNIPPET_LENGTH:
                snippet = snippet[:MAX_SNIPPET_LENGTH]
                truncated += 1
            rows.append(
                (
                    message.id,
                    message.message_id,
                    _to_db_datetime(message.date),
                    message.subject,
                    1 if message.is_unread else 0,
                    message.in_reply_to,
                    json.dumps(list(message.references)),
                    message.thread_id,
                    message.mailbox_id,
                    message.sender,
                    message.recipients,
                    snippet,
                )
            )

        try:
            async with self._db() as db:
                await db.executemany(
                    """
                    INSERT INTO messages (
                        id, message_id, received_at, subject, is_unread,
                        in_reply_to, references_json, thread_id, mailbox_id,
                        sender, recipients, snippet
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        message_id = excluded.message_id,
                        received_at = excluded.received_at,
                        subject = excluded.subject,
                        is_unread = excluded.is_unread,
                        in_reply_to = excluded.in_reply_to,
                        references_json = excluded.references_json,
                        mailbox_id = excluded.mailbox_id,
                        sender = excluded.sender,
                        recipients = excluded.recipients,
                        snippet = excluded.snippet
                    """,
                    rows,
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to save messages", count=len(rows), error=str(e))
            raise DatabaseError(f"Failed to save {len(rows)} messages: {e}") from e

        if truncated:
            logger.warning("Truncated oversized snippets", count=truncated)
        logger.debug("Messages saved", count=len(rows))
        return len(rows)

    async def fetch_messages(
        self,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[MessageRecord]:
        """Fetch stored messages, oldest first.

        Args:
            since: Only messages dated at or after this instant
            limit: Maximum number of messages (the most recent ones are kept)

        Returns:
            List of MessageRecord
        """
        query = "SELECT * FROM messages"
        params: list[object] = []
        if since is not None:
            query += " WHERE received_at >= ?"
            params.append(_to_db_datetime(since))
        if limit is not None:
            query = f"SELECT * FROM ({query} ORDER BY received_at DESC, id DESC LIMIT ?)"
            params.append(limit)
        query += " ORDER BY received_at, id"

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_message(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to fetch messages", error=str(e))
            raise DatabaseError(f"Failed to fetch messages: {e}") from e

    def _row_to_message(self, row: aiosqlite.Row) -> MessageRecord:
        """Convert a database row to a MessageRecord."""
        references: list[str] = []
        if row["references_json"]:
            try:
                references = json.loads(row["references_json"])
            except json.JSONDecodeError:
                logger.warning("Unreadable references column", record_id=row["id"])

        return MessageRecord(
            id=row["id"],
            message_id=row["message_id"] or "",
            date=datetime.fromisoformat(row["received_at"]),
            subject=row["subject"] or "",
            is_unread=bool(row["is_unread"]),
            in_reply_to=row["in_reply_to"],
            references=tuple(references),
            thread_id=row["thread_id"],
            mailbox_id=row["mailbox_id"] or "inbox",
            sender=row["sender"] or "",
            recipients=row["recipients"] or "",
            snippet=row["snippet"] or "",
        )

    # =========================================================================
    # Legacy Override Operations
    # =========================================================================

    async def fetch_manual_thread_overrides(self) -> dict[str, str]:
        """Get every stored override as message key -> thread id."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT message_key, thread_id FROM manual_thread_overrides ORDER BY message_key"
                )
                return {row["message_key"]: row["thread_id"] for row in await cursor.fetchall()}

        except aiosqlite.Error as e:
            logger.error("Failed to fetch overrides", error=str(e))
            raise DatabaseError(f"Failed to fetch manual thread overrides: {e}") from e

    async def upsert_manual_thread_overrides(self, overrides: Mapping[str, str]) -> None:
        """Save overrides (message key -> target thread id)."""
        if not overrides:
            return
        now = _now()
        try:
            async with self._db() as db:
                await db.executemany(
                    """
                    INSERT INTO manual_thread_overrides (message_key, thread_id, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(message_key) DO UPDATE SET
                        thread_id = excluded.thread_id,
                        updated_at = excluded.updated_at
                    """,
                    [(key, thread_id, now) for key, thread_id in overrides.items()],
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to save overrides", count=len(overrides), error=str(e))
            raise DatabaseError(f"Failed to save manual thread overrides: {e}") from e

    async def delete_manual_thread_overrides(self, message_keys: Iterable[str]) -> int:
        """Delete overrides by message key.

        Returns:
            Number of overrides deleted
        """
        keys = [(key,) for key in message_keys]
        if not keys:
            return 0
        try:
            async with self._db() as db:
                before = db.total_changes
                await db.executemany("DELETE FROM manual_thread_overrides WHERE message_key = ?", keys)
                await db.commit()
                return db.total_changes - before

        except aiosqlite.Error as e:
            logger.error("Failed to delete overrides", count=len(keys), error=str(e))
            raise DatabaseError(f"Failed to delete manual thread overrides: {e}") from e

    # =========================================================================
    # Manual Group Operations
    # =========================================================================

    async def fetch_manual_thread_groups(self) -> list[ManualThreadGroup]:
        """Get every group, in creation order.

        The order is the one conflict reconciliation relies on, so it must
        stay stable across calls.
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT id FROM manual_thread_groups ORDER BY created_at, rowid"
                )
                group_ids = [row["id"] for row in await cursor.fetchall()]

                threads: dict[str, set[str]] = {group_id: set() for group_id in group_ids}
                keys: dict[str, set[str]] = {group_id: set() for group_id in group_ids}

                cursor = await db.execute("SELECT group_id, thread_id FROM manual_group_threads")
                for row in await cursor.fetchall():
                    threads.setdefault(row["group_id"], set()).add(row["thread_id"])

                cursor = await db.execute("SELECT group_id, message_key FROM manual_group_messages")
                for row in await cursor.fetchall():
                    keys.setdefault(row["group_id"], set()).add(row["message_key"])

                return [
                    ManualThreadGroup(id=group_id, thread_ids=threads[group_id], message_keys=keys[group_id])
                    for group_id in group_ids
                ]

        except aiosqlite.Error as e:
            logger.error("Failed to fetch manual groups", error=str(e))
            raise DatabaseError(f"Failed to fetch manual thread groups: {e}") from e

    async def _write_groups(self, db: aiosqlite.Connection, groups: Iterable[ManualThreadGroup]) -> None:
        now = _now()
        for group in groups:
            await db.execute(
                """
                INSERT INTO manual_thread_groups (id, created_at, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET updated_at = excluded.updated_at
                """,
                (group.id, now, now),
            )
            await db.execute("DELETE FROM manual_group_threads WHERE group_id = ?", (group.id,))
            await db.execute("DELETE FROM manual_group_messages WHERE group_id = ?", (group.id,))
            await db.executemany(
                "INSERT INTO manual_group_threads (group_id, thread_id) VALUES (?, ?)",
                [(group.id, thread_id) for thread_id in sorted(group.thread_ids)],
            )
            await db.executemany(
                "INSERT INTO manual_group_messages (group_id, message_key) VALUES (?, ?)",
                [(group.id, key) for key in sorted(group.message_keys)],
            )

    async def upsert_manual_thread_groups(self, groups: Iterable[ManualThreadGroup]) -> None:
        """Insert or replace groups. Existing groups keep their creation order."""
        groups = list(groups)
        if not groups:
            return
        try:
            async with self._db() as db:
                await self._write_groups(db, groups)
                await db.commit()
            logger.debug("Manual groups saved", count=len(groups))

        except aiosqlite.Error as e:
            logger.error("Failed to save manual groups", count=len(groups), error=str(e))
            raise DatabaseError(f"Failed to save manual thread groups: {e}") from e

    async def delete_manual_thread_group(self, group_id: str) -> bool:
        """Delete a group and its members.

        Returns:
            True if the group existed
        """
        try:
            async with self._db() as db:
                cursor = await db.execute("DELETE FROM manual_thread_groups WHERE id = ?", (group_id,))
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to delete manual group", group_id=group_id, error=str(e))
            raise DatabaseError(f"Failed to delete manual thread group {group_id}: {e}") from e

    async def apply_group_corrections(self, groups: Iterable[ManualThreadGroup]) -> None:
        """Persist group definitions corrected by conflict reconciliation.

        Groups left without members are deleted; the rest are rewritten.
        Everything happens in one transaction.
        """
        groups = list(groups)
        if not groups:
            return
        emptied = [group.id for group in groups if group.is_empty]
        try:
            async with self._db() as db:
                await self._write_groups(db, [group for group in groups if not group.is_empty])
                await db.executemany(
                    "DELETE FROM manual_thread_groups WHERE id = ?",
                    [(group_id,) for group_id in emptied],
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to persist group corrections", count=len(groups), error=str(e))
            raise DatabaseError(f"Failed to persist manual group corrections: {e}") from e

        logger.info(
            "Manual group corrections persisted",
            updated=len(groups) - len(emptied),
            deleted=len(emptied),
        )

    async def migrate_legacy_overrides(self) -> list[ManualThreadGroup]:
        """Convert stored overrides into manual groups.

        One group per target thread, id ``legacy-<thread id>``: it absorbs
        the target thread and pins each message overridden into it. A group
        with that id that already exists is extended. The overrides are
        deleted in the same transaction.

        Returns:
            The groups written (empty when there was nothing to migrate)
        """
        overrides = await self.fetch_manual_thread_overrides()
        if not overrides:
            return []

        existing = {group.id: group for group in await self.fetch_manual_thread_groups()}
        pinned_by_thread: dict[str, set[str]] = {}
        for key, thread_id in overrides.items():
            pinned_by_thread.setdefault(thread_id, set()).add(key)

        groups = []
        for thread_id in sorted(pinned_by_thread):
            group_id = f"{LEGACY_GROUP_PREFIX}{thread_id}"
            previous = existing.get(group_id, ManualThreadGroup(id=group_id))
            groups.append(
                ManualThreadGroup(
                    id=group_id,
                    thread_ids=previous.thread_ids | {thread_id},
                    message_keys=previous.message_keys | pinned_by_thread[thread_id],
                )
            )

        try:
            async with self._db() as db:
                await self._write_groups(db, groups)
                await db.executemany(
                    "DELETE FROM manual_thread_overrides WHERE message_key = ?",
                    [(key,) for key in overrides],
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Legacy override migration failed", count=len(overrides), error=str(e))
            raise DatabaseError(f"Failed to migrate manual thread overrides: {e}") from e

        logger.info(
            "Legacy overrides migrated",
            override_count=len(overrides),
            group_count=len(groups),
        )
        return groups

    # =========================================================================
    # Thread Membership
    # =========================================================================

    async def update_thread_membership(self, result: ThreadingResult) -> int:
        """Replace the membership table with the effective assignment of ``result``.

        Also stores each message's algorithmic thread id on its record.

        Returns:
            Number of membership rows written
        """
        now = _now()
        membership = [
            (
                key,
                result.thread_map.get(key, thread_id),
                thread_id,
                result.manual_group_by_message_key.get(key),
                now,
            )
            for key, thread_id in sorted(result.effective_thread_map.items())
        ]
        assignments = [(node.message.thread_id, node.message.id) for node in result.iter_nodes()]

        try:
            async with self._db() as db:
                await db.execute("DELETE FROM thread_membership")
                await db.executemany(
                    """
                    INSERT INTO thread_membership (
                        message_key, thread_id, effective_thread_id, manual_group_id, updated_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    membership,
                )
                await db.executemany("UPDATE messages SET thread_id = ? WHERE id = ?", assignments)
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to update thread membership", error=str(e))
            raise DatabaseError(f"Failed to update thread membership: {e}") from e

        return len(membership)

    async def fetch_thread_membership(self) -> dict[str, str]:
        """Get the stored effective thread id per message key."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT message_key, effective_thread_id FROM thread_membership")
                return {row["message_key"]: row["effective_thread_id"] for row in await cursor.fetchall()}

        except aiosqlite.Error as e:
            logger.error("Failed to fetch thread membership", error=str(e))
            raise DatabaseError(f"Failed to fetch thread membership: {e}") from e

    # =========================================================================
    # Agent State
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        """Get a state value, or None if not set."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT value FROM agent_state WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return row["value"] if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get state", key=key, error=str(e))
            raise DatabaseError(f"Failed to get state: {e}") from e

    async def set_state(self, key: str, value: str) -> None:
        """Set a state value."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO agent_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, _now()),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to set state", key=key, error=str(e))
            raise DatabaseError(f"Failed to set state: {e}") from e
