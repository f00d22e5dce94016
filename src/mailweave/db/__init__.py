"""Database layer for mailweave.

This module provides SQLite database access with async operations.

Usage:
    from mailweave.db import DatabaseStore

    store = DatabaseStore("data/mailweave.db")
    await store.initialize()

    await store.upsert_messages(records)
    groups = await store.fetch_manual_thread_groups()
"""

from mailweave.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from mailweave.db.store import (
    LEGACY_GROUP_PREFIX,
    MAX_SNIPPET_LENGTH,
    DatabaseStore,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "LEGACY_GROUP_PREFIX",
    "MAX_SNIPPET_LENGTH",
]
