"""SQLite-backed settings persistence using aiosqlite.

The SettingsStore keeps small JSON documents under string keys: the saved
target selection and the per-target prompt modifications. All operations are
async and fail gracefully; a database error is logged and the in-memory
settings keep working.

Tables:
    settings: key, JSON value, update timestamp.

Usage:
    >>> store = SettingsStore("./data/comparison.db")
    >>> await store.init()
    >>> await store.set_json("selected_targets", ["gpt-5", "claude-sonnet-4"])
    >>> await store.get_json("selected_targets")
    ['gpt-5', 'claude-sonnet-4']
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)


class SettingsStore:
    """Async key/JSON-value store.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the settings store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create the settings table if it does not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS settings (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.commit()
            logger.info("settings_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "settings_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    async def get_json(self, key: str, default: Any = None) -> Any:
        """Load the JSON value stored under a key.

        Returns:
            The decoded value, or ``default`` if missing, undecodable, or the
            read failed.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT value FROM settings WHERE key = ?",
                    (key,),
                )
                row = await cursor.fetchone()
        except Exception as e:
            logger.error("settings_get_failed", key=key, error=str(e))
            return default

        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("settings_value_corrupt", key=key)
            return default

    async def set_json(self, key: str, value: Any) -> bool:
        """Store a JSON-serializable value under a key.

        Returns:
            True if the value was written.
        """
        try:
            payload = json.dumps(value)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO settings (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, payload, time.time()),
                )
                await db.commit()
        except Exception as e:
            logger.error("settings_set_failed", key=key, error=str(e))
            return False

        logger.debug("settings_saved", key=key)
        return True

    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if a row was deleted."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("DELETE FROM settings WHERE key = ?", (key,))
                await db.commit()
                return cursor.rowcount > 0
        except Exception as e:
            logger.error("settings_delete_failed", key=key, error=str(e))
            return False

    async def list_keys(self) -> list[str]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT key FROM settings ORDER BY key")
                rows = await cursor.fetchall()
                return [row[0] for row in rows]
        except Exception as e:
            logger.error("settings_list_failed", error=str(e))
            return []
