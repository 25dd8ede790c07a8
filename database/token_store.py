"""Persistent key-value store for session tokens and the cached user"""
import logging

import aiosqlite

# Database path
DB_PATH = "chat_session.db"

logger = logging.getLogger(__name__)


class TokenStore:
    """Manages a SQLite key-value table for auth token and user profile"""

    def __init__(self, db_path: str = DB_PATH) -> None:
        self.db_path = db_path
        self.conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Open the database and create the key-value table"""
        self.conn = await aiosqlite.connect(self.db_path)
        assert self.conn is not None

        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await self.conn.commit()
        logger.debug("Token store initialized at %s", self.db_path)

    async def close(self) -> None:
        """Close database connection"""
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def get(self, key: str) -> str | None:
        """Return the stored value, or None when missing"""
        assert self.conn is not None
        cursor = await self.conn.execute("SELECT value FROM kv WHERE key = ?", (key,))
        row = await cursor.fetchone()
        await cursor.close()
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        """Insert or replace a value"""
        assert self.conn is not None
        await self.conn.execute(
            """
            INSERT INTO kv (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
            """,
            (key, value),
        )
        await self.conn.commit()

    async def delete(self, key: str) -> None:
        assert self.conn is not None
        await self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        await self.conn.commit()
