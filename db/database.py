"""Database abstraction layer: SQLite for local dev, PostgreSQL for production."""

import asyncio
import logging
import re
import sqlite3

logger = logging.getLogger(__name__)


class Database:
    """Abstract database interface. Models.py uses ? placeholders everywhere.
    The PostgreSQL backend auto-converts ? → $1, $2, ... internally.

    Timestamps are stored as fixed-width ISO-8601 UTC text in both backends so
    range comparisons behave the same everywhere."""

    async def init(self) -> None:
        raise NotImplementedError

    async def execute_write(self, sql: str, params: tuple = ()) -> int:
        """Execute a write query. Returns lastrowid (or 0)."""
        raise NotImplementedError

    async def execute_delete(self, sql: str, params: tuple = ()) -> int:
        """Execute a DELETE. Returns the number of rows removed."""
        raise NotImplementedError

    async def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        raise NotImplementedError

    async def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class SQLiteDatabase(Database):
    """SQLite backend for local development and tests."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        async with self._write_lock:
            self._conn.executescript(SQLITE_SCHEMA)
            self._conn.commit()
        logger.info(f"SQLite database initialized at {self.db_path}")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._conn

    async def execute_write(self, sql: str, params: tuple = ()) -> int:
        async with self._write_lock:
            cursor = self.conn.execute(sql, params)
            if "RETURNING" in sql.upper():
                row = cursor.fetchone()
                self.conn.commit()
                return row[0] if row else 0
            self.conn.commit()
            return cursor.lastrowid or 0

    async def execute_delete(self, sql: str, params: tuple = ()) -> int:
        async with self._write_lock:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
            return cursor.rowcount

    async def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        cursor = self.conn.execute(sql, params)
        row = cursor.fetchone()
        return dict(row) if row else None

    async def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = self.conn.execute(sql, params)
        return [dict(r) for r in cursor.fetchall()]

    async def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None


def _sqlite_to_pg(sql: str) -> str:
    """Convert SQLite SQL to PostgreSQL dialect."""
    # Replace ? placeholders with $1, $2, ...
    counter = [0]

    def replacer(match):
        counter[0] += 1
        return f"${counter[0]}"

    return re.sub(r"\?", replacer, sql)


def _affected_rows(status: str) -> int:
    """Parse asyncpg's command status, e.g. 'DELETE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresDatabase(Database):
    """PostgreSQL backend for production."""

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._pool = None

    async def init(self) -> None:
        import asyncpg
        self._pool = await asyncpg.create_pool(self.database_url, min_size=2, max_size=10)
        async with self._pool.acquire() as conn:
            await conn.execute(POSTGRES_SCHEMA)
        logger.info("PostgreSQL database initialized")

    async def execute_write(self, sql: str, params: tuple = ()) -> int:
        pg_sql = _sqlite_to_pg(sql)
        async with self._pool.acquire() as conn:
            if "RETURNING" in pg_sql.upper():
                result = await conn.fetchval(pg_sql, *params)
                return result or 0
            else:
                await conn.execute(pg_sql, *params)
                return 0

    async def execute_delete(self, sql: str, params: tuple = ()) -> int:
        pg_sql = _sqlite_to_pg(sql)
        async with self._pool.acquire() as conn:
            status = await conn.execute(pg_sql, *params)
            return _affected_rows(status)

    async def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        pg_sql = _sqlite_to_pg(sql)
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(pg_sql, *params)
            return dict(row) if row else None

    async def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        pg_sql = _sqlite_to_pg(sql)
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(pg_sql, *params)
            return [dict(r) for r in rows]

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None


def create_database(database_url: str = "", database_path: str = "klio.db") -> Database:
    """Factory: returns PostgreSQL if DATABASE_URL is set, otherwise SQLite."""
    if database_url:
        return PostgresDatabase(database_url)
    return SQLiteDatabase(database_path)


# ── SQLite Schema ──

SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS learners (
    learner_id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    guardian_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_messages (
    message_id TEXT PRIMARY KEY,
    learner_id TEXT NOT NULL,
    role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
    content TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    FOREIGN KEY (learner_id) REFERENCES learners(learner_id)
);

CREATE TABLE IF NOT EXISTS conversation_summaries (
    summary_id INTEGER PRIMARY KEY AUTOINCREMENT,
    learner_id TEXT NOT NULL,
    summary_text TEXT NOT NULL,
    message_count INTEGER NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    details TEXT NOT NULL DEFAULT '{}',
    source TEXT NOT NULL DEFAULT 'ai' CHECK(source IN ('ai', 'fallback')),
    created_at TEXT NOT NULL,
    FOREIGN KEY (learner_id) REFERENCES learners(learner_id)
);

CREATE TABLE IF NOT EXISTS parent_notifications (
    notification_id INTEGER PRIMARY KEY AUTOINCREMENT,
    guardian_id TEXT NOT NULL,
    learner_id TEXT NOT NULL,
    conversation_date TEXT NOT NULL,
    summary_data TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'unread' CHECK(status IN ('unread', 'read')),
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (guardian_id, learner_id, conversation_date),
    FOREIGN KEY (learner_id) REFERENCES learners(learner_id)
);

CREATE TABLE IF NOT EXISTS cleanup_reports (
    report_id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name TEXT NOT NULL,
    started_at TEXT NOT NULL,
    duration_seconds REAL NOT NULL DEFAULT 0,
    processed INTEGER NOT NULL DEFAULT 0,
    succeeded INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    summaries_created INTEGER NOT NULL DEFAULT 0,
    errors TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_learner ON chat_messages(learner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_summaries_learner ON conversation_summaries(learner_id, period_start);
CREATE INDEX IF NOT EXISTS idx_summaries_created ON conversation_summaries(created_at);
CREATE INDEX IF NOT EXISTS idx_notifications_expires ON parent_notifications(expires_at);
"""

# ── PostgreSQL Schema ──

POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS learners (
    learner_id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    guardian_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_messages (
    message_id TEXT PRIMARY KEY,
    learner_id TEXT NOT NULL REFERENCES learners(learner_id),
    role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
    content TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversation_summaries (
    summary_id SERIAL PRIMARY KEY,
    learner_id TEXT NOT NULL REFERENCES learners(learner_id),
    summary_text TEXT NOT NULL,
    message_count INTEGER NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    details TEXT NOT NULL DEFAULT '{}',
    source TEXT NOT NULL DEFAULT 'ai' CHECK(source IN ('ai', 'fallback')),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS parent_notifications (
    notification_id SERIAL PRIMARY KEY,
    guardian_id TEXT NOT NULL,
    learner_id TEXT NOT NULL REFERENCES learners(learner_id),
    conversation_date TEXT NOT NULL,
    summary_data TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'unread' CHECK(status IN ('unread', 'read')),
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (guardian_id, learner_id, conversation_date)
);

CREATE TABLE IF NOT EXISTS cleanup_reports (
    report_id SERIAL PRIMARY KEY,
    job_name TEXT NOT NULL,
    started_at TEXT NOT NULL,
    duration_seconds REAL NOT NULL DEFAULT 0,
    processed INTEGER NOT NULL DEFAULT 0,
    succeeded INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    summaries_created INTEGER NOT NULL DEFAULT 0,
    errors TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_learner ON chat_messages(learner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_summaries_learner ON conversation_summaries(learner_id, period_start);
CREATE INDEX IF NOT EXISTS idx_summaries_created ON conversation_summaries(created_at);
CREATE INDEX IF NOT EXISTS idx_notifications_expires ON parent_notifications(expires_at);
"""
