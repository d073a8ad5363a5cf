from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, List, Optional, Sequence, Set, Tuple

import aiosqlite

from ..config import load_seed_data
from .errors import SchemaInconsistent, TransientStoreBusy
from .retry import RetryPolicy, is_lock_error

logger = logging.getLogger(__name__)

CURRENT_VERSION = 4

DOMAIN_TABLES = ("categories", "videos", "core_memories", "custom_memory_types")
REQUIRED_TABLES = DOMAIN_TABLES + ("db_version",)

SCHEMA_STATEMENTS: Tuple[str, ...] = (
    "CREATE TABLE IF NOT EXISTS db_version (version INTEGER PRIMARY KEY)",
    """
    CREATE TABLE IF NOT EXISTS categories (
      id TEXT PRIMARY KEY,
      key TEXT NOT NULL,
      name TEXT NOT NULL,
      icon TEXT NOT NULL,
      color TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS videos (
      id TEXT PRIMARY KEY,
      uri TEXT NOT NULL,
      thumbnail TEXT NOT NULL,
      duration REAL NOT NULL,
      createdAt TEXT NOT NULL,
      title TEXT NOT NULL,
      description TEXT,
      startTime REAL NOT NULL DEFAULT 0,
      endTime REAL NOT NULL DEFAULT 60,
      categoryId TEXT,
      FOREIGN KEY (categoryId) REFERENCES categories(id) ON DELETE SET NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_videos_category_created ON videos(categoryId, createdAt)",
    """
    CREATE TABLE IF NOT EXISTS core_memories (
      videoId TEXT PRIMARY KEY,
      note TEXT NOT NULL,
      color TEXT NOT NULL,
      createdAt TEXT NOT NULL,
      typeId TEXT NOT NULL,
      FOREIGN KEY (videoId) REFERENCES videos(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS custom_memory_types (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      icon TEXT NOT NULL,
      color TEXT NOT NULL
    )
    """,
)

# (target version, statements); each entry runs in its own transaction.
MIGRATIONS: List[Tuple[int, Tuple[str, ...]]] = [
    (2, (
        "ALTER TABLE categories ADD COLUMN key TEXT",
        "UPDATE categories SET key = lower(replace(trim(name), ' ', '_')) WHERE key IS NULL OR key = ''",
    )),
    (3, (
        "ALTER TABLE videos ADD COLUMN startTime REAL NOT NULL DEFAULT 0",
        "ALTER TABLE videos ADD COLUMN endTime REAL NOT NULL DEFAULT 60",
    )),
    (4, (
        """
        CREATE TABLE IF NOT EXISTS custom_memory_types (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          icon TEXT NOT NULL,
          color TEXT NOT NULL
        )
        """,
        "ALTER TABLE core_memories ADD COLUMN typeId TEXT NOT NULL DEFAULT 'happy'",
    )),
]

# Children before parents.
DROP_ORDER = ("core_memories", "videos", "custom_memory_types", "categories", "db_version")


class SchemaManager:
    """
    Brings the SQLite schema to CURRENT_VERSION and checks its health.

    Owns the connection lock: every transaction and read on the shared
    connection goes through ``transaction()`` or ``lock`` so explicit
    BEGIN/COMMIT blocks from different tasks never interleave.
    """

    def __init__(self, conn: aiosqlite.Connection, retry: Optional[RetryPolicy] = None):
        self.conn = conn
        self.retry = retry or RetryPolicy()
        self.lock = asyncio.Lock()
        self._initialized = False
        self._init_task: Optional[asyncio.Future] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    # --- connection helpers ---
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self.lock:
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
                await self.conn.execute("COMMIT")
            except BaseException:
                if self.conn.in_transaction:
                    await self.conn.execute("ROLLBACK")
                raise

    async def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        async with self.lock:
            async with self.conn.execute(sql, params) as cur:
                return list(await cur.fetchall())

    async def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        async with self.lock:
            async with self.conn.execute(sql, params) as cur:
                return await cur.fetchone()

    async def _existing_tables(self) -> Set[str]:
        rows = await self.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
        return {r["name"] for r in rows}

    # --- health ---
    async def verify_health(self) -> bool:
        try:
            tables = await self._existing_tables()
        except sqlite3.Error as exc:
            logger.error("Database health check failed: %s", exc)
            return False
        return all(t in tables for t in REQUIRED_TABLES)

    async def schema_version(self) -> Optional[int]:
        try:
            row = await self.fetchone("SELECT MAX(version) AS version FROM db_version")
        except sqlite3.Error:
            return None
        if row is None or row["version"] is None:
            return None
        return int(row["version"])

    async def has_user_data(self) -> bool:
        try:
            if "videos" not in await self._existing_tables():
                return False
            row = await self.fetchone("SELECT COUNT(*) AS n FROM videos")
        except sqlite3.Error:
            # An unreadable videos table may still hold rows.
            return True
        return bool(row and row["n"])

    # --- initialization ---
    async def initialize(self) -> None:
        """
        Create or migrate the schema. Concurrent callers share one in-flight run.
        """
        if self._initialized:
            if await self.verify_health():
                return
            logger.warning("Database health check failed, reinitializing")
            self._initialized = False

        task = self._init_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._initialize_once())
            self._init_task = task
        try:
            await asyncio.shield(task)
        finally:
            if self._init_task is task and task.done():
                self._init_task = None

    async def _initialize_once(self) -> None:
        try:
            await self.conn.execute("PRAGMA foreign_keys = ON")
            await self.conn.execute("PRAGMA journal_mode = WAL")
            await self.retry.run(self._bring_up_to_date, retry_if=is_lock_error, label="schema setup")
            if not await self.verify_health():
                raise SchemaInconsistent("database initialization verification failed", operation="initialize")
        except sqlite3.OperationalError as exc:
            self._initialized = False
            logger.error("Database initialization failed: %s", exc)
            if is_lock_error(exc):
                raise TransientStoreBusy("database locked during initialization", operation="initialize") from exc
            raise SchemaInconsistent(f"database initialization failed: {exc}", operation="initialize") from exc
        except Exception as exc:
            self._initialized = False
            logger.error("Database initialization failed: %s", exc)
            raise
        self._initialized = True
        logger.info("Database initialized at version %d", CURRENT_VERSION)

    async def _bring_up_to_date(self) -> None:
        tables = await self._existing_tables()
        if "db_version" not in tables:
            if any(t in tables for t in DOMAIN_TABLES):
                await self._recover("version marker missing")
            await self.create_initial_schema()
            return

        version = await self.schema_version()
        if version is None:
            await self._recover("version marker empty")
            await self.create_initial_schema()
            return
        if version > CURRENT_VERSION:
            raise SchemaInconsistent(
                f"database version {version} is newer than supported {CURRENT_VERSION}", operation="initialize"
            )
        if version < CURRENT_VERSION:
            await self.migrate(version)
            return
        if not all(t in tables for t in REQUIRED_TABLES):
            await self._recover("required tables missing")
            await self.create_initial_schema()

    async def _recover(self, reason: str) -> None:
        if await self.has_user_data():
            raise SchemaInconsistent(
                f"{reason}; videos table still holds rows, call repair(force=True) to rebuild",
                operation="initialize",
            )
        logger.warning("Database in inconsistent state (%s), performing reset", reason)
        await self._drop_all()

    async def create_initial_schema(self) -> None:
        seed = load_seed_data()
        async with self.transaction() as conn:
            for stmt in SCHEMA_STATEMENTS:
                await conn.execute(stmt)
            await conn.execute("INSERT OR REPLACE INTO db_version (version) VALUES (?)", (CURRENT_VERSION,))
            await conn.executemany(
                "INSERT OR IGNORE INTO categories (id, key, name, icon, color) VALUES (?, ?, ?, ?, ?)",
                [(c["id"], c.get("key") or c["id"], c["name"], c["icon"], c["color"]) for c in seed["categories"]],
            )
        logger.info("Initial schema created (version %d)", CURRENT_VERSION)

    async def migrate(self, from_version: int) -> None:
        for version, statements in MIGRATIONS:
            if version <= from_version or version > CURRENT_VERSION:
                continue
            async with self.transaction() as conn:
                for stmt in statements:
                    await conn.execute(stmt)
                await conn.execute("DELETE FROM db_version")
                await conn.execute("INSERT INTO db_version (version) VALUES (?)", (version,))
            logger.info("Applied migration v%d", version)

    # --- reset / repair ---
    async def _drop_all(self, tables: Iterable[str] = DROP_ORDER) -> None:
        async with self.transaction() as conn:
            for table in tables:
                await conn.execute(f"DROP TABLE IF EXISTS {table}")

    async def reset(self) -> None:
        """Drop every table in one transaction and forget initialization state."""
        try:
            await self._drop_all()
        except sqlite3.Error as exc:
            logger.error("Database reset failed: %s", exc)
            raise SchemaInconsistent(f"database reset failed: {exc}", operation="reset") from exc
        self._initialized = False
        logger.info("Database reset completed")

    async def repair(self, force: bool = False) -> bool:
        """
        Rebuild an unhealthy schema. Returns False when the schema was healthy.

        Without ``force`` a schema whose videos table still holds rows is not
        dropped; SchemaInconsistent is raised instead.
        """
        if not force and await self.verify_health():
            return False
        if not force and await self.has_user_data():
            raise SchemaInconsistent("refusing to drop tables holding videos without force", operation="repair")
        await self.reset()
        await self.initialize()
        return True
