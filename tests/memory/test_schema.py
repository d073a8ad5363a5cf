import asyncio
import sqlite3

import aiosqlite
import pytest

from vidiary.memory import schema as schema_module
from vidiary.memory.errors import SchemaInconsistent
from vidiary.memory.schema import CURRENT_VERSION, REQUIRED_TABLES, SchemaManager
from vidiary.memory.store import MemoryStore


async def _tables(store):
    rows = await store.schema.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    return {r["name"] for r in rows}


async def test_fresh_database_gets_current_schema(store):
    assert set(REQUIRED_TABLES) <= await _tables(store)
    assert await store.schema.schema_version() == CURRENT_VERSION
    assert await store.schema.verify_health()


async def test_default_categories_seeded(store):
    ids = {c.id for c in await store.get_categories()}
    assert {"all", "friends", "family", "travel", "special"} <= ids


async def test_concurrent_initialize_creates_schema_once(tmp_path, retry, monkeypatch):
    conn = await aiosqlite.connect(str(tmp_path / "mem.db"), isolation_level=None)
    conn.row_factory = aiosqlite.Row
    manager = SchemaManager(conn, retry=retry)
    calls = []
    original = manager.create_initial_schema

    async def counting():
        calls.append(1)
        await asyncio.sleep(0.01)
        await original()

    monkeypatch.setattr(manager, "create_initial_schema", counting)
    try:
        await asyncio.gather(*(manager.initialize() for _ in range(5)))
        assert len(calls) == 1
        assert manager.initialized
        await manager.initialize()
        assert len(calls) == 1
    finally:
        await conn.close()


V1_SCHEMA = """
            CREATE TABLE db_version (version INTEGER PRIMARY KEY);
            INSERT INTO db_version (version) VALUES (1);
            CREATE TABLE categories (id TEXT PRIMARY KEY, name TEXT NOT NULL, icon TEXT NOT NULL, color TEXT NOT NULL);
            INSERT INTO categories VALUES ('all', 'All', 'apps', '#000000');
            INSERT INTO categories VALUES ('c1', 'Road Trips', 'car', '#111111');
            CREATE TABLE videos (
              id TEXT PRIMARY KEY, uri TEXT NOT NULL, thumbnail TEXT NOT NULL, duration REAL NOT NULL,
              createdAt TEXT NOT NULL, title TEXT NOT NULL, description TEXT, categoryId TEXT
            );
            INSERT INTO videos VALUES ('v1', '/a.mp4', '/a.jpg', 12, '2024-01-01T00:00:00', 'Old', NULL, 'c1');
            CREATE TABLE core_memories (
              videoId TEXT PRIMARY KEY, note TEXT NOT NULL, color TEXT NOT NULL, createdAt TEXT NOT NULL
            );
            INSERT INTO core_memories VALUES ('v1', 'first', '#ff0000', '2024-01-01T00:00:00');
"""


def _make_v1_database(db_path):
    with sqlite3.connect(db_path) as conn:
        conn.executescript(V1_SCHEMA)
    conn.close()


async def test_migrates_v1_database(tmp_path, retry):
    db_path = tmp_path / "old.db"
    _make_v1_database(db_path)

    store = await MemoryStore.open(db_path, retry=retry)
    try:
        assert await store.schema.schema_version() == CURRENT_VERSION
        category = await store.get_category("c1")
        assert category.key == "road_trips"
        video = await store.get_video("v1")
        assert video.title == "Old"
        assert (video.start_time, video.end_time) == (0.0, 60.0)
        core = await store.get_core_memory("v1")
        assert core.type_id == "happy"
        assert await store.get_custom_memory_types() == []
    finally:
        await store.close()


async def test_newer_database_version_is_rejected(tmp_path, retry):
    db_path = tmp_path / "future.db"
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE db_version (version INTEGER PRIMARY KEY)")
        conn.execute("INSERT INTO db_version (version) VALUES (?)", (CURRENT_VERSION + 1,))
    conn.close()

    with pytest.raises(SchemaInconsistent):
        await MemoryStore.open(db_path, retry=retry)


async def test_missing_table_without_videos_is_rebuilt(store):
    async with store.schema.transaction() as conn:
        await conn.execute("DROP TABLE custom_memory_types")
    assert not await store.schema.verify_health()

    await store.ensure_setup()
    assert await store.schema.verify_health()
    assert await store.get_categories()


async def test_missing_table_with_videos_requires_forced_repair(store):
    async with store.schema.transaction() as conn:
        await conn.execute(
            "INSERT INTO videos (id, uri, thumbnail, duration, createdAt, title, startTime, endTime, categoryId) "
            "VALUES ('v1', '/a.mp4', '/a.jpg', 5, '2024-01-01', 't', 0, 5, 'all')"
        )
        await conn.execute("DROP TABLE db_version")

    with pytest.raises(SchemaInconsistent):
        await store.ensure_setup()
    with pytest.raises(SchemaInconsistent):
        await store.schema.repair()

    assert await store.schema.repair(force=True)
    assert await store.schema.verify_health()
    assert await store.get_videos() == []


async def test_repair_on_healthy_schema_is_noop(store):
    assert await store.schema.repair() is False


async def test_reset_then_initialize(store):
    await store.schema.reset()
    assert not store.schema.initialized
    assert await _tables(store) == set()
    await store.schema.initialize()
    assert await store.schema.verify_health()


def _columns(db_path, table):
    with sqlite3.connect(db_path) as conn:
        names = [r[1] for r in conn.execute(f"PRAGMA table_info({table})")]
    conn.close()
    return names


async def test_failed_migration_rolls_back(tmp_path, retry, monkeypatch):
    db_path = tmp_path / "old.db"
    _make_v1_database(db_path)
    monkeypatch.setattr(
        schema_module,
        "MIGRATIONS",
        [(2, ("ALTER TABLE categories ADD COLUMN key TEXT", "UPDATE no_such_table SET x = 1"))],
    )

    with pytest.raises(SchemaInconsistent):
        await MemoryStore.open(db_path, retry=retry)

    with sqlite3.connect(db_path) as conn:
        versions = [r[0] for r in conn.execute("SELECT version FROM db_version")]
    conn.close()
    assert versions == [1]
    assert "key" not in _columns(db_path, "categories")


async def test_failed_creation_leaves_no_tables(tmp_path, retry, monkeypatch):
    db_path = tmp_path / "mem.db"
    monkeypatch.setattr(
        schema_module,
        "SCHEMA_STATEMENTS",
        schema_module.SCHEMA_STATEMENTS + ("CREATE TABLE broken (",),
    )

    with pytest.raises(SchemaInconsistent):
        await MemoryStore.open(db_path, retry=retry)

    with sqlite3.connect(db_path) as conn:
        tables = [r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")]
    conn.close()
    assert tables == []


async def test_failed_health_check_clears_state(tmp_path, retry, monkeypatch):
    conn = await aiosqlite.connect(str(tmp_path / "mem.db"), isolation_level=None)
    conn.row_factory = aiosqlite.Row
    manager = SchemaManager(conn, retry=retry)

    async def unhealthy():
        return False

    try:
        monkeypatch.setattr(manager, "verify_health", unhealthy)
        with pytest.raises(SchemaInconsistent):
            await manager.initialize()
        assert not manager.initialized
        assert manager._init_task is None

        monkeypatch.undo()
        await manager.initialize()
        assert manager.initialized
        assert await manager.verify_health()
    finally:
        await conn.close()
