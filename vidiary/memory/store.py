from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar
from uuid import uuid4

import aiosqlite

from ..config import load_seed_data
from .errors import ReferentialViolation, StoreError, TransientStoreBusy
from .models import (
    SENTINEL_CATEGORY_ID,
    Category,
    CoreMemory,
    CustomMemoryType,
    MemoryTypeRef,
    Video,
    resolve_memory_type,
)
from .retry import RetryPolicy, is_lock_error
from .schema import SchemaManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


def new_id() -> str:
    return uuid4().hex


def _assignments(columns: Mapping[str, str], fields: Mapping[str, Any], immutable: Tuple[str, ...]) -> Tuple[str, List[Any]]:
    """
    Build ``col = ?`` pairs for a partial update from attribute names.

    Unknown or immutable attribute names raise ValueError since they would end
    up interpolated into SQL.
    """
    parts: List[str] = []
    values: List[Any] = []
    for name, value in fields.items():
        if name not in columns or name in immutable:
            raise ValueError(f"cannot update field {name!r}")
        parts.append(f"{columns[name]} = ?")
        values.append(value)
    return ", ".join(parts), values


@dataclass
class MemoryStore:
    """
    Transactional CRUD over videos, categories, core memories and custom types.

    Writes are guaranteed-or-reported: they retry while the database is
    locked and raise a StoreError subclass once retries run out. Reads are
    best-effort: a failed read is logged and returns an empty result.
    """

    db_path: Path
    conn: aiosqlite.Connection
    schema: SchemaManager
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    async def open(
        cls,
        db_path: os.PathLike,
        retry: Optional[RetryPolicy] = None,
        busy_timeout_sec: float = 1.0,
    ) -> "MemoryStore":
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        conn = await aiosqlite.connect(str(path), isolation_level=None, timeout=busy_timeout_sec)
        conn.row_factory = aiosqlite.Row
        policy = retry or RetryPolicy()
        store = cls(db_path=path, conn=conn, schema=SchemaManager(conn, retry=policy), retry=policy)
        try:
            await store.ensure_setup()
        except BaseException:
            await conn.close()
            raise
        return store

    async def close(self) -> None:
        try:
            await self.conn.close()
        except sqlite3.Error as exc:
            logger.warning("Error closing database: %s", exc)

    async def ensure_setup(self) -> None:
        await self.schema.initialize()

    # --- plumbing ---
    async def _write(
        self,
        operation: str,
        entity_id: Optional[str],
        action: Callable[[], Awaitable[T]],
    ) -> T:
        await self.ensure_setup()
        try:
            return await self.retry.run(action, retry_if=is_lock_error, label=f"{operation}({entity_id})")
        except StoreError:
            raise
        except sqlite3.IntegrityError as exc:
            logger.error("%s failed for %s: %s", operation, entity_id, exc)
            raise ReferentialViolation(str(exc), operation=operation, entity_id=entity_id) from exc
        except sqlite3.Error as exc:
            logger.error("%s failed for %s: %s", operation, entity_id, exc)
            if is_lock_error(exc):
                raise TransientStoreBusy(
                    f"database still locked after {self.retry.max_attempts} attempts",
                    operation=operation,
                    entity_id=entity_id,
                ) from exc
            raise StoreError(str(exc), operation=operation, entity_id=entity_id) from exc

    async def _read(self, operation: str, sql: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        try:
            await self.ensure_setup()
            return await self.schema.fetchall(sql, params)
        except (sqlite3.Error, StoreError) as exc:
            logger.error("%s failed: %s", operation, exc)
            return []

    async def _update(
        self,
        operation: str,
        table: str,
        key_column: str,
        entity_id: str,
        columns: Mapping[str, str],
        fields: Mapping[str, Any],
        immutable: Tuple[str, ...],
    ) -> bool:
        if not fields:
            return True
        assignments, values = _assignments(columns, fields, immutable)

        async def action() -> bool:
            async with self.schema.transaction() as conn:
                cur = await conn.execute(
                    f"UPDATE {table} SET {assignments} WHERE {key_column} = ?",
                    (*values, entity_id),
                )
                return cur.rowcount > 0

        updated = await self._write(operation, entity_id, action)
        if updated:
            logger.info("%s: %s", operation, entity_id)
        return updated

    # --- videos ---
    async def video_exists(self, video_id: str) -> bool:
        rows = await self._read("video_exists", "SELECT id FROM videos WHERE id = ?", (video_id,))
        return bool(rows)

    async def get_video(self, video_id: str) -> Optional[Video]:
        rows = await self._read("get_video", "SELECT * FROM videos WHERE id = ?", (video_id,))
        return Video.from_row(rows[0]) if rows else None

    async def get_videos(self, category_id: Optional[str] = None) -> List[Video]:
        if category_id and category_id != SENTINEL_CATEGORY_ID:
            rows = await self._read(
                "get_videos",
                "SELECT * FROM videos WHERE categoryId = ? ORDER BY createdAt DESC",
                (category_id,),
            )
        else:
            rows = await self._read("get_videos", "SELECT * FROM videos ORDER BY createdAt DESC")
        return [Video.from_row(r) for r in rows]

    async def add_video(self, video: Video) -> str:
        """
        Insert a video and return its id. An id that already exists is
        replaced by a freshly minted one rather than overwritten.
        """

        async def action() -> Tuple[str, str]:
            async with self.schema.transaction() as conn:
                async with conn.execute("SELECT id FROM videos WHERE id = ?", (video.id,)) as cur:
                    existing = await cur.fetchone()
                vid = new_id() if existing else video.id
                async with conn.execute("SELECT id FROM categories WHERE id = ?", (video.category_id,)) as cur:
                    category_ok = await cur.fetchone() is not None
                category_id = video.category_id if category_ok else SENTINEL_CATEGORY_ID
                await conn.execute(
                    """
                    INSERT INTO videos(id, uri, thumbnail, duration, createdAt, title, description, startTime, endTime, categoryId)
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        vid,
                        video.uri,
                        video.thumbnail,
                        float(video.duration),
                        video.created_at,
                        video.title,
                        video.description,
                        float(video.start_time),
                        float(video.end_time),
                        category_id,
                    ),
                )
            if existing:
                logger.warning("Video id %s already existed, stored as %s", video.id, vid)
            if not category_ok:
                logger.warning("Unknown category %s, video stored under %s", video.category_id, category_id)
            return vid, category_id

        vid, category_id = await self._write("add_video", video.id, action)
        video.id = vid
        video.category_id = category_id
        logger.info("Video added: %s (%s)", vid, video.title)
        return vid

    async def update_video(self, video_id: str, **fields: Any) -> bool:
        return await self._update(
            "update_video", "videos", "id", video_id, Video.COLUMNS, fields, immutable=("id",)
        )

    async def delete_video(self, video_id: str) -> bool:
        """Delete a video; its core memory goes with it (ON DELETE CASCADE)."""

        async def action() -> bool:
            async with self.schema.transaction() as conn:
                cur = await conn.execute("DELETE FROM videos WHERE id = ?", (video_id,))
                return cur.rowcount > 0

        deleted = await self._write("delete_video", video_id, action)
        if deleted:
            logger.info("Video deleted: %s", video_id)
        return deleted

    # --- categories ---
    async def get_categories(self) -> List[Category]:
        rows = await self._read("get_categories", "SELECT * FROM categories ORDER BY name")
        return [Category.from_row(r) for r in rows]

    async def get_category(self, category_id: str) -> Optional[Category]:
        rows = await self._read("get_category", "SELECT * FROM categories WHERE id = ?", (category_id,))
        return Category.from_row(rows[0]) if rows else None

    async def add_category(self, category: Category) -> str:
        if not category.key:
            category.key = "_".join(category.name.lower().split())

        async def action() -> None:
            async with self.schema.transaction() as conn:
                await conn.execute(
                    "INSERT INTO categories (id, key, name, icon, color) VALUES (?, ?, ?, ?, ?)",
                    (category.id, category.key, category.name, category.icon, category.color),
                )

        await self._write("add_category", category.id, action)
        logger.info("Category added: %s", category.name)
        return category.id

    async def update_category(self, category_id: str, **fields: Any) -> bool:
        return await self._update(
            "update_category", "categories", "id", category_id, Category.COLUMNS, fields, immutable=("id",)
        )

    async def delete_category(self, category_id: str) -> bool:
        """Move the category's videos to the sentinel category, then delete it."""
        if category_id == SENTINEL_CATEGORY_ID:
            raise ReferentialViolation(
                "the default category cannot be deleted", operation="delete_category", entity_id=category_id
            )

        async def action() -> bool:
            async with self.schema.transaction() as conn:
                await conn.execute(
                    "UPDATE videos SET categoryId = ? WHERE categoryId = ?",
                    (SENTINEL_CATEGORY_ID, category_id),
                )
                cur = await conn.execute("DELETE FROM categories WHERE id = ?", (category_id,))
                return cur.rowcount > 0

        deleted = await self._write("delete_category", category_id, action)
        if deleted:
            logger.info("Category deleted: %s", category_id)
        return deleted

    # --- core memories ---
    async def get_core_memories(self) -> List[CoreMemory]:
        rows = await self._read("get_core_memories", "SELECT * FROM core_memories ORDER BY createdAt DESC")
        return [CoreMemory.from_row(r) for r in rows]

    async def get_core_memory(self, video_id: str) -> Optional[CoreMemory]:
        rows = await self._read("get_core_memory", "SELECT * FROM core_memories WHERE videoId = ?", (video_id,))
        return CoreMemory.from_row(rows[0]) if rows else None

    async def add_core_memory(self, memory: CoreMemory) -> None:
        """Insert or replace the core memory attached to a video."""

        async def action() -> None:
            async with self.schema.transaction() as conn:
                await conn.execute(
                    "INSERT OR REPLACE INTO core_memories (videoId, note, color, createdAt, typeId) VALUES (?, ?, ?, ?, ?)",
                    (memory.video_id, memory.note, memory.color, memory.created_at, memory.type_id),
                )

        await self._write("add_core_memory", memory.video_id, action)
        logger.info("Core memory added for video: %s", memory.video_id)

    async def update_core_memory(self, video_id: str, **fields: Any) -> bool:
        return await self._update(
            "update_core_memory",
            "core_memories",
            "videoId",
            video_id,
            CoreMemory.COLUMNS,
            fields,
            immutable=("video_id",),
        )

    async def delete_core_memory(self, video_id: str) -> bool:
        async def action() -> bool:
            async with self.schema.transaction() as conn:
                cur = await conn.execute("DELETE FROM core_memories WHERE videoId = ?", (video_id,))
                return cur.rowcount > 0

        return await self._write("delete_core_memory", video_id, action)

    # --- custom memory types ---
    async def get_custom_memory_types(self) -> List[CustomMemoryType]:
        rows = await self._read("get_custom_memory_types", "SELECT * FROM custom_memory_types ORDER BY name")
        return [CustomMemoryType.from_row(r) for r in rows]

    async def add_custom_memory_type(self, memory_type: CustomMemoryType) -> str:
        async def action() -> None:
            async with self.schema.transaction() as conn:
                await conn.execute(
                    "INSERT INTO custom_memory_types (id, name, icon, color) VALUES (?, ?, ?, ?)",
                    (memory_type.id, memory_type.name, memory_type.icon, memory_type.color),
                )

        await self._write("add_custom_memory_type", memory_type.id, action)
        logger.info("Custom memory type added: %s", memory_type.name)
        return memory_type.id

    async def update_custom_memory_type(self, type_id: str, **fields: Any) -> bool:
        return await self._update(
            "update_custom_memory_type",
            "custom_memory_types",
            "id",
            type_id,
            CustomMemoryType.COLUMNS,
            fields,
            immutable=("id",),
        )

    async def delete_custom_memory_type(self, type_id: str) -> bool:
        """
        Delete a custom type. Core memories pointing at it are left alone;
        see find_dangling_core_memories().
        """

        async def action() -> bool:
            async with self.schema.transaction() as conn:
                cur = await conn.execute("DELETE FROM custom_memory_types WHERE id = ?", (type_id,))
                return cur.rowcount > 0

        return await self._write("delete_custom_memory_type", type_id, action)

    async def resolve_memory_type(self, type_id: str) -> Optional[MemoryTypeRef]:
        builtin = load_seed_data()["memory_types"]
        return resolve_memory_type(type_id, builtin, await self.get_custom_memory_types())

    async def find_dangling_core_memories(self) -> List[CoreMemory]:
        """Core memories whose type id is neither built-in nor a custom type row."""
        builtin_ids = {t["id"] for t in load_seed_data()["memory_types"]}
        custom_ids = {t.id for t in await self.get_custom_memory_types()}
        known = builtin_ids | custom_ids
        return [m for m in await self.get_core_memories() if m.type_id not in known]

    async def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for table in ("videos", "categories", "core_memories", "custom_memory_types"):
            rows = await self._read("counts", f"SELECT COUNT(*) AS n FROM {table}")
            out[table] = int(rows[0]["n"]) if rows else 0
        return out
