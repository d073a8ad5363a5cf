from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..config import StoreSettings, load_config
from ..utils.logging_setup import configure_from_settings, log_context
from .assets import AssetKind, AssetStore
from .errors import AssetIOFailure, MetadataVerificationFailure, StoreError
from .metadata import MetadataSynchronizer
from .models import (
    SENTINEL_CATEGORY_ID,
    Category,
    CoreMemory,
    CustomMemoryType,
    Memory,
    MemoryTypeRef,
    TrimWindow,
    Video,
    utc_now_iso,
)
from .retry import RetryPolicy
from .store import MemoryStore, new_id

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


@dataclass
class MemoryService:
    """
    High-level memory API.

    Composes the row store, the asset cache and the trim metadata so that a
    caller never sees a video row whose files or trim window were not saved.
    """

    settings: StoreSettings
    store: MemoryStore
    assets: AssetStore
    metadata: MetadataSynchronizer

    @classmethod
    async def open(
        cls,
        settings: Optional[StoreSettings] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> "MemoryService":
        settings = settings or load_config()
        configure_from_settings(settings)
        policy = retry or RetryPolicy(max_attempts=settings.retry_attempts, delay_sec=settings.retry_delay_sec)

        store = await MemoryStore.open(settings.db_path, retry=policy)
        assets = AssetStore(settings.videos_path, settings.thumbnails_path, max_bytes=settings.max_cache_bytes)
        assets.setup()
        metadata = MetadataSynchronizer(settings.metadata_path, retry=policy)
        metadata.setup()
        logger.info("Memory service opened at %s", settings.data_path)
        return cls(settings=settings, store=store, assets=assets, metadata=metadata)

    @property
    def db_path(self) -> Path:
        return self.store.db_path

    async def close(self) -> None:
        await self.store.close()

    def _validate_window(self, start_time: float, end_time: float) -> None:
        if not (math.isfinite(start_time) and math.isfinite(end_time)):
            raise ValueError(f"start_time and end_time must be finite, got {start_time} -> {end_time}")
        if start_time < 0:
            raise ValueError(f"start_time must be >= 0, got {start_time}")
        if end_time <= start_time:
            raise ValueError(f"end_time must be greater than start_time, got {start_time} -> {end_time}")
        if end_time - start_time > self.settings.max_segment_seconds:
            raise ValueError(
                f"segment of {end_time - start_time:.3f}s exceeds the {self.settings.max_segment_seconds:.3f}s maximum"
            )

    async def _discard_assets(self, video_id: str, uri: Optional[str], thumbnail: Optional[str]) -> None:
        """Undo a partially created memory; cleanup problems are logged only."""
        try:
            await self.metadata.discard(uri, video_id)
        except OSError as exc:
            logger.error("Failed to discard metadata for %s: %s", video_id, exc)
        try:
            await self.assets.delete(uri, thumbnail)
        except AssetIOFailure as exc:
            logger.error("Failed to discard assets for %s: %s", video_id, exc)

    # --- memories ---
    async def create_memory(
        self,
        source: PathLike,
        thumbnail: PathLike,
        start_time: float,
        end_time: float,
        title: str,
        description: Optional[str] = None,
        category_id: str = SENTINEL_CATEGORY_ID,
        video_id: Optional[str] = None,
    ) -> Video:
        start_time = float(start_time)
        end_time = float(end_time)
        self._validate_window(start_time, end_time)
        vid = self.metadata.check_id(video_id) if video_id else new_id()
        if video_id and await self.store.video_exists(video_id):
            # Metadata is keyed by id; never overwrite another video's record.
            vid = new_id()
            logger.warning("Video id %s already exists, creating as %s", video_id, vid)

        with log_context(operation="create_memory", entity_id=vid):
            video_uri = await self.assets.save(AssetKind.VIDEO, source)
            try:
                thumb_uri = await self.assets.save(AssetKind.THUMBNAIL, thumbnail)
            except AssetIOFailure:
                await self._discard_assets(vid, video_uri, None)
                raise

            try:
                window = await self.metadata.write(video_uri, vid, start_time, end_time)
            except Exception:
                logger.error("Aborting memory creation, trim metadata not saved")
                await self._discard_assets(vid, video_uri, thumb_uri)
                raise

            video = Video(
                id=vid,
                uri=video_uri,
                thumbnail=thumb_uri,
                duration=window.duration,
                created_at=utc_now_iso(),
                title=title,
                description=description,
                start_time=window.start_time,
                end_time=window.end_time,
                category_id=category_id or SENTINEL_CATEGORY_ID,
            )
            try:
                final_id = await self.store.add_video(video)
            except Exception:
                logger.error("Aborting memory creation, video row not stored")
                await self._discard_assets(vid, video_uri, thumb_uri)
                raise

            if final_id != vid:
                try:
                    await self.metadata.rekey(video_uri, vid, final_id)
                except (MetadataVerificationFailure, OSError) as exc:
                    # The row is committed; reads fall back to the sidecar.
                    logger.error("Failed to move trim metadata from %s to %s: %s", vid, final_id, exc)

            try:
                await self.assets.enforce_budget(exclude=(video_uri, thumb_uri, video_uri + ".meta"))
            except OSError as exc:
                logger.error("Cache cleanup after create failed: %s", exc)

            logger.info("Memory created: %s", final_id)
            return video

    async def update_memory(self, video_id: str, **fields: Any) -> bool:
        """
        Partially update a memory.

        Changing start/end recomputes the duration and writes the row before
        the trim metadata. If the metadata write fails the previous window is
        restored on the row, so the two never disagree.
        """
        if not fields:
            return True
        if "duration" in fields:
            raise ValueError("duration is derived from start_time and end_time")

        with log_context(operation="update_memory", entity_id=video_id):
            if "start_time" not in fields and "end_time" not in fields:
                return await self.store.update_video(video_id, **fields)

            current = await self.store.get_video(video_id)
            if current is None:
                return False
            start = float(fields.get("start_time", current.start_time))
            end = float(fields.get("end_time", current.end_time))
            self._validate_window(start, end)
            fields["start_time"] = start
            fields["end_time"] = end
            fields["duration"] = end - start

            if not await self.store.update_video(video_id, **fields):
                return False
            try:
                await self.metadata.write(current.uri, video_id, start, end)
            except Exception:
                logger.error("Trim metadata not saved, restoring previous window on the row")
                try:
                    await self.store.update_video(
                        video_id,
                        start_time=current.start_time,
                        end_time=current.end_time,
                        duration=current.duration,
                    )
                except StoreError as exc:
                    logger.error("Failed to restore previous window for %s: %s", video_id, exc)
                try:
                    await self.metadata.write(current.uri, video_id, current.start_time, current.end_time)
                except (StoreError, ValueError) as exc:
                    logger.error("Failed to restore previous trim metadata for %s: %s", video_id, exc)
                raise
            return True

    async def delete_memory(self, video_id: str) -> bool:
        """
        Delete the row (and its core memory), then its files and metadata.
        An orphaned file left by a failed delete is reclaimed by eviction.
        """
        with log_context(operation="delete_memory", entity_id=video_id):
            video = await self.store.get_video(video_id)
            if video is None:
                return False
            await self.store.delete_video(video_id)
            try:
                await self.metadata.discard(video.uri, video_id)
            except OSError as exc:
                logger.warning("Failed to remove trim metadata for %s: %s", video_id, exc)
            try:
                await self.assets.delete(video.uri, video.thumbnail)
            except AssetIOFailure as exc:
                raise AssetIOFailure(
                    f"video row deleted but files remain: {exc.message}",
                    operation="delete_memory",
                    entity_id=video_id,
                ) from exc
            logger.info("Memory deleted: %s", video_id)
            return True

    async def get_trim_window(self, video_id: str) -> Optional[TrimWindow]:
        video = await self.store.get_video(video_id)
        if video is None:
            return None
        return await self.metadata.read(video.uri, video.id)

    async def get_memory(self, video_id: str) -> Optional[Memory]:
        video = await self.store.get_video(video_id)
        if video is None:
            return None
        trim = await self.metadata.read(video.uri, video.id)
        core = await self.store.get_core_memory(video_id)
        return Memory(video=video, trim=trim, core_memory=core)

    async def list_memories(self, category_id: Optional[str] = None) -> List[Memory]:
        videos = await self.store.get_videos(category_id)
        cores = {m.video_id: m for m in await self.store.get_core_memories()}
        out: List[Memory] = []
        for video in videos:
            trim = await self.metadata.read(video.uri, video.id)
            out.append(Memory(video=video, trim=trim, core_memory=cores.get(video.id)))
        return out

    async def get_videos(self, category_id: Optional[str] = None) -> List[Video]:
        return await self.store.get_videos(category_id)

    # --- core memories ---
    async def set_core_memory(self, video_id: str, note: str, color: str, type_id: str) -> CoreMemory:
        memory = CoreMemory(video_id=video_id, note=note, color=color, type_id=type_id)
        await self.store.add_core_memory(memory)
        return memory

    async def update_core_memory(self, video_id: str, **fields: Any) -> bool:
        return await self.store.update_core_memory(video_id, **fields)

    async def delete_core_memory(self, video_id: str) -> bool:
        return await self.store.delete_core_memory(video_id)

    async def get_core_memories(self) -> List[CoreMemory]:
        return await self.store.get_core_memories()

    async def resolve_memory_type(self, type_id: str) -> Optional[MemoryTypeRef]:
        return await self.store.resolve_memory_type(type_id)

    # --- categories ---
    async def get_categories(self) -> List[Category]:
        return await self.store.get_categories()

    async def add_category(self, name: str, icon: str, color: str, key: str = "", category_id: Optional[str] = None) -> Category:
        category = Category(id=category_id or new_id(), key=key, name=name, icon=icon, color=color)
        await self.store.add_category(category)
        return category

    async def update_category(self, category_id: str, **fields: Any) -> bool:
        return await self.store.update_category(category_id, **fields)

    async def delete_category(self, category_id: str) -> bool:
        return await self.store.delete_category(category_id)

    # --- custom memory types ---
    async def get_custom_memory_types(self) -> List[CustomMemoryType]:
        return await self.store.get_custom_memory_types()

    async def add_custom_memory_type(self, name: str, icon: str, color: str, type_id: Optional[str] = None) -> CustomMemoryType:
        memory_type = CustomMemoryType(id=type_id or f"custom_{new_id()}", name=name, icon=icon, color=color)
        await self.store.add_custom_memory_type(memory_type)
        return memory_type

    async def update_custom_memory_type(self, type_id: str, **fields: Any) -> bool:
        return await self.store.update_custom_memory_type(type_id, **fields)

    async def delete_custom_memory_type(self, type_id: str) -> bool:
        return await self.store.delete_custom_memory_type(type_id)

    # --- maintenance ---
    def cache_size(self) -> int:
        return self.assets.cache_size()

    async def cleanup_cache(self, max_bytes: Optional[int] = None) -> List[str]:
        return await self.assets.enforce_budget(max_bytes)

    async def stats(self) -> Dict[str, Any]:
        counts = await self.store.counts()
        return {
            "db_path": str(self.db_path),
            "schema_version": await self.store.schema.schema_version(),
            "cache_bytes": self.assets.cache_size(),
            "cache_budget_bytes": self.assets.max_bytes,
            **counts,
        }

    async def clear_all(self) -> None:
        """
        Drop and recreate the schema, then wipe the asset and metadata stores.
        Irreversible.
        """
        with log_context(operation="clear_all"):
            await self.store.schema.reset()
            await self.store.schema.initialize()
            removed = await self.assets.clear()
            dropped = await self.metadata.clear()
            logger.info("Cleared all data (%d asset files, %d metadata records)", removed, dropped)


async def open_memory_service(
    config_file: Optional[PathLike] = None,
    env_file: Optional[PathLike] = None,
) -> MemoryService:
    """
    Convenience initializer for external callers.
    """
    return await MemoryService.open(load_config(config_file=config_file, env_file=env_file))
