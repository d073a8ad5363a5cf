from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import re
from pathlib import Path
from typing import Dict, Optional, Union

import aiofiles
import aiofiles.tempfile
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import MetadataVerificationFailure
from .models import TrimWindow
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".meta"


class IndexedMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    uri: str
    start_time: float = Field(alias="startTime")
    end_time: Optional[float] = Field(default=None, alias="endTime")
    duration: Optional[float] = None

    def window(self) -> TrimWindow:
        end = math.inf if self.end_time is None else self.end_time
        return TrimWindow(start_time=self.start_time, end_time=end)


def sidecar_path(asset_ref: Union[str, os.PathLike]) -> Path:
    return Path(str(asset_ref) + SIDECAR_SUFFIX)


_ASSET_ID_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


def _safe_asset_id(asset_id: str) -> str:
    # Ids map 1:1 onto file names; anything that would need rewriting is rejected.
    if not isinstance(asset_id, str) or not _ASSET_ID_RE.fullmatch(asset_id):
        raise ValueError(f"asset_id must be a non-empty file-name-safe string, got {asset_id!r}")
    return asset_id


async def _atomic_write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, ensure_ascii=True, separators=(",", ":"), sort_keys=True)
    tmp_path: Optional[Path] = None
    try:
        async with aiofiles.tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            delete=False,
            dir=str(path.parent),
            prefix=path.name + ".tmp.",
        ) as handle:
            tmp_path = Path(handle.name)
            await handle.write(payload)
            await handle.flush()
        os.replace(tmp_path, path)
    except OSError:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)
        raise


async def _read_json(path: Path) -> Optional[dict]:
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as handle:
            content = await handle.read()
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Cannot read metadata file %s: %s", path, exc)
        return None
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable metadata file %s", path)
        return None
    return data if isinstance(data, dict) else None


class MetadataSynchronizer:
    """
    Keeps an asset's trim window in two places:

    - a sidecar ``<asset>.meta`` file next to the asset
    - an indexed record ``<metadata_dir>/<asset_id>.json``

    The indexed record is authoritative; the sidecar is the read fallback.
    """

    def __init__(self, metadata_dir: Union[str, os.PathLike], retry: Optional[RetryPolicy] = None):
        self.metadata_dir = Path(metadata_dir)
        self.retry = retry or RetryPolicy()
        self._cache: Dict[str, TrimWindow] = {}

    def setup(self) -> None:
        self.metadata_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def check_id(asset_id: str) -> str:
        """Raise ValueError for an id that cannot name an indexed record."""
        return _safe_asset_id(asset_id)

    def indexed_path(self, asset_id: str) -> Path:
        return self.metadata_dir / f"{_safe_asset_id(asset_id)}.json"

    # --- low level ---
    async def _write_sidecar(self, asset_ref: Union[str, os.PathLike], start_time: float, end_time: float) -> None:
        await _atomic_write_json(sidecar_path(asset_ref), {"startTime": start_time, "endTime": end_time})

    async def _write_indexed(self, record: IndexedMetadata) -> None:
        await _atomic_write_json(self.indexed_path(record.id), record.model_dump(by_alias=True))

    async def _load_indexed(self, asset_id: str) -> Optional[IndexedMetadata]:
        data = await _read_json(self.indexed_path(asset_id))
        if data is None:
            return None
        try:
            return IndexedMetadata.model_validate(data)
        except ValidationError as exc:
            logger.warning("Invalid indexed metadata for %s: %s", asset_id, exc)
            return None

    async def _load_sidecar(self, asset_ref: Union[str, os.PathLike]) -> Optional[TrimWindow]:
        data = await _read_json(sidecar_path(asset_ref))
        if not data or data.get("endTime") is None:
            return None
        try:
            return TrimWindow(start_time=float(data.get("startTime") or 0.0), end_time=float(data["endTime"]))
        except (TypeError, ValueError):
            logger.warning("Invalid sidecar metadata for %s", asset_ref)
            return None

    # --- public API ---
    async def write(
        self,
        asset_ref: Union[str, os.PathLike],
        asset_id: str,
        start_time: float,
        end_time: float,
    ) -> TrimWindow:
        """
        Persist the trim window to both locations and verify the indexed copy.

        Raises MetadataVerificationFailure once the retry policy is exhausted.
        """
        start_time = float(start_time)
        end_time = float(end_time)
        if not (math.isfinite(start_time) and math.isfinite(end_time)):
            raise ValueError(f"trim window must be finite, got {start_time} -> {end_time}")
        if start_time < 0 or end_time <= start_time:
            raise ValueError(f"end_time must be greater than start_time >= 0, got {start_time} -> {end_time}")
        self.check_id(asset_id)

        record = IndexedMetadata(
            id=asset_id,
            uri=str(asset_ref),
            start_time=start_time,
            end_time=end_time,
            duration=end_time - start_time,
        )

        async def attempt() -> TrimWindow:
            self._cache.pop(asset_id, None)
            # Both writes must settle before a retry or a caller cleanup.
            results = await asyncio.gather(
                self._write_sidecar(asset_ref, start_time, end_time),
                self._write_indexed(record),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            stored = await self._load_indexed(asset_id)
            if stored is None or stored.end_time is None:
                raise MetadataVerificationFailure(
                    "indexed metadata missing after write", operation="write_metadata", entity_id=asset_id
                )
            window = stored.window()
            self._cache[asset_id] = window
            return window

        try:
            window = await self.retry.run(
                attempt,
                retry_if=lambda exc: isinstance(exc, (OSError, MetadataVerificationFailure)),
                label=f"metadata write for {asset_id}",
            )
        except MetadataVerificationFailure:
            logger.error("Metadata verification failed for %s", asset_id)
            raise
        except OSError as exc:
            logger.error("Metadata write failed for %s: %s", asset_id, exc)
            raise MetadataVerificationFailure(
                f"failed to save metadata after {self.retry.max_attempts} attempts: {exc}",
                operation="write_metadata",
                entity_id=asset_id,
            ) from exc

        logger.info("Metadata saved for %s (%.3f -> %.3f)", asset_id, start_time, end_time)
        return window

    async def read(self, asset_ref: Union[str, os.PathLike], asset_id: str) -> TrimWindow:
        """
        Indexed record first, then the sidecar, then the whole clip ``(0, inf)``.
        """
        cached = self._cache.get(asset_id)
        if cached is not None:
            return cached

        record = await self._load_indexed(asset_id)
        if record is not None and record.end_time is not None:
            window = record.window()
            self._cache[asset_id] = window
            return window

        window = await self._load_sidecar(asset_ref)
        if window is not None:
            logger.info("Using sidecar metadata for %s", asset_id)
            return window

        logger.warning("No trim metadata for %s, using the whole clip", asset_id)
        return TrimWindow()

    async def update(
        self,
        asset_ref: Union[str, os.PathLike],
        asset_id: str,
        start_time: Optional[float] = None,
        end_time: Optional[float] = None,
    ) -> TrimWindow:
        existing = await self._load_indexed(asset_id)
        if existing is None:
            raise MetadataVerificationFailure(
                "video metadata not found", operation="update_metadata", entity_id=asset_id
            )
        start = existing.start_time if start_time is None else start_time
        end = existing.end_time if end_time is None else end_time
        if end is None:
            raise MetadataVerificationFailure(
                "stored metadata has no end time", operation="update_metadata", entity_id=asset_id
            )
        return await self.write(asset_ref, asset_id, start, end)

    async def rekey(self, asset_ref: Union[str, os.PathLike], old_id: str, new_id: str) -> TrimWindow:
        """Move the indexed record to a new asset id."""
        window = await self.read(asset_ref, old_id)
        if not window.is_bounded:
            raise MetadataVerificationFailure(
                "no metadata to move", operation="rekey_metadata", entity_id=old_id
            )
        moved = await self.write(asset_ref, new_id, window.start_time, window.end_time)
        self._cache.pop(old_id, None)
        self.indexed_path(old_id).unlink(missing_ok=True)
        return moved

    async def discard(self, asset_ref: Optional[Union[str, os.PathLike]], asset_id: str) -> None:
        self._cache.pop(asset_id, None)
        self.indexed_path(asset_id).unlink(missing_ok=True)
        if asset_ref:
            sidecar_path(asset_ref).unlink(missing_ok=True)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def clear(self) -> int:
        """Drop every indexed record and the cache."""
        self._cache.clear()
        removed = 0
        if not self.metadata_dir.is_dir():
            return removed
        for path in self.metadata_dir.glob("*.json"):
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.error("Failed to remove metadata file %s: %s", path, exc)
        return removed
