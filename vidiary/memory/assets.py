from __future__ import annotations

import asyncio
import enum
import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Union

from .errors import AssetIOFailure

logger = logging.getLogger(__name__)

DEFAULT_MAX_CACHE_BYTES = 500 * 1024 * 1024


class AssetKind(str, enum.Enum):
    VIDEO = "video"
    THUMBNAIL = "thumbnail"

    @property
    def default_suffix(self) -> str:
        return ".mp4" if self is AssetKind.VIDEO else ".jpg"


@dataclass
class _CachedFile:
    path: Path
    size: int
    instant: int


class _InstantClock:
    """Microsecond epoch stamps, strictly increasing within the process."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            now = time.time_ns() // 1000
            if now <= self._last:
                now = self._last + 1
            self._last = now
            return now


def parse_instant(name: str) -> Optional[int]:
    """Creation instant encoded in a stored file name (``<instant>.<ext>[.meta]``)."""
    head = name.split(".", 1)[0].split("_", 1)[0]
    if not head.isdigit():
        return None
    return int(head)


class AssetStore:
    """
    Size-bounded cache of immutable video and thumbnail files.

    File names encode their creation instant, so eviction can order files
    by age without keeping a separate index.
    """

    def __init__(
        self,
        videos_dir: Union[str, os.PathLike],
        thumbnails_dir: Union[str, os.PathLike],
        max_bytes: int = DEFAULT_MAX_CACHE_BYTES,
    ):
        self.videos_dir = Path(videos_dir)
        self.thumbnails_dir = Path(thumbnails_dir)
        self.max_bytes = int(max_bytes)
        self._clock = _InstantClock()

    def directory(self, kind: AssetKind) -> Path:
        return self.videos_dir if kind is AssetKind.VIDEO else self.thumbnails_dir

    def setup(self) -> None:
        self.videos_dir.mkdir(parents=True, exist_ok=True)
        self.thumbnails_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def instant_of(ref: Union[str, os.PathLike]) -> Optional[int]:
        return parse_instant(Path(ref).name)

    # --- save ---
    async def save(self, kind: AssetKind, source: Union[str, os.PathLike]) -> str:
        src = Path(source)
        if not src.is_file():
            raise AssetIOFailure(f"source file not found: {src}", operation="save_asset")

        self.setup()
        suffix = src.suffix or kind.default_suffix
        dest = self.directory(kind) / f"{self._clock.next()}{suffix}"
        partial = dest.with_name(dest.name + ".part")
        try:
            await asyncio.to_thread(shutil.copyfile, src, partial)
            os.replace(partial, dest)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise AssetIOFailure(f"failed to copy {src} -> {dest}: {exc}", operation="save_asset") from exc

        if not dest.exists():
            raise AssetIOFailure(f"asset missing after copy: {dest}", operation="save_asset")
        logger.info("Saved %s asset %s (%d bytes)", kind.value, dest.name, dest.stat().st_size)
        return str(dest)

    # --- delete ---
    async def delete(self, *refs: Optional[Union[str, os.PathLike]]) -> int:
        """
        Delete the given files; already-absent files count as deleted.

        Returns the number of files actually removed. Every ref is attempted
        before the first failure is raised.
        """
        removed = 0
        failures: List[str] = []
        for ref in refs:
            if not ref:
                continue
            path = Path(ref)
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.error("Failed to delete asset %s: %s", path, exc)
                failures.append(f"{path}: {exc}")
        if failures:
            raise AssetIOFailure("failed to delete " + "; ".join(failures), operation="delete_asset")
        return removed

    # --- accounting ---
    def _list_files(self) -> List[_CachedFile]:
        out: List[_CachedFile] = []
        for directory in (self.videos_dir, self.thumbnails_dir):
            if not directory.is_dir():
                continue
            for entry in os.scandir(directory):
                if not entry.is_file():
                    continue
                try:
                    st = entry.stat()
                except FileNotFoundError:
                    continue
                instant = parse_instant(entry.name)
                if instant is None:
                    instant = st.st_mtime_ns // 1000
                out.append(_CachedFile(path=Path(entry.path), size=st.st_size, instant=instant))
        return out

    def cache_size(self) -> int:
        return sum(f.size for f in self._list_files())

    def list_assets(self) -> List[str]:
        """Stored files, oldest first."""
        files = sorted(self._list_files(), key=lambda f: (f.instant, f.path.name))
        return [str(f.path) for f in files]

    # --- eviction ---
    async def enforce_budget(
        self,
        max_bytes: Optional[int] = None,
        exclude: Iterable[Union[str, os.PathLike]] = (),
    ) -> List[str]:
        """
        Evict oldest files until the cache fits ``max_bytes``.

        Files in ``exclude`` are never evicted. A file that cannot be deleted
        is skipped and still counts against the budget next time.
        """
        budget = self.max_bytes if max_bytes is None else int(max_bytes)
        files = self._list_files()
        total = sum(f.size for f in files)
        if total <= budget:
            return []

        protected = {Path(p).resolve() for p in exclude}
        candidates = sorted(
            (f for f in files if f.path.resolve() not in protected),
            key=lambda f: (f.instant, f.path.name),
        )
        logger.info("Asset cache at %d bytes exceeds budget of %d, evicting", total, budget)

        evicted: List[str] = []
        for f in candidates:
            if total <= budget:
                break
            try:
                f.path.unlink()
            except FileNotFoundError:
                total -= f.size
                continue
            except OSError as exc:
                logger.error("Failed to evict %s: %s", f.path, exc)
                continue
            total -= f.size
            evicted.append(str(f.path))

        if total > budget:
            logger.warning("Asset cache still at %d bytes after eviction (budget %d)", total, budget)
        else:
            logger.info("Evicted %d files, cache now %d bytes", len(evicted), total)
        return evicted

    async def clear(self) -> int:
        """Best-effort wipe of both directories."""
        removed = 0
        for f in self._list_files():
            try:
                f.path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.error("Failed to remove %s while clearing: %s", f.path, exc)
        return removed
