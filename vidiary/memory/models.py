from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional, Union

SENTINEL_CATEGORY_ID = "all"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TrimWindow:
    start_time: float = 0.0
    end_time: float = math.inf

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def is_bounded(self) -> bool:
        return math.isfinite(self.end_time)


@dataclass
class Video:
    id: str
    uri: str
    thumbnail: str
    duration: float
    created_at: str
    title: str
    start_time: float
    end_time: float
    description: Optional[str] = None
    category_id: str = SENTINEL_CATEGORY_ID

    # attribute name -> column name
    COLUMNS = {
        "id": "id",
        "uri": "uri",
        "thumbnail": "thumbnail",
        "duration": "duration",
        "created_at": "createdAt",
        "title": "title",
        "description": "description",
        "start_time": "startTime",
        "end_time": "endTime",
        "category_id": "categoryId",
    }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Video":
        return cls(
            id=row["id"],
            uri=row["uri"],
            thumbnail=row["thumbnail"],
            duration=float(row["duration"]),
            created_at=row["createdAt"],
            title=row["title"],
            description=row["description"],
            start_time=float(row["startTime"]),
            end_time=float(row["endTime"]),
            category_id=row["categoryId"] or SENTINEL_CATEGORY_ID,
        )

    @property
    def trim_window(self) -> TrimWindow:
        return TrimWindow(start_time=self.start_time, end_time=self.end_time)


@dataclass
class Category:
    id: str
    key: str
    name: str
    icon: str
    color: str

    COLUMNS = {"id": "id", "key": "key", "name": "name", "icon": "icon", "color": "color"}

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Category":
        return cls(
            id=row["id"],
            key=row["key"] or "",
            name=row["name"],
            icon=row["icon"],
            color=row["color"],
        )

    @property
    def is_sentinel(self) -> bool:
        return self.id == SENTINEL_CATEGORY_ID


@dataclass
class CoreMemory:
    video_id: str
    note: str
    color: str
    type_id: str
    created_at: str = field(default_factory=utc_now_iso)

    COLUMNS = {
        "video_id": "videoId",
        "note": "note",
        "color": "color",
        "created_at": "createdAt",
        "type_id": "typeId",
    }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CoreMemory":
        return cls(
            video_id=row["videoId"],
            note=row["note"],
            color=row["color"],
            created_at=row["createdAt"],
            type_id=row["typeId"],
        )


@dataclass
class CustomMemoryType:
    id: str
    name: str
    icon: str
    color: str

    COLUMNS = {"id": "id", "name": "name", "icon": "icon", "color": "color"}

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CustomMemoryType":
        return cls(id=row["id"], name=row["name"], icon=row["icon"], color=row["color"])


@dataclass(frozen=True)
class BuiltinType:
    id: str
    name: str = ""
    icon: str = ""
    color: str = ""


@dataclass(frozen=True)
class CustomType:
    id: str
    name: str = ""
    icon: str = ""
    color: str = ""


MemoryTypeRef = Union[BuiltinType, CustomType]


def resolve_memory_type(
    type_id: str,
    builtin_types: Iterable[Mapping[str, Any]],
    custom_types: Iterable[CustomMemoryType],
) -> Optional[MemoryTypeRef]:
    """
    Resolve a CoreMemory type id against the built-in table and the custom rows.

    Built-ins win on an id clash. Returns None for a dangling id.
    """
    for entry in builtin_types:
        if entry.get("id") == type_id:
            return BuiltinType(
                id=type_id,
                name=str(entry.get("name", "")),
                icon=str(entry.get("icon", "")),
                color=str(entry.get("color", "")),
            )
    for custom in custom_types:
        if custom.id == type_id:
            return CustomType(id=custom.id, name=custom.name, icon=custom.icon, color=custom.color)
    return None


@dataclass
class Memory:
    video: Video
    trim: TrimWindow
    core_memory: Optional[CoreMemory] = None

    @property
    def id(self) -> str:
        return self.video.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.video.id,
            "uri": self.video.uri,
            "thumbnail": self.video.thumbnail,
            "title": self.video.title,
            "description": self.video.description,
            "category_id": self.video.category_id,
            "created_at": self.video.created_at,
            "start_time": self.trim.start_time,
            "end_time": self.trim.end_time,
            "duration": self.trim.duration,
            "core_memory": None
            if self.core_memory is None
            else {
                "note": self.core_memory.note,
                "color": self.core_memory.color,
                "type_id": self.core_memory.type_id,
                "created_at": self.core_memory.created_at,
            },
        }
