"""
Local memory persistence for the video diary.

This package is intentionally framework-light:
- SQLite is the source of truth for rows (videos, categories, core memories)
- Video and thumbnail files live in a size-bounded asset cache
- Trim windows are mirrored into a sidecar file and an indexed metadata store
"""

from .errors import (
    AssetIOFailure,
    MetadataVerificationFailure,
    ReferentialViolation,
    SchemaInconsistent,
    StoreError,
    TransientStoreBusy,
)
from .models import BuiltinType, Category, CoreMemory, CustomMemoryType, CustomType, Memory, TrimWindow, Video
from .retry import RetryPolicy
from .service import MemoryService, open_memory_service

__all__ = [
    "AssetIOFailure",
    "BuiltinType",
    "Category",
    "CoreMemory",
    "CustomMemoryType",
    "CustomType",
    "Memory",
    "MemoryService",
    "MetadataVerificationFailure",
    "ReferentialViolation",
    "RetryPolicy",
    "SchemaInconsistent",
    "StoreError",
    "TransientStoreBusy",
    "TrimWindow",
    "Video",
    "open_memory_service",
]
