"""
Local persistence for video diary memories.

- SQLite holds the rows (videos, categories, core memories, custom types)
- Video and thumbnail files live in a size-bounded asset cache
- Trim windows are written to a sidecar file and an indexed metadata store
"""

__version__ = "0.1.0"
