from __future__ import annotations

from typing import Optional


class StoreError(Exception):
    """Fatal persistence error carrying the failing operation and entity id."""

    def __init__(self, message: str, operation: Optional[str] = None, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.entity_id = entity_id

    def __str__(self) -> str:
        parts = [self.message]
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.entity_id:
            parts.append(f"entity_id={self.entity_id}")
        return " | ".join(parts)


class TransientStoreBusy(StoreError):
    """The database stayed locked after every retry."""


class SchemaInconsistent(StoreError):
    """Required tables are missing and the schema could not be repaired automatically."""


class AssetIOFailure(StoreError):
    """Copying or deleting an asset file failed."""


class MetadataVerificationFailure(StoreError):
    """Trim metadata could not be written or read back."""


class ReferentialViolation(StoreError):
    """The operation would break a relationship between entities."""
