"""Exception roots shared by the storage, identity and import layers."""

from __future__ import annotations


class CellmatrixError(Exception):
    """Base exception for Cellmatrix failures."""


class StorageError(CellmatrixError):
    """A durable-store operation could not complete."""


class EntityNotFoundError(StorageError):
    """An external or entity id has no canonical entity."""


class SampleOrderAlreadySetError(StorageError):
    """A profile already has a persisted sample order."""


class ProfileSamplesMissingError(StorageError):
    """A profile has no persisted sample order to read values against."""


class FlushError(StorageError):
    """A buffered batch failed to insert at flush time."""

    def __init__(self, table: str, pending: int, message: str):
        super().__init__(f"flush of {table} failed with {pending} rows pending: {message}")
        self.table = table
        self.pending = pending
