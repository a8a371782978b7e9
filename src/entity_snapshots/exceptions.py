"""
Error taxonomy for the snapshot system.

Every error raised by the library derives from `SnapshotError`, so callers can
catch the whole family at once while still telling validation problems apart
from failed restores.
"""
from typing import Any


class SnapshotError(Exception):
    """Base class for all snapshot errors."""


class ValidationError(SnapshotError):
    """A version could not be created because its inputs are invalid.

    Raised before anything is written.
    """


class VersionNotFoundError(SnapshotError):
    pass


class CodecError(SnapshotError):
    """Stored attributes or metadata could not be encoded or decoded."""


class TypeResolutionError(SnapshotError):
    def __init__(self, type_name: Any, message: str | None = None):
        self.type_name = type_name
        super().__init__(message or f"Entity type '{type_name}' is not registered.")


class ReconciliationError(SnapshotError):
    """A deletion or construction step failed during a restore.

    The whole restore transaction has been rolled back when this reaches the
    caller. `item_type` and `item_id` identify the offending entity.
    """

    def __init__(self, item_type: str, item_id: str, message: str):
        self.item_type = item_type
        self.item_id = item_id
        super().__init__(f"{item_type} {item_id}: {message}")
