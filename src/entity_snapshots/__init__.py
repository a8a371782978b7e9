# entity_snapshots package

from .codec import AttributeCodec, AttributeDocument
from .exceptions import (
    CodecError,
    ReconciliationError,
    SnapshotError,
    TypeResolutionError,
    ValidationError,
    VersionNotFoundError,
)
from .models import ChildGroup, EntityRef, Item, Version
from .registry import TypeRegistry, is_readonly
from .snapshots import SnapshotStore
from .adaptors.sqlite import sqlite_snapshot_factory

__all__ = [
    "AttributeCodec",
    "AttributeDocument",
    "ChildGroup",
    "EntityRef",
    "Item",
    "Version",
    "TypeRegistry",
    "is_readonly",
    "SnapshotStore",
    "sqlite_snapshot_factory",
    "SnapshotError",
    "ValidationError",
    "ReconciliationError",
    "TypeResolutionError",
    "CodecError",
    "VersionNotFoundError",
]
