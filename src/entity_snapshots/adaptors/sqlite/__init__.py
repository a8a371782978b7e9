from .entities import SQLiteEntityStore
from .factory import sqlite_snapshot_factory
from .handle import SQLiteReader, SQLiteVersionHandle, SQLiteWriter

__all__ = [
    "sqlite_snapshot_factory",
    "SQLiteEntityStore",
    "SQLiteVersionHandle",
    "SQLiteWriter",
    "SQLiteReader",
]
