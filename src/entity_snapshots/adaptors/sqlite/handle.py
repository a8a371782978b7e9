"""
This module provides the SQLite implementation of the `VersionStorage`
protocol, together with the write-side transaction management shared by every
SQLite store opened from the same factory.

All writes go through one connection guarded by an `asyncio.Lock`. The use of
`SAVEPOINT` is what makes a whole restore atomic: nested transactions on the
same task become nested savepoints on that connection.
"""
import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, List, Mapping

import aiosqlite

from ...codec import AttributeCodec
from ...exceptions import ValidationError, VersionNotFoundError
from ...models import EntityRef, Item, Version
from ...protocols import VersionStorage

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS versions (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        owner_type TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        identifier TEXT NOT NULL,
        metadata BLOB NOT NULL,
        creator_type TEXT,
        creator_id TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (owner_type, owner_id, identifier)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS items (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        version_id TEXT NOT NULL REFERENCES versions (id) ON DELETE CASCADE,
        item_type TEXT NOT NULL,
        item_id TEXT NOT NULL,
        group_tag TEXT,
        attributes BLOB NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    # Items are always read per version, in storage order.
    "CREATE INDEX IF NOT EXISTS idx_items_version ON items (version_id, seq)",
    """
    CREATE TABLE IF NOT EXISTS entities (
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        attributes BLOB NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (entity_type, entity_id)
    )
    """,
]


async def create_schema(conn: aiosqlite.Connection):
    for statement in SCHEMA:
        await conn.execute(statement)
    await conn.commit()


class SQLiteWriter:
    """
    Owns the write connection. `transaction()` takes the write lock on the
    outermost call and opens a savepoint; calls nested inside it (on the same
    task) open further savepoints without touching the lock.
    """

    def __init__(self, conn: aiosqlite.Connection, lock: asyncio.Lock):
        self.conn = conn
        self.lock = lock
        self._depth: ContextVar[int] = ContextVar(f"sqlite_writer_{id(self)}", default=0)

    @property
    def in_transaction(self) -> bool:
        return self._depth.get() > 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        depth = self._depth.get()
        if depth == 0:
            await self.lock.acquire()
        savepoint = f"snapshot_tx_{depth}"
        token = self._depth.set(depth + 1)
        try:
            await self.conn.execute(f"SAVEPOINT {savepoint}")
            try:
                yield self.conn
            except BaseException as e:
                await self.conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                await self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                if depth == 0:
                    logging.error(f"Rolled back SQLite transaction: {e!r}")
                raise
            await self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            if depth == 0:
                await self.conn.commit()
        finally:
            self._depth.reset(token)
            if depth == 0:
                self.lock.release()


class SQLiteReader:
    """
    Hands out a connection for reads: the write connection while a transaction
    is open on this task, else one from the pool.

    File databases in WAL mode give pool readers the last committed state.
    Shared-cache in-memory databases have no such isolation, so with
    `wait_for_writer` a pool read first waits for any open write transaction
    to finish.
    """

    def __init__(self, writer: SQLiteWriter, read_pool: asyncio.Queue, wait_for_writer: bool = False):
        self.writer = writer
        self.read_pool = read_pool
        self.wait_for_writer = wait_for_writer

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        # Reads inside a transaction must see its uncommitted writes.
        if self.writer.in_transaction:
            yield self.writer.conn
            return
        if self.wait_for_writer:
            async with self.writer.lock:
                async with self._borrow() as conn:
                    yield conn
        else:
            async with self._borrow() as conn:
                yield conn

    @asynccontextmanager
    async def _borrow(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self.read_pool.get()
        try:
            yield conn
        finally:
            await self.read_pool.put(conn)


VERSION_COLUMNS = "id, owner_type, owner_id, identifier, metadata, creator_type, creator_id, created_at"


class SQLiteVersionHandle(VersionStorage):
    """
    A concrete implementation of the `VersionStorage` protocol for SQLite.

    Encapsulates all SQL needed to persist and retrieve versions and their
    items. Metadata is stored through the codec.
    """

    def __init__(self, writer: SQLiteWriter, reader: SQLiteReader, codec: AttributeCodec):
        self.writer = writer
        self.reader = reader
        self.codec = codec

    def _row_to_version(self, row) -> Version:
        version_id, owner_type, owner_id, identifier, metadata, creator_type, creator_id, created_at = row
        creator = None
        if creator_type is not None:
            creator = EntityRef(entity_type=creator_type, entity_id=creator_id)
        return Version(
            id=version_id,
            owner_type=owner_type,
            owner_id=owner_id,
            identifier=identifier,
            metadata=self.codec.decode(metadata),
            creator=creator,
            created_at=datetime.fromisoformat(created_at),
        )

    async def identifier_exists(self, owner_type: str, owner_id: str, identifier: str) -> bool:
        async with self.reader.connection() as conn:
            async with conn.execute(
                "SELECT 1 FROM versions WHERE owner_type = ? AND owner_id = ? AND identifier = ?",
                (owner_type, owner_id, identifier),
            ) as cursor:
                return await cursor.fetchone() is not None

    async def save_version(self, version: Version, items: List[Item]):
        """Inserts the version and all of its items in one transaction."""
        creator = version.creator
        try:
            async with self.writer.transaction() as conn:
                await conn.execute(
                    f"INSERT INTO versions ({VERSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        version.id,
                        version.owner_type,
                        version.owner_id,
                        version.identifier,
                        self.codec.encode(version.metadata),
                        creator.entity_type if creator else None,
                        creator.entity_id if creator else None,
                        version.created_at.isoformat(),
                    ),
                )
                for item in items:
                    item.version_id = version.id
                await conn.executemany(
                    "INSERT INTO items (id, version_id, item_type, item_id, group_tag, attributes, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    [
                        (
                            item.id,
                            item.version_id,
                            item.item_type,
                            item.item_id,
                            item.group_tag,
                            item.attributes,
                            item.created_at.isoformat(),
                        )
                        for item in items
                    ],
                )
        except sqlite3.IntegrityError as e:
            # Lost a race with another writer using the same identifier.
            raise ValidationError(
                f"Identifier '{version.identifier}' is already taken for "
                f"{version.owner_type} {version.owner_id}"
            ) from e

    async def get_version(self, version_id: str) -> Version | None:
        async with self.reader.connection() as conn:
            async with conn.execute(
                f"SELECT {VERSION_COLUMNS} FROM versions WHERE id = ?", (version_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_version(row) if row else None

    async def find_version(self, owner_type: str, owner_id: str, identifier: str) -> Version | None:
        async with self.reader.connection() as conn:
            async with conn.execute(
                f"SELECT {VERSION_COLUMNS} FROM versions "
                "WHERE owner_type = ? AND owner_id = ? AND identifier = ?",
                (owner_type, owner_id, identifier),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_version(row) if row else None

    async def list_versions(self, owner_type: str, owner_id: str) -> List[Version]:
        """Returns the owner's versions in creation order."""
        async with self.reader.connection() as conn:
            async with conn.execute(
                f"SELECT {VERSION_COLUMNS} FROM versions WHERE owner_type = ? AND owner_id = ? ORDER BY seq",
                (owner_type, owner_id),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_version(row) for row in rows]

    async def get_items(self, version_id: str) -> List[Item]:
        async with self.reader.connection() as conn:
            async with conn.execute(
                "SELECT id, version_id, item_type, item_id, group_tag, attributes, created_at "
                "FROM items WHERE version_id = ? ORDER BY seq",
                (version_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            Item(
                id=row_id,
                version_id=row_version_id,
                item_type=item_type,
                item_id=item_id,
                group_tag=group_tag,
                attributes=attributes,
                created_at=datetime.fromisoformat(created_at),
            )
            for row_id, row_version_id, item_type, item_id, group_tag, attributes, created_at in rows
        ]

    async def update_metadata(self, version_id: str, metadata: Mapping[str, Any]):
        async with self.writer.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE versions SET metadata = ? WHERE id = ?",
                (self.codec.encode(metadata), version_id),
            )
            if cursor.rowcount == 0:
                raise VersionNotFoundError(f"No version with id '{version_id}'")

    async def delete_version(self, version_id: str) -> bool:
        async with self.writer.transaction() as conn:
            await conn.execute("DELETE FROM items WHERE version_id = ?", (version_id,))
            cursor = await conn.execute("DELETE FROM versions WHERE id = ?", (version_id,))
            return cursor.rowcount > 0
