import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiosqlite

from ...codec import AttributeCodec
from ...models import DeletionStrategy
from ...registry import TypeRegistry
from ...snapshots import SnapshotStore
from .entities import SQLiteEntityStore
from .handle import SQLiteReader, SQLiteVersionHandle, SQLiteWriter, create_schema


async def _connect(
    connect_string: str, *, uri: bool, cache_size_kib: int, write: bool = False
) -> aiosqlite.Connection:
    conn = await aiosqlite.connect(connect_string, uri=uri)
    if write:
        await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA synchronous = NORMAL;")
    await conn.execute(f"PRAGMA cache_size = {cache_size_kib};")
    await conn.execute("PRAGMA busy_timeout = 5000;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@asynccontextmanager
async def sqlite_snapshot_factory(
    db_path: str,
    registry: TypeRegistry,
    *,
    cache_size_kib: int = -16384,
    pool_size: int = 4,
    compress: bool = True,
    deletion_policy: DeletionStrategy | None = None,
) -> AsyncIterator[SnapshotStore]:
    """
    Opens a `SnapshotStore` backed by a SQLite database and closes every
    connection it opened on exit.

    `db_path=":memory:"` gives each factory its own private in-memory
    database. Otherwise one dedicated write connection does all writes and a
    pool of `pool_size` read-only connections serves reads.
    """
    if not db_path:
        raise ValueError("`db_path` must be provided.")
    if pool_size < 1:
        raise ValueError("`pool_size` must be at least 1.")

    registry.validate()

    is_memory_db = db_path == ":memory:"
    if is_memory_db:
        # A named shared-cache database lets the read pool see the writer's data.
        db_connect_string = f"file:snapshots_{uuid.uuid4().hex}?mode=memory&cache=shared"
        read_connect_string = db_connect_string
    else:
        db_connect_string = db_path
        read_connect_string = f"file:{db_path}?mode=ro"

    write_conn = await _connect(
        db_connect_string, uri=is_memory_db, cache_size_kib=cache_size_kib, write=True
    )
    read_pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=pool_size)
    read_connections = []
    try:
        await create_schema(write_conn)
        for _ in range(pool_size):
            conn = await _connect(read_connect_string, uri=True, cache_size_kib=cache_size_kib)
            read_connections.append(conn)
            await read_pool.put(conn)

        codec = AttributeCodec(compress=compress)
        writer = SQLiteWriter(write_conn, asyncio.Lock())
        # Shared-cache readers are not isolated from the writer's open transaction.
        reader = SQLiteReader(writer, read_pool, wait_for_writer=is_memory_db)
        store = SnapshotStore(
            registry,
            versions=SQLiteVersionHandle(writer, reader, codec),
            entities=SQLiteEntityStore(writer, reader, registry, codec),
            codec=codec,
            deletion_policy=deletion_policy,
        )
        logging.info(f"Snapshot store opened on {db_path} with {pool_size} read connections")
        yield store
    finally:
        await asyncio.gather(*(conn.close() for conn in read_connections))
        await write_conn.close()
        logging.info(f"Snapshot store on {db_path} closed")
