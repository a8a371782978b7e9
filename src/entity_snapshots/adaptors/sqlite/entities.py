"""
A generic live entity store on SQLite.

Every registered pydantic model is kept in one `entities` table keyed by its
type tag and identity, with its attributes stored through the codec. It
implements the `EntityStore` protocol, so versions can be restored into it,
and is the store the factory hands to `SnapshotStore`.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping

import aiosqlite

from ...codec import AttributeCodec
from ...models import ChildGroup
from ...protocols import EntityStore
from ...registry import TypeRegistry
from .handle import SQLiteReader, SQLiteWriter


class SQLiteEntityStore(EntityStore):
    def __init__(
        self,
        writer: SQLiteWriter,
        reader: SQLiteReader,
        registry: TypeRegistry,
        codec: AttributeCodec,
    ):
        self.writer = writer
        self.reader = reader
        self.registry = registry
        self.codec = codec

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self.writer.transaction() as conn:
            yield conn

    async def get_entity(self, entity_type: str, entity_id: str) -> Any | None:
        self.registry.resolve(entity_type)
        async with self.reader.connection() as conn:
            async with conn.execute(
                "SELECT attributes FROM entities WHERE entity_type = ? AND entity_id = ?",
                (entity_type, str(entity_id)),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return self.registry.build(entity_type, self.codec.decode(row[0]))

    async def find_by(self, entity_type: str, **filters: Any) -> List[Any]:
        """Returns every entity of `entity_type` whose fields equal `filters`, in insertion order."""
        self.registry.resolve(entity_type)
        async with self.reader.connection() as conn:
            async with conn.execute(
                "SELECT attributes FROM entities WHERE entity_type = ? ORDER BY rowid",
                (entity_type,),
            ) as cursor:
                rows = await cursor.fetchall()
        entities = [self.registry.build(entity_type, self.codec.decode(row[0])) for row in rows]
        return [
            e for e in entities
            if all(getattr(e, field) == value for field, value in filters.items())
        ]

    async def upsert_entity(self, entity_type: str, entity_id: str, attributes: Mapping[str, Any]) -> Any:
        """
        Creates or replaces an entity. The attributes are validated against the
        registered model first, so invalid data raises `pydantic.ValidationError`.
        """
        entity = self.registry.build(entity_type, attributes)
        identity = self.registry.identity_of(entity)
        if identity != str(entity_id):
            raise ValueError(
                f"Attributes identify {entity_type} {identity}, expected {entity_id}"
            )
        async with self.writer.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO entities (entity_type, entity_id, attributes, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (entity_type, entity_id)
                DO UPDATE SET attributes = excluded.attributes, updated_at = excluded.updated_at
                """,
                (
                    entity_type,
                    identity,
                    self.codec.encode(entity.model_dump()),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
        return entity

    async def delete_entity(self, entity_type: str, entity_id: str):
        self.registry.resolve(entity_type)
        async with self.writer.transaction() as conn:
            await conn.execute(
                "DELETE FROM entities WHERE entity_type = ? AND entity_id = ?",
                (entity_type, str(entity_id)),
            )

    async def save(self, entity: Any) -> Any:
        ref = self.registry.ref_of(entity)
        return await self.upsert_entity(ref.entity_type, ref.entity_id, entity.model_dump())

    async def delete(self, entity: Any):
        ref = self.registry.ref_of(entity)
        await self.delete_entity(ref.entity_type, ref.entity_id)

    async def children_of(self, owner: Any) -> Dict[str, ChildGroup]:
        """
        Asks the owner type's registered children hook for its snapshot
        children. Hooks may return plain lists of records instead of
        `ChildGroup`s when the default deletion policy is fine.
        """
        hook = self.registry.children_hook(self.registry.type_name_of(owner))
        if hook is None:
            return {}
        groups = await hook(owner, self) or {}
        return {
            group_tag: group if isinstance(group, ChildGroup) else ChildGroup(records=list(group))
            for group_tag, group in groups.items()
        }
