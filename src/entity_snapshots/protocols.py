"""
This module defines the abstract protocols for version storage and for the
live entity store.

By using `Protocol`-based interfaces, the capture, restore and reification
logic is decoupled from the concrete backend. The SQLite adaptor is one
implementation; an ORM-backed store only has to provide the same methods.
"""
from typing import Any, AsyncContextManager, Dict, List, Mapping, Protocol

from .models import ChildGroup, Item, Version


class EntityStore(Protocol):
    """
    The live entities a version is taken of and restored into.
    Restores call these methods from inside `transaction()`.
    """

    def transaction(self) -> AsyncContextManager[Any]:
        """Runs the enclosed block atomically. Any error rolls back every write made in it."""
        ...

    async def get_entity(self, entity_type: str, entity_id: str) -> Any | None:
        ...

    async def upsert_entity(self, entity_type: str, entity_id: str, attributes: Mapping[str, Any]) -> Any:
        ...

    async def delete_entity(self, entity_type: str, entity_id: str):
        ...

    async def children_of(self, owner: Any) -> Dict[str, ChildGroup]:
        ...


class VersionStorage(Protocol):
    """
    Defines the contract that version persistence adaptors must implement.
    The `SnapshotStore` interacts with this protocol, not a concrete implementation.
    """

    async def identifier_exists(self, owner_type: str, owner_id: str, identifier: str) -> bool:
        ...

    async def save_version(self, version: Version, items: List[Item]):
        ...

    async def get_version(self, version_id: str) -> Version | None:
        ...

    async def find_version(self, owner_type: str, owner_id: str, identifier: str) -> Version | None:
        ...

    async def list_versions(self, owner_type: str, owner_id: str) -> List[Version]:
        ...

    async def get_items(self, version_id: str) -> List[Item]:
        ...

    async def update_metadata(self, version_id: str, metadata: Mapping[str, Any]):
        ...

    async def delete_version(self, version_id: str) -> bool:
        ...
