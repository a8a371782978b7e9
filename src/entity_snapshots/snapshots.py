"""
The public entry point for taking, listing, restoring and reifying versions.

`SnapshotStore` ties the capture, restore and reification logic to a
`VersionStorage` for the versions themselves and an `EntityStore` for the live
entities. Storage adaptors build one for you (see `sqlite_snapshot_factory`).
"""
import logging
from typing import Any, Dict, List, Mapping, Tuple

from .capture import CaptureBuilder
from .codec import AttributeCodec, AttributeDocument
from .exceptions import TypeResolutionError, ValidationError, VersionNotFoundError
from .hierarchy import TypeHierarchyResolver
from .models import DeletionStrategy, EntityRef, Item, Version
from .protocols import EntityStore, VersionStorage
from .reconcile import ReconciliationEngine
from .registry import TypeRegistry
from .reify import Reifier


class SnapshotStore:
    def __init__(
        self,
        registry: TypeRegistry,
        versions: VersionStorage,
        entities: EntityStore,
        codec: AttributeCodec | None = None,
        deletion_policy: DeletionStrategy | None = None,
    ):
        self.registry = registry
        self.versions = versions
        self.entities = entities
        self.codec = codec or AttributeCodec()
        self.deletion_policy = deletion_policy
        self.resolver = TypeHierarchyResolver(registry)
        self.capture = CaptureBuilder(registry, self.codec)
        self.reifier = Reifier(registry, self.codec)

    def _owner_ref(self, owner: Any) -> EntityRef:
        if owner is None:
            raise ValidationError("A version needs an owner")
        if isinstance(owner, EntityRef):
            return owner
        try:
            return self.registry.ref_of(owner)
        except TypeResolutionError as e:
            raise ValidationError(f"Owner type '{e.type_name}' is not registered") from e

    async def create_version(
        self,
        owner: Any,
        identifier: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        creator: Any = None,
    ) -> Version:
        """
        Captures `owner` and its snapshot children as a new version.

        All validation happens before anything is written. The owner's children
        are then read, and the version and its items persisted, in one
        transaction, so no concurrent write lands between capture and save.
        """
        if isinstance(owner, EntityRef):
            raise ValidationError("Capturing a version needs the live owner entity, not a reference")
        ref = self._owner_ref(owner)
        if not identifier or not str(identifier).strip():
            raise ValidationError("A version needs a non-empty identifier")
        creator_ref = None
        if creator is not None:
            creator_ref = creator if isinstance(creator, EntityRef) else self._creator_ref(creator)
        if await self.versions.identifier_exists(ref.entity_type, ref.entity_id, identifier):
            raise ValidationError(
                f"Identifier '{identifier}' is already taken for {ref.entity_type} {ref.entity_id}"
            )

        version = Version(
            owner_type=ref.entity_type,
            owner_id=ref.entity_id,
            identifier=identifier,
            metadata=metadata or {},
            creator=creator_ref,
        )
        # Encoding up front so a bad document is reported before the write.
        self.codec.encode(version.metadata)

        async with self.entities.transaction():
            children = await self.entities.children_of(owner) or {}
            items = self.capture.build_items(owner, children)
            await self.versions.save_version(version, items)
        logging.info(
            f"Created version '{identifier}' of {ref.entity_type} {ref.entity_id} with {len(items)} items"
        )
        return version

    def _creator_ref(self, creator: Any) -> EntityRef:
        try:
            return self.registry.ref_of(creator)
        except TypeResolutionError as e:
            raise ValidationError(f"Creator type '{e.type_name}' is not registered") from e

    async def get_version(self, version_id: str) -> Version:
        version = await self.versions.get_version(version_id)
        if version is None:
            raise VersionNotFoundError(f"No version with id '{version_id}'")
        return version

    async def find_version(self, owner: Any, identifier: str) -> Version | None:
        ref = self._owner_ref(owner)
        return await self.versions.find_version(ref.entity_type, ref.entity_id, identifier)

    async def list_versions(self, owner: Any) -> List[Version]:
        ref = self._owner_ref(owner)
        return await self.versions.list_versions(ref.entity_type, ref.entity_id)

    async def get_items(self, version: Version | str) -> List[Item]:
        version_id = version.id if isinstance(version, Version) else version
        return await self.versions.get_items(version_id)

    async def update_metadata(self, version: Version, metadata: Mapping[str, Any]) -> Version:
        """Replaces the metadata of `version`. Nothing else about a version ever changes."""
        self.codec.encode(metadata)
        await self.versions.update_metadata(version.id, metadata)
        return version.model_copy(update={"metadata": AttributeDocument(metadata)})

    async def delete_version(self, version: Version | str):
        version_id = version.id if isinstance(version, Version) else version
        deleted = await self.versions.delete_version(version_id)
        if not deleted:
            raise VersionNotFoundError(f"No version with id '{version_id}'")

    def engine(self) -> ReconciliationEngine:
        return ReconciliationEngine(
            self.entities,
            self.registry,
            self.resolver,
            self.codec,
            deletion_policy=self.deletion_policy,
        )

    async def restore(self, version: Version) -> bool:
        """
        Makes the live owner and its children match `version`.

        Returns True once committed. On failure the live state is left exactly
        as it was and the error is re-raised.
        """
        items = await self.get_items(version)
        return await self.engine().restore(version, items)

    async def reify(self, version: Version) -> Tuple[Any | None, Dict[str, List[Any]]]:
        items = await self.get_items(version)
        return self.reifier.reify(version, items)
