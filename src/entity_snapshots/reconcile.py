"""
The restore algorithm.

A restore makes the live entities match a version: live children the version
does not contain are removed first, then every captured item is upserted,
type by type, each type after its ancestor chain walked from the most distant
ancestor inwards. For tree-shaped belongs-to declarations a type is never
written before the types it belongs to. Diamonds are the exception: if A
belongs to B and C, and C also belongs to B, the breadth-first chain of A is
[B, C], so when A is reached first C is written before B. Stores that check
references on every statement need such constraints deferred to commit.

Everything happens inside one `EntityStore.transaction()`; if any step fails
nothing of the restore survives.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Set, Tuple

from .codec import AttributeCodec
from .exceptions import CodecError, ReconciliationError, TypeResolutionError
from .hierarchy import TypeHierarchyResolver
from .models import DeletionStrategy, Item, LiveChildSet, Version
from .protocols import EntityStore
from .registry import TypeRegistry


class RestoreState(str, Enum):
    PENDING = "pending"
    RECONCILING = "reconciling"
    COMMITTED = "committed"
    ABORTED = "aborted"


class ReconciliationEngine:
    def __init__(
        self,
        entities: EntityStore,
        registry: TypeRegistry,
        resolver: TypeHierarchyResolver,
        codec: AttributeCodec,
        deletion_policy: DeletionStrategy | None = None,
    ):
        self.entities = entities
        self.registry = registry
        self.resolver = resolver
        self.codec = codec
        # Applied to stale children of groups that do not bring their own strategy.
        self.deletion_policy = deletion_policy or self.hard_delete
        self.state = RestoreState.PENDING

    async def hard_delete(self, record: Any):
        ref = self.registry.ref_of(record)
        await self.entities.delete_entity(ref.entity_type, ref.entity_id)

    async def restore(self, version: Version, items: List[Item]) -> bool:
        self.state = RestoreState.RECONCILING
        try:
            async with self.entities.transaction():
                live_children = await self._live_children(version)
                await self._delete_stale_children(items, live_children)
                await self._restore_items(items)
        except Exception:
            self.state = RestoreState.ABORTED
            raise
        self.state = RestoreState.COMMITTED
        logging.info(
            f"Restored version '{version.identifier}' of {version.owner_type} {version.owner_id} "
            f"({len(items)} items)"
        )
        return True

    async def _live_children(self, version: Version) -> LiveChildSet:
        owner = await self.entities.get_entity(version.owner_type, version.owner_id)
        if owner is None:
            logging.warning(
                f"Owner {version.owner_type} {version.owner_id} does not exist; "
                f"restoring version '{version.identifier}' without pruning children"
            )
            return {}
        return await self.entities.children_of(owner) or {}

    async def _delete_stale_children(self, items: List[Item], live_children: LiveChildSet):
        """Runs before any upsert so constructive steps see the pruned state."""
        if not live_children:
            return

        keep: Set[Tuple[str, str]] = {item.key for item in items}

        for group_tag, group in live_children.items():
            delete = group.deletion_strategy or self.deletion_policy
            for record in group.records:
                ref = self.registry.ref_of(record)
                if ref.key in keep:
                    continue
                logging.debug(f"Removing {ref.entity_type} {ref.entity_id} from group '{group_tag}'")
                try:
                    await delete(record)
                except (TypeResolutionError, CodecError, ReconciliationError):
                    raise
                except Exception as e:
                    raise ReconciliationError(
                        ref.entity_type, ref.entity_id, f"deletion failed: {e}"
                    ) from e

    async def _restore_items(self, items: List[Item]):
        by_type: Dict[str, List[Item]] = {}
        for item in items:
            by_type.setdefault(item.item_type, []).append(item)

        restored_types: Set[str] = set()
        for item_type in list(by_type):
            if item_type in restored_types:
                continue
            # Most distant ancestor first, `item_type` itself last.
            lineage = [item_type] + self.resolver.ancestor_chain(item_type)
            for target_type in reversed(lineage):
                if target_type in restored_types:
                    continue
                restored_types.add(target_type)
                for item in by_type.get(target_type, ()):
                    await self.restore_item(item)

    async def restore_item(self, item: Item):
        attributes = self.codec.decode(item.attributes)
        logging.debug(f"Upserting {item.item_type} {item.item_id}")
        try:
            await self.entities.upsert_entity(item.item_type, item.item_id, attributes)
        except (TypeResolutionError, CodecError, ReconciliationError):
            raise
        except Exception as e:
            raise ReconciliationError(item.item_type, item.item_id, f"restore failed: {e}") from e
