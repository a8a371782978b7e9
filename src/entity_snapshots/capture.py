from typing import Any, List, Mapping

from .codec import AttributeCodec
from .models import ChildGroup, Item
from .registry import TypeRegistry


class CaptureBuilder:
    """Turns live entities into `Item` records. Nothing is persisted here."""

    def __init__(self, registry: TypeRegistry, codec: AttributeCodec):
        self.registry = registry
        self.codec = codec

    def build_item(self, entity: Any, group_tag: str | None = None) -> Item:
        ref = self.registry.ref_of(entity)
        return Item(
            item_type=ref.entity_type,
            item_id=ref.entity_id,
            group_tag=group_tag,
            attributes=self.codec.encode(entity.model_dump()),
        )

    def build_items(self, owner: Any, children: Mapping[str, ChildGroup]) -> List[Item]:
        """The owner's own item first, then every child record group by group."""
        items = [self.build_item(owner)]
        for group_tag, group in children.items():
            for record in group.records:
                items.append(self.build_item(record, group_tag=group_tag))
        return items
