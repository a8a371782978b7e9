from typing import Any, Dict, List, Tuple

from .codec import AttributeCodec
from .models import Item, Version
from .registry import TypeRegistry


class Reifier:
    """
    Rebuilds the entities captured in a version as read-only pydantic models.

    Reified entities describe historical state; assigning to any of their
    fields raises `pydantic.ValidationError`.
    """

    def __init__(self, registry: TypeRegistry, codec: AttributeCodec):
        self.registry = registry
        self.codec = codec

    def reify(self, version: Version, items: List[Item]) -> Tuple[Any | None, Dict[str, List[Any]]]:
        """
        Returns `(primary, children)`: the owner's own entity (or None when the
        version holds no item for it) and the grouped children in item order.

        An item whose type is no longer registered raises `TypeResolutionError`
        rather than being left out of the view.
        """
        primary = None
        children: Dict[str, List[Any]] = {}

        for item in items:
            entity = self.registry.build(
                item.item_type, self.codec.decode(item.attributes), readonly=True
            )
            if item.group_tag is not None:
                children.setdefault(item.group_tag, []).append(entity)
            elif item.is_primary_for(version):
                primary = entity

        return primary, children
