from collections import deque
from typing import List

from .registry import TypeRegistry


class TypeHierarchyResolver:
    """
    Works out which entity types a type depends on through its belongs-to
    declarations. Restores use the ancestor chain to write referenced types
    before the types that reference them.
    """

    def __init__(self, registry: TypeRegistry):
        self.registry = registry

    def parent_types_of(self, type_name: str) -> List[str]:
        return list(self.registry.parents_of(type_name))

    def ancestor_chain(self, type_name: str) -> List[str]:
        """
        Returns every type `type_name` transitively belongs to, nearest first.

        The expansion is breadth-first and never queues a type twice, so
        cyclic declarations terminate. `type_name` itself is never part of
        its own chain. Each type is listed at its shortest distance, so in a
        diamond (A belongs to B and C, C belongs to B) the chain of A is
        [B, C] even though C itself depends on B.
        """
        visited = {type_name}
        to_visit = deque()
        for parent in self.parent_types_of(type_name):
            if parent not in visited:
                visited.add(parent)
                to_visit.append(parent)

        chain = []
        while to_visit:
            current = to_visit.popleft()
            chain.append(current)
            for parent in self.parent_types_of(current):
                if parent not in visited:
                    visited.add(parent)
                    to_visit.append(parent)
        return chain
