"""
An explicit registry of entity types.

Stored items only carry a type tag. The registry maps that tag back to a
pydantic model class and records, for each type, its identity field, the
types it belongs to and how to find its snapshot children. Declaring these up
front replaces any runtime introspection of relationships, and `validate()`
lets a missing declaration fail at startup instead of in the middle of a
restore.
"""
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Type, Union

from pydantic import BaseModel

from .exceptions import TypeResolutionError, ValidationError
from .models import EntityRef

ChildrenHook = Callable[[Any, Any], Awaitable[Dict[str, Any]]]
TypeSpec = Union[str, Type[BaseModel]]


@dataclass
class RegisteredType:
    name: str
    model: Type[BaseModel]
    identity: str = "id"
    parents: Tuple[str, ...] = ()
    children: Optional[ChildrenHook] = None
    readonly_model: Optional[Type[BaseModel]] = field(default=None, repr=False)


def _readonly_variant(model: Type[BaseModel]) -> Type[BaseModel]:
    """Builds a frozen subclass of `model`; assigning to its fields raises."""
    namespace = {
        "__module__": model.__module__,
        "__qualname__": f"ReadOnly{model.__qualname__}",
        "model_config": {**model.model_config, "frozen": True},
        "__readonly__": True,
    }
    return type(f"ReadOnly{model.__name__}", (model,), namespace)


def is_readonly(entity: Any) -> bool:
    return getattr(type(entity), "__readonly__", False)


class TypeRegistry:
    def __init__(self):
        self._types: Dict[str, RegisteredType] = {}
        self._names: Dict[type, str] = {}

    def register(
        self,
        model: Type[BaseModel] | None = None,
        *,
        name: str | None = None,
        identity: str = "id",
        belongs_to: Iterable[TypeSpec] = (),
        children: ChildrenHook | None = None,
    ):
        """
        Registers `model` under `name` (the class name by default).

        Can also be used as a decorator, with or without arguments.
        """
        if model is None:
            return lambda m: self.register(
                m, name=name, identity=identity, belongs_to=belongs_to, children=children
            )

        if not (isinstance(model, type) and issubclass(model, BaseModel)):
            raise TypeError("Only pydantic models can be registered as entity types")
        if identity not in model.model_fields:
            raise TypeError(f"{model.__name__} has no identity field '{identity}'")

        type_name = name or model.__name__
        if type_name in self._types and self._types[type_name].model is not model:
            raise ValueError(f"Entity type '{type_name}' is already registered")

        parents = tuple(self._spec_name(p) for p in belongs_to)
        self._types[type_name] = RegisteredType(
            name=type_name,
            model=model,
            identity=identity,
            parents=parents,
            children=children,
        )
        self._names[model] = type_name
        return model

    def _spec_name(self, spec: TypeSpec) -> str:
        if isinstance(spec, str):
            return spec
        return self._names.get(spec, spec.__name__)

    def validate(self):
        """Checks that every declared parent type has itself been registered."""
        missing = sorted(
            {p for t in self._types.values() for p in t.parents if p not in self._types}
        )
        if missing:
            raise TypeResolutionError(
                missing[0],
                f"Declared parent types are not registered: {', '.join(missing)}",
            )

    def __contains__(self, type_name: str) -> bool:
        return type_name in self._types

    @property
    def type_names(self) -> List[str]:
        return list(self._types)

    def resolve(self, type_name: str) -> RegisteredType:
        try:
            return self._types[type_name]
        except KeyError:
            raise TypeResolutionError(type_name) from None

    def type_name_of(self, entity_or_class: Any) -> str:
        cls = entity_or_class if isinstance(entity_or_class, type) else type(entity_or_class)
        for klass in cls.__mro__:
            if klass in self._names:
                return self._names[klass]
        raise TypeResolutionError(cls.__name__)

    def identity_of(self, entity: Any) -> str:
        registered = self.resolve(self.type_name_of(entity))
        value = getattr(entity, registered.identity, None)
        if value is None:
            raise ValidationError(
                f"{registered.name} has no value for its identity field '{registered.identity}'"
            )
        return str(value)

    def ref_of(self, entity: Any) -> EntityRef:
        return EntityRef(entity_type=self.type_name_of(entity), entity_id=self.identity_of(entity))

    def model_for(self, type_name: str) -> Type[BaseModel]:
        return self.resolve(type_name).model

    def readonly_model(self, type_name: str) -> Type[BaseModel]:
        registered = self.resolve(type_name)
        if registered.readonly_model is None:
            registered.readonly_model = _readonly_variant(registered.model)
            self._names.setdefault(registered.readonly_model, type_name)
        return registered.readonly_model

    def parents_of(self, type_name: str) -> Tuple[str, ...]:
        return self.resolve(type_name).parents

    def children_hook(self, type_name: str) -> ChildrenHook | None:
        return self.resolve(type_name).children

    def build(self, type_name: str, attributes: Mapping, readonly: bool = False) -> BaseModel:
        model = self.readonly_model(type_name) if readonly else self.model_for(type_name)
        if hasattr(attributes, "to_dict"):
            attributes = attributes.to_dict()
        return model.model_validate(attributes)
