"""
This module defines the core data models for the snapshot system using Pydantic.
These models serve as the data transfer objects (DTOs) passed between the
capture, restore and reification logic and the storage adaptors.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .codec import AttributeDocument

DeletionStrategy = Callable[[Any], Awaitable[None]]


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EntityRef(BaseModel):
    """A (type, identity) pair. Identities are kept as strings so keys compare by equality."""

    model_config = ConfigDict(frozen=True)

    entity_type: str
    entity_id: str

    @field_validator("entity_id", mode="before")
    @classmethod
    def _stringify_id(cls, value):
        return value if value is None else str(value)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.entity_type, self.entity_id)


class Version(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=_new_id)
    owner_type: str
    owner_id: str
    identifier: str
    metadata: AttributeDocument = Field(default_factory=AttributeDocument)
    creator: Optional[EntityRef] = None
    created_at: datetime = Field(default_factory=_now)

    @field_validator("owner_id", mode="before")
    @classmethod
    def _stringify_owner_id(cls, value):
        return value if value is None else str(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _wrap_metadata(cls, value):
        if value is None:
            return AttributeDocument()
        if isinstance(value, AttributeDocument):
            return value
        return AttributeDocument(value)

    @property
    def owner(self) -> EntityRef:
        return EntityRef(entity_type=self.owner_type, entity_id=self.owner_id)


class Item(BaseModel):
    id: str = Field(default_factory=_new_id)
    version_id: Optional[str] = None
    item_type: str
    item_id: str
    group_tag: Optional[str] = None
    attributes: bytes  # Encoded attribute document
    created_at: datetime = Field(default_factory=_now)

    @field_validator("item_id", mode="before")
    @classmethod
    def _stringify_item_id(cls, value):
        return value if value is None else str(value)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.item_type, self.item_id)

    def is_primary_for(self, version: Version) -> bool:
        return self.group_tag is None and self.key == version.owner.key


class ChildGroup(BaseModel):
    """
    The live children of an owner for one group tag, and how to remove the
    ones a restore no longer wants. A missing strategy means the store's
    default deletion policy applies.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    records: List[Any] = Field(default_factory=list)
    deletion_strategy: Optional[DeletionStrategy] = None


LiveChildSet = Dict[str, ChildGroup]
