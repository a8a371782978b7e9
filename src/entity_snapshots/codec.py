"""
Encoding of captured attributes and version metadata.

Documents are serialised to JSON with `pydantic_core` and, by default,
compressed with zlib, the same way snapshot state is compressed before it is
stored. Decoded documents are `AttributeDocument`s, whose key lookups do not
depend on how the key is spelled or typed.
"""
import zlib
from collections.abc import Mapping
from enum import Enum
from typing import Any, Dict, Iterator

import pydantic_core

from .exceptions import CodecError


def canonical_key(key: Any) -> str:
    if isinstance(key, Enum):
        key = key.value
    return str(key).casefold()


def _wrap(value: Any) -> Any:
    if isinstance(value, AttributeDocument):
        return value
    if isinstance(value, Mapping):
        return AttributeDocument(value)
    if isinstance(value, list):
        return [_wrap(v) for v in value]
    return value


def _unwrap(value: Any) -> Any:
    if isinstance(value, AttributeDocument):
        return value.to_dict()
    if isinstance(value, list):
        return [_unwrap(v) for v in value]
    return value


class AttributeDocument(Mapping):
    """
    A read-only mapping whose lookups ignore how a key is spelled or typed.

    `doc["Total"]`, `doc["total"]` and `doc[Field.TOTAL]` (for a `str` enum with
    value "total") all find the same entry. Every key is kept as it was
    originally written, so iteration and `to_dict()` give back exactly the
    dict the document was built from. When two keys differ only in case, a
    lookup by one of the exact keys finds that key's value, and any other
    spelling finds the key written last.
    """

    __slots__ = ("_data", "_index")

    def __init__(self, data: Mapping | None = None):
        self._data: Dict[str, Any] = {}
        self._index: Dict[str, str] = {}
        for key, value in (data or {}).items():
            self._index[canonical_key(key)] = key
            self._data[key] = _wrap(value)

    def _resolve(self, key: Any) -> str:
        if type(key) is str and key in self._data:
            return key
        return self._index[canonical_key(key)]

    def __getitem__(self, key: Any) -> Any:
        return self._data[self._resolve(key)]

    def __contains__(self, key: object) -> bool:
        try:
            self._resolve(key)
        except KeyError:
            return False
        return True

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"AttributeDocument({self._data!r})"

    def to_dict(self) -> Dict[str, Any]:
        return {key: _unwrap(value) for key, value in self._data.items()}


def _plain(value: Any, path: str = "$") -> Any:
    """Converts nested mappings to dicts, rejecting non-string keys on the way."""
    if isinstance(value, Mapping):
        plain = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise CodecError(f"Document keys must be strings, got {key!r} at {path}")
            plain[key] = _plain(item, f"{path}.{key}")
        return plain
    if isinstance(value, (list, tuple)):
        return [_plain(item, f"{path}[{i}]") for i, item in enumerate(value)]
    return value


class AttributeCodec:
    """Lossless encode/decode between documents and stored bytes."""

    def __init__(self, compress: bool = True):
        self.compress = compress

    def encode(self, document: Mapping) -> bytes:
        if not isinstance(document, Mapping):
            raise CodecError(f"Expected a mapping, got {type(document).__name__}")
        try:
            raw = pydantic_core.to_json(_plain(document))
        except pydantic_core.PydanticSerializationError as e:
            raise CodecError(f"Document is not serialisable: {e}") from e
        return zlib.compress(raw) if self.compress else raw

    def decode(self, data: bytes) -> AttributeDocument:
        if data is None:
            raise CodecError("Cannot decode a missing document")
        try:
            raw = zlib.decompress(data)
        except zlib.error:
            # Stored without compression.
            raw = data
        try:
            document = pydantic_core.from_json(raw)
        except ValueError as e:
            raise CodecError(f"Malformed document: {e}") from e
        if not isinstance(document, dict):
            raise CodecError(f"Expected a JSON object, got {type(document).__name__}")
        return AttributeDocument(document)
