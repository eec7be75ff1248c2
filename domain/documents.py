"""Document types known to the stores.

Each type registers how to turn an instance into stored JSON and back, and
one accessor per queryable field. Accessors are looked up by lowercase field
name, which is how the query evaluator reads documents without inspecting
them at runtime. Plain dicts are always accepted and read by key.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Mapping, TypeAlias, TypeVar

from domain.errors import ErrorKind, StoreError
from domain.query import MISSING


D = TypeVar("D")

Json: TypeAlias = dict[str, Any]


@dataclass(frozen=True)
class DocumentType(Generic[D]):
    tag: str
    cls: type[D]
    encode: Callable[[D], Json]
    decode: Callable[[Json], D]
    fields: Mapping[str, Callable[[D], Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        lowered = {name.lower(): fn for name, fn in self.fields.items()}
        object.__setattr__(self, "fields", lowered)


class DocumentRegistry:
    """Document types by class and by type tag."""

    def __init__(self, *types: DocumentType[Any]) -> None:
        self._by_cls: dict[type, DocumentType[Any]] = {}
        self._by_tag: dict[str, DocumentType[Any]] = {}
        for doc_type in types:
            self.register(doc_type)

    def register(self, doc_type: DocumentType[Any]) -> None:
        if doc_type.cls in self._by_cls or doc_type.tag in self._by_tag:
            raise ValueError(f"Document type {doc_type.tag!r} already registered.")
        self._by_cls[doc_type.cls] = doc_type
        self._by_tag[doc_type.tag] = doc_type

    def type_of(self, doc: Any) -> DocumentType[Any] | None:
        return self._by_cls.get(type(doc))

    def encode(self, doc: Any) -> Json:
        if isinstance(doc, dict):
            return _copy_json(doc)
        doc_type = self.type_of(doc)
        if doc_type is None:
            raise TypeError(f"Unregistered document type: {type(doc).__name__}")
        return doc_type.encode(doc)

    def decode(self, data: Json) -> Any:
        """Rebuild a document from JSON.

        Dicts with an unknown `type`, or that do not decode as their type,
        stay dicts.
        """
        doc_type = self._by_tag.get(data.get("type", ""))
        if doc_type is None:
            return _copy_json(data)
        try:
            return doc_type.decode(data)
        except (KeyError, TypeError, ValueError):
            return _copy_json(data)

    def copy(self, doc: D) -> D:
        if isinstance(doc, dict):
            return _copy_json(doc)
        doc_type = self.type_of(doc)
        if doc_type is None:
            raise TypeError(f"Unregistered document type: {type(doc).__name__}")
        return doc_type.decode(doc_type.encode(doc))

    def id_of(self, doc: Any) -> str:
        value = self.lookup(doc, "id")
        if value is MISSING or value is None or value == "":
            raise StoreError(ErrorKind.PERMANENT, "Documents need a non-empty id.")
        return str(value)

    def lookup(self, doc: Any, name: str) -> Any:
        name = name.lower()
        if isinstance(doc, dict):
            for key, value in doc.items():
                if key.lower() == name:
                    return value
            return MISSING
        doc_type = self.type_of(doc)
        if doc_type is None:
            return MISSING
        accessor = doc_type.fields.get(name)
        return MISSING if accessor is None else accessor(doc)


def _copy_json(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _copy_json(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_copy_json(v) for v in value]
    return value
