"""
Document store abstraction used by every engine.

Documents are JSON-compatible dicts addressed by (collection, id). Writes
that touch part of a document (field-path updates, merge sets, array
unions) are applied as true partial merges so concurrent writers to
different fields never clobber each other.

Two backends share the merge logic in this module:
    - InMemoryDocumentStore: in-process, used for local development and tests.
    - RedisDocumentStore (db.redis): optimistic WATCH/MULTI transactions.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Mapping, Optional

from engine.classes.errors import InvalidInputError, NotFoundError

logger = logging.getLogger(__name__)

FieldPath = str | tuple[str, ...]
# (field path, operator, value); operators: "==", "array_contains"
Filter = tuple[FieldPath, str, Any]
Document = dict[str, Any]
ChangeCallback = Callable[[Optional[Document]], Any]
Unsubscribe = Callable[[], None]

_SUPPORTED_OPERATORS = ("==", "array_contains")


class ArrayUnion:
    """
    Update value that appends items not already present in a list field.

    With `key`, map items are matched on that field alone (e.g. "id"), so
    two payloads for the same movie never both land. Membership is judged
    against the stored list at write time, inside the store's atomic
    read-modify-write.
    """

    __slots__ = ("items", "key")

    def __init__(self, items: Iterable[Any], key: Optional[str] = None):
        self.items = tuple(items)
        self.key = key

    def identity(self, item: Any) -> Any:
        if self.key is not None and isinstance(item, Mapping):
            return ("key", item.get(self.key))
        return ("item", item)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ArrayUnion) and (self.items, self.key) == (other.items, other.key)

    def __repr__(self) -> str:
        if self.key is None:
            return f"ArrayUnion({list(self.items)!r})"
        return f"ArrayUnion({list(self.items)!r}, key={self.key!r})"


class PreconditionFailedError(InvalidInputError):
    """A conditional write found the stored document no longer in the expected state."""

    code = "PRECONDITION_FAILED"


# ===============================
#       MERGE PRIMITIVES
# ===============================

def split_field_path(path: FieldPath) -> tuple[str, ...]:
    """
    Turn a field path into its segments.

    Dotted strings are split on "."; tuples are taken as-is so segments
    holding user-supplied ids never need escaping.
    """
    segments = tuple(path.split(".")) if isinstance(path, str) else tuple(str(p) for p in path)
    if not segments or any(segment == "" for segment in segments):
        raise InvalidInputError(f"Invalid field path: {path!r}")
    return segments


def _apply_value(current: Any, value: Any) -> Any:
    if isinstance(value, ArrayUnion):
        existing = list(current) if isinstance(current, list) else []
        seen = [value.identity(item) for item in existing]
        for item in value.items:
            identity = value.identity(item)
            if identity not in seen:
                seen.append(identity)
                existing.append(copy.deepcopy(item))
        return existing
    return copy.deepcopy(value)


def check_preconditions(
    document: Mapping[str, Any],
    expected: Optional[Mapping[FieldPath, Any]],
) -> None:
    """Raise PreconditionFailedError unless every expected field holds its value."""
    for path, value in (expected or {}).items():
        current = get_field(document, path)
        if current != value:
            raise PreconditionFailedError(
                "The document changed before this write could be applied.",
                details={"field": ".".join(split_field_path(path)), "expected": value, "actual": current},
            )


def apply_field_updates(document: Document, fields: Mapping[FieldPath, Any]) -> Document:
    """
    Apply field-path updates to `document` in place and return it.

    Intermediate maps are created as needed; a non-map intermediate is
    replaced by a map, matching how hosted document databases behave.
    """
    for path, value in fields.items():
        segments = split_field_path(path)
        target = document
        for segment in segments[:-1]:
            child = target.get(segment)
            if not isinstance(child, dict):
                child = {}
                target[segment] = child
            target = child
        leaf = segments[-1]
        target[leaf] = _apply_value(target.get(leaf), value)
    return document


def deep_merge(base: Document, incoming: Mapping[str, Any]) -> Document:
    """Recursively merge `incoming` into `base` in place (maps merge, everything else replaces)."""
    for key, value in incoming.items():
        if isinstance(value, Mapping):
            if not isinstance(base.get(key), dict):
                base[key] = {}
            deep_merge(base[key], value)
        else:
            base[key] = _apply_value(base.get(key), value)
    return base


def get_field(document: Mapping[str, Any], path: FieldPath) -> Any:
    target: Any = document
    for segment in split_field_path(path):
        if not isinstance(target, Mapping) or segment not in target:
            return None
        target = target[segment]
    return target


def matches_filters(document: Mapping[str, Any], filters: Iterable[Filter]) -> bool:
    for path, operator, value in filters:
        current = get_field(document, path)
        if operator == "==":
            if current != value:
                return False
        elif operator == "array_contains":
            if not isinstance(current, list) or value not in current:
                return False
        else:
            raise InvalidInputError(
                f"Unsupported filter operator {operator!r}; expected one of {_SUPPORTED_OPERATORS}"
            )
    return True


def _with_id(doc_id: str, data: Mapping[str, Any]) -> Document:
    document = deep_merge({}, data)
    document["id"] = doc_id
    return document


# ===============================
#          INTERFACE
# ===============================

class DocumentStore(ABC):
    """Async document store with partial-merge write semantics."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return the document (including its `id`) or None if absent."""

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any], merge: bool = False) -> None:
        """Create or replace a document; `merge=True` deep-merges into an existing one."""

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[FieldPath, Any],
        expected: Optional[Mapping[FieldPath, Any]] = None,
    ) -> Document:
        """
        Apply field-path updates to an existing document and return the result.

        `expected` makes the write conditional: each field path must hold
        the given value in the stored document, checked atomically with
        the write, or PreconditionFailedError is raised and nothing changes.
        """

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document. Deleting an absent document is a no-op."""

    @abstractmethod
    async def query(self, collection: str, filters: Iterable[Filter] = ()) -> list[Document]:
        """Return every document in the collection matching all filters."""

    @abstractmethod
    async def subscribe(self, collection: str, doc_id: str, on_change: ChangeCallback) -> Unsubscribe:
        """
        Call `on_change` with the full document after every write to it
        (None once deleted). Returns a callable that stops delivery.
        """

    async def aclose(self) -> None:
        """Release backend resources (live subscriptions and the like)."""


# ===============================
#       IN-MEMORY BACKEND
# ===============================

class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store. A single lock serializes writes so every
    read-modify-write is atomic, the same guarantee the Redis backend gets
    from WATCH/MULTI.
    """

    def __init__(self) -> None:
        self._documents: dict[tuple[str, str], Document] = {}
        self._subscribers: dict[tuple[str, str], list[ChangeCallback]] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        document = self._documents.get((collection, doc_id))
        return copy.deepcopy(document) if document is not None else None

    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any], merge: bool = False) -> None:
        async with self._lock:
            key = (collection, doc_id)
            existing = self._documents.get(key)
            if merge and existing is not None:
                document = deep_merge(copy.deepcopy(existing), data)
                document["id"] = doc_id
            else:
                document = _with_id(doc_id, data)
            self._documents[key] = document
        self._notify(key)

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[FieldPath, Any],
        expected: Optional[Mapping[FieldPath, Any]] = None,
    ) -> Document:
        async with self._lock:
            key = (collection, doc_id)
            existing = self._documents.get(key)
            if existing is None:
                raise NotFoundError(f"No document '{doc_id}' in '{collection}'")
            check_preconditions(existing, expected)
            document = apply_field_updates(copy.deepcopy(existing), fields)
            document["id"] = doc_id
            self._documents[key] = document
        self._notify(key)
        return copy.deepcopy(document)

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._lock:
            removed = self._documents.pop((collection, doc_id), None)
        if removed is not None:
            self._notify((collection, doc_id))

    async def query(self, collection: str, filters: Iterable[Filter] = ()) -> list[Document]:
        filters = list(filters)
        return [
            copy.deepcopy(document)
            for (doc_collection, _), document in self._documents.items()
            if doc_collection == collection and matches_filters(document, filters)
        ]

    async def subscribe(self, collection: str, doc_id: str, on_change: ChangeCallback) -> Unsubscribe:
        key = (collection, doc_id)
        self._subscribers.setdefault(key, []).append(on_change)

        def _unsubscribe() -> None:
            callbacks = self._subscribers.get(key, [])
            if on_change in callbacks:
                callbacks.remove(on_change)

        return _unsubscribe

    def _notify(self, key: tuple[str, str]) -> None:
        snapshot = self._documents.get(key)
        for callback in list(self._subscribers.get(key, [])):
            try:
                callback(copy.deepcopy(snapshot) if snapshot is not None else None)
            except Exception:
                logger.exception("Subscriber for %s/%s raised", *key)
