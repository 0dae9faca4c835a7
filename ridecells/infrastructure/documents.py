"""
Document store abstraction.

The presence / request core never talks to a concrete database.  It needs a
real-time document service with:

* create / merge-update / delete of JSON documents addressed by slash paths
  (``cells/{cellId}/presence/{uid}``),
* equality / ``in`` queries over one collection, or over every collection
  sharing a final segment (a *collection group*, e.g. all ``requests``),
* push subscriptions that deliver a full snapshot after every change.

Two backends implement it: :mod:`.memory_store` (process-local) and
:mod:`.redis_store` (shared, Redis Pub/Sub driven).
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional


class DocumentNotFound(Exception):
    """Raised by ``update`` when the target document does not exist."""


# ── Paths ─────────────────────────────────────────────────────────────


def split_path(path: str) -> tuple[str, str]:
    """``a/b/c/d`` -> (``a/b/c``, ``d``)."""
    collection, _, doc_id = path.rpartition("/")
    if not collection or not doc_id:
        raise ValueError(f"Not a document path: {path!r}")
    return collection, doc_id


def collection_group_of(collection_path: str) -> str:
    return collection_path.rsplit("/", 1)[-1]


# ── Query / snapshot types ────────────────────────────────────────────


@dataclass(frozen=True)
class Filter:
    field: str
    op: str  # "==" or "in"
    value: Any

    def matches(self, data: dict[str, Any]) -> bool:
        actual = data.get(self.field)
        if self.op == "==":
            return actual == self.value
        if self.op == "in":
            return actual in self.value
        raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass(frozen=True)
class Query:
    """
    Either ``collection`` (full path) or ``collection_group`` (final segment)
    must be set.
    """

    collection: Optional[str] = None
    collection_group: Optional[str] = None
    filters: tuple[Filter, ...] = ()
    order_by: Optional[str] = None
    descending: bool = False

    def __post_init__(self) -> None:
        if (self.collection is None) == (self.collection_group is None):
            raise ValueError("Query needs exactly one of collection / collection_group")

    def where(self, field_name: str, op: str, value: Any) -> "Query":
        return Query(
            collection=self.collection,
            collection_group=self.collection_group,
            filters=self.filters + (Filter(field_name, op, value),),
            order_by=self.order_by,
            descending=self.descending,
        )

    def ordered(self, field_name: str, descending: bool = False) -> "Query":
        return Query(
            collection=self.collection,
            collection_group=self.collection_group,
            filters=self.filters,
            order_by=field_name,
            descending=descending,
        )

    def covers(self, collection_path: str) -> bool:
        if self.collection is not None:
            return self.collection == collection_path
        return collection_group_of(collection_path) == self.collection_group

    def apply(self, documents: list["Document"]) -> list["Document"]:
        """Filter + sort an unordered candidate list."""
        selected = [
            d for d in documents if all(f.matches(d.data) for f in self.filters)
        ]
        if self.order_by:
            key = self.order_by
            # Missing sort keys sort first ascending, like an absent field.
            def sort_key(d: Document) -> tuple[bool, Any]:
                value = d.data.get(key)
                return (value is not None, value if value is not None else "")

            selected.sort(key=sort_key, reverse=self.descending)
        return selected


@dataclass(frozen=True)
class Document:
    path: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return split_path(self.path)[1]


SnapshotCallback = Callable[[list[Document]], None]
DocumentCallback = Callable[[Optional[Document]], None]
ErrorCallback = Callable[[Exception], None]


class Subscription(ABC):
    """Handle for one live query / document listener."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop delivery.  Synchronous and idempotent."""

    @property
    @abstractmethod
    def cancelled(self) -> bool: ...


class DocumentStore(ABC):
    def new_id(self) -> str:
        return uuid.uuid4().hex[:20]

    @abstractmethod
    async def get(self, path: str) -> Optional[Document]: ...

    @abstractmethod
    async def set(self, path: str, data: dict[str, Any]) -> None:
        """Create or fully replace a document."""

    @abstractmethod
    async def update(self, path: str, data: dict[str, Any]) -> None:
        """Merge fields into an existing document."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Remove a document; deleting a missing one is a no-op."""

    @abstractmethod
    async def query(self, query: Query) -> list[Document]: ...

    @abstractmethod
    def watch_query(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription: ...

    @abstractmethod
    def watch_document(
        self,
        path: str,
        on_snapshot: DocumentCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription: ...
