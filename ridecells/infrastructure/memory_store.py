"""
Process-local document store.

Snapshots are pushed with ``loop.call_soon`` so delivery is asynchronous, as
with a remote service: a caller never sees its own listener fire re-entrantly
inside ``set`` / ``update``.  Each delivery reads the *current* state, so a
burst of writes may collapse into identical snapshots but never into a stale
one.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Callable, Optional

from .documents import (
    Document,
    DocumentCallback,
    DocumentNotFound,
    DocumentStore,
    ErrorCallback,
    Query,
    SnapshotCallback,
    Subscription,
    split_path,
)

logger = logging.getLogger(__name__)


class _Listener(Subscription):
    def __init__(
        self,
        store: "InMemoryDocumentStore",
        matches: Callable[[str], bool],
        deliver: Callable[[], None],
        on_error: Optional[ErrorCallback],
    ):
        self._store = store
        self._matches = matches
        self._deliver = deliver
        self._on_error = on_error
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._store._listeners.discard(self)

    def wants(self, path: str) -> bool:
        return self._matches(path)

    def schedule(self) -> None:
        asyncio.get_running_loop().call_soon(self._fire)

    def fail(self, exc: Exception) -> None:
        if self._on_error is not None:
            asyncio.get_running_loop().call_soon(self._fire_error, exc)

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._deliver()

    def _fire_error(self, exc: Exception) -> None:
        if self._cancelled or self._on_error is None:
            return
        self._on_error(exc)


class InMemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        self._docs: dict[str, dict[str, Any]] = {}
        self._listeners: set[_Listener] = set()

    # ── Reads ─────────────────────────────────────────────────────────

    async def get(self, path: str) -> Optional[Document]:
        return self._snapshot_document(path)

    async def query(self, query: Query) -> list[Document]:
        return self._run(query)

    def _snapshot_document(self, path: str) -> Optional[Document]:
        data = self._docs.get(path)
        if data is None:
            return None
        return Document(path=path, data=copy.deepcopy(data))

    def _run(self, query: Query) -> list[Document]:
        candidates = [
            Document(path=p, data=copy.deepcopy(d))
            for p, d in self._docs.items()
            if query.covers(split_path(p)[0])
        ]
        return query.apply(candidates)

    # ── Writes ────────────────────────────────────────────────────────

    async def set(self, path: str, data: dict[str, Any]) -> None:
        split_path(path)
        self._docs[path] = copy.deepcopy(data)
        self._notify(path)

    async def update(self, path: str, data: dict[str, Any]) -> None:
        existing = self._docs.get(path)
        if existing is None:
            raise DocumentNotFound(path)
        existing.update(copy.deepcopy(data))
        self._notify(path)

    async def delete(self, path: str) -> None:
        if self._docs.pop(path, None) is not None:
            self._notify(path)

    def _notify(self, path: str) -> None:
        for listener in list(self._listeners):
            if listener.wants(path):
                listener.schedule()

    # ── Subscriptions ─────────────────────────────────────────────────

    def watch_query(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        listener = _Listener(
            self,
            matches=lambda path: query.covers(split_path(path)[0]),
            deliver=lambda: on_snapshot(self._run(query)),
            on_error=on_error,
        )
        self._listeners.add(listener)
        listener.schedule()
        return listener

    def watch_document(
        self,
        path: str,
        on_snapshot: DocumentCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        listener = _Listener(
            self,
            matches=lambda changed: changed == path,
            deliver=lambda: on_snapshot(self._snapshot_document(path)),
            on_error=on_error,
        )
        self._listeners.add(listener)
        listener.schedule()
        return listener

    # ── Test / demo helpers ───────────────────────────────────────────

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit_error(self, collection_path: str, exc: Exception) -> None:
        """Deliver a read error to every listener on *collection_path*."""
        sample_path = f"{collection_path}/_"
        for listener in list(self._listeners):
            if listener.wants(sample_path):
                logger.debug("Injecting error into listener on %s", collection_path)
                listener.fail(exc)
