"""
Multi-cell subscription fan-out.

A watcher over the 9-cell neighbourhood owns up to nine independent
listeners.  They fire in any order, at any rate, and may skip ticks, so the
aggregate is always rebuilt from the *latest snapshot of every cell*; no
callback ever applies a delta.

``CellFanout`` is the owned collection of per-cell subscriptions with a single
``close`` entry point.  It only tears listeners down when the *set* of cells
changes, so feeding it every GPS fix does not churn subscriptions.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

from ridecells.infrastructure.documents import (
    Document,
    DocumentStore,
    Query,
    Subscription,
)

logger = logging.getLogger(__name__)

CellErrorCallback = Callable[[str, Exception], None]


class CellFanout:
    def __init__(
        self,
        store: DocumentStore,
        make_query: Callable[[str], Query],
        on_change: Callable[[], None],
        on_error: Optional[CellErrorCallback] = None,
    ):
        self._store = store
        self._make_query = make_query
        self._on_change = on_change
        self._on_error = on_error
        self._cell_ids: tuple[str, ...] = ()
        self._subscriptions: dict[str, Subscription] = {}
        self._snapshots: dict[str, list[Document]] = {}
        self._closed = False

    @property
    def cell_ids(self) -> tuple[str, ...]:
        return self._cell_ids

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshots(self) -> list[tuple[str, list[Document]]]:
        """Latest snapshot per cell, in watch order; unheard cells omitted."""
        return [
            (cell_id, self._snapshots[cell_id])
            for cell_id in self._cell_ids
            if cell_id in self._snapshots
        ]

    def watch(self, cell_ids: Sequence[str]) -> bool:
        """
        Point the fan-out at *cell_ids*.  Returns True when listeners were
        (re)created, False when the cell set is unchanged.
        """
        if self._closed:
            raise RuntimeError("CellFanout is closed")
        if self._subscriptions and set(cell_ids) == set(self._cell_ids):
            return False

        self._cancel_all()
        self._cell_ids = tuple(dict.fromkeys(cell_ids))
        for cell_id in self._cell_ids:
            self._subscriptions[cell_id] = self._store.watch_query(
                self._make_query(cell_id),
                self._snapshot_handler(cell_id),
                self._error_handler(cell_id),
            )
        logger.debug("Watching %d cells", len(self._cell_ids))
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_all()

    def _cancel_all(self) -> None:
        for subscription in self._subscriptions.values():
            subscription.cancel()
        self._subscriptions.clear()
        self._snapshots.clear()

    def _snapshot_handler(self, cell_id: str) -> Callable[[list[Document]], None]:
        def handle(documents: list[Document]) -> None:
            if self._closed or cell_id not in self._subscriptions:
                return
            self._snapshots[cell_id] = documents
            self._on_change()

        return handle

    def _error_handler(self, cell_id: str) -> Callable[[Exception], None]:
        def handle(exc: Exception) -> None:
            if self._closed:
                return
            logger.warning("Error watching cell %s: %s", cell_id, exc)
            if self._on_error is not None:
                self._on_error(cell_id, exc)

        return handle
