"""
Redis-backed document store.

Layout
------
* ``doc:{path}``            -- JSON body of one document
* ``col:{collectionPath}``  -- SET of document ids in that collection
* ``group:{collectionId}``  -- SET of full document paths across every
  collection sharing the final segment (collection-group queries)
* ``changes:{collectionPath}`` -- Pub/Sub channel, message = changed path

Documents carrying an ``expiresAt`` timestamp get a matching Redis EXPIREAT.
Expired ids linger in the index sets; reads skip missing bodies.

Listeners subscribe to the change channel(s) and re-run their query on every
message, so each callback carries a complete snapshot.  Writes are
last-write-wins per document; ``update`` is a read-merge-write, not atomic.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis

from ridecells.domain.entities import parse_ts

from .documents import (
    Document,
    DocumentCallback,
    DocumentNotFound,
    DocumentStore,
    ErrorCallback,
    Query,
    SnapshotCallback,
    Subscription,
    collection_group_of,
    split_path,
)

logger = logging.getLogger(__name__)


def _doc_key(path: str) -> str:
    return f"doc:{path}"


def _channel(collection_path: str) -> str:
    return f"changes:{collection_path}"


# Returned by a loader when a change message is irrelevant to the listener.
_SKIP = object()


class _PubSubListener(Subscription):
    """
    One background task per listener: subscribe, deliver the initial
    snapshot, then re-deliver on every change message.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        channels: list[str],
        patterns: list[str],
        load: Callable[[Optional[str]], Awaitable[Any]],
        deliver: Callable[[Any], None],
        on_error: Optional[ErrorCallback],
    ):
        self._client = client
        self._channels = channels
        self._patterns = patterns
        self._load = load
        self._deliver = deliver
        self._on_error = on_error
        self._cancelled = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._task.cancel()

    async def _run(self) -> None:
        pubsub = self._client.pubsub()
        try:
            if self._channels:
                await pubsub.subscribe(*self._channels)
            if self._patterns:
                await pubsub.psubscribe(*self._patterns)
            self._emit(await self._load(None))

            async for message in pubsub.listen():
                if message.get("type") not in ("message", "pmessage"):
                    continue
                snapshot = await self._load(message.get("data"))
                self._emit(snapshot)
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.warning(
                "Listener on %s failed: %s", self._channels or self._patterns, exc
            )
            if self._on_error is not None and not self._cancelled:
                self._on_error(exc)
        finally:
            await pubsub.aclose()

    def _emit(self, snapshot: Any) -> None:
        if self._cancelled or snapshot is _SKIP:
            return
        self._deliver(snapshot)


class RedisDocumentStore(DocumentStore):
    def __init__(self, client: aioredis.Redis):
        self.redis = client

    # ── Reads ─────────────────────────────────────────────────────────

    async def get(self, path: str) -> Optional[Document]:
        raw = await self.redis.get(_doc_key(path))
        if raw is None:
            return None
        return Document(path=path, data=json.loads(raw))

    async def query(self, query: Query) -> list[Document]:
        if query.collection is not None:
            ids = await self.redis.smembers(f"col:{query.collection}")
            paths = [f"{query.collection}/{doc_id}" for doc_id in ids]
        else:
            paths = list(await self.redis.smembers(f"group:{query.collection_group}"))

        if not paths:
            return []

        bodies = await self.redis.mget([_doc_key(p) for p in paths])
        documents = [
            Document(path=p, data=json.loads(body))
            for p, body in zip(paths, bodies)
            if body is not None
        ]
        return query.apply(documents)

    # ── Writes ────────────────────────────────────────────────────────

    async def set(self, path: str, data: dict[str, Any]) -> None:
        collection, doc_id = split_path(path)
        pipe = self.redis.pipeline()
        pipe.set(_doc_key(path), json.dumps(data))
        expires_at = parse_ts(data.get("expiresAt"))
        if expires_at is not None:
            pipe.expireat(_doc_key(path), expires_at)
        pipe.sadd(f"col:{collection}", doc_id)
        pipe.sadd(f"group:{collection_group_of(collection)}", path)
        pipe.publish(_channel(collection), path)
        await pipe.execute()

    async def update(self, path: str, data: dict[str, Any]) -> None:
        existing = await self.get(path)
        if existing is None:
            raise DocumentNotFound(path)
        merged = {**existing.data, **data}
        await self.set(path, merged)

    async def delete(self, path: str) -> None:
        collection, doc_id = split_path(path)
        pipe = self.redis.pipeline()
        pipe.delete(_doc_key(path))
        pipe.srem(f"col:{collection}", doc_id)
        pipe.srem(f"group:{collection_group_of(collection)}", path)
        pipe.publish(_channel(collection), path)
        await pipe.execute()

    # ── Subscriptions ─────────────────────────────────────────────────

    def watch_query(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        if query.collection is not None:
            channels, patterns = [_channel(query.collection)], []
        else:
            group = query.collection_group
            channels, patterns = [_channel(group)], [_channel(f"*/{group}")]

        async def load(_changed: Optional[str]) -> list[Document]:
            return await self.query(query)

        return _PubSubListener(
            self.redis, channels, patterns, load, on_snapshot, on_error
        )

    def watch_document(
        self,
        path: str,
        on_snapshot: DocumentCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        collection, _ = split_path(path)

        async def load(changed: Optional[str]) -> Any:
            if changed is not None and changed != path:
                return _SKIP
            return await self.get(path)

        return _PubSubListener(
            self.redis, [_channel(collection)], [], load, on_snapshot, on_error
        )
