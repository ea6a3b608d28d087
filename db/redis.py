"""
Redis async connection pool and the Redis-backed document store.

Documents are stored as JSON strings under environment-prefixed keys.
Every write is a read-modify-write inside an optimistic WATCH/MULTI
transaction, so field-path updates from concurrent callers are applied
as partial merges instead of whole-document overwrites. Each committed
write publishes the full document on a per-document channel, which is
what `subscribe` listens to.
"""

import asyncio
import json
import logging
import os
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional

import redis.asyncio as aioredis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError, WatchError

from db.document_store import (
    ChangeCallback,
    Document,
    DocumentStore,
    FieldPath,
    Filter,
    Unsubscribe,
    apply_field_updates,
    check_preconditions,
    deep_merge,
    matches_filters,
)
from engine.classes.errors import NotFoundError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

_redis_pool: ConnectionPool | None = None
_redis_client: aioredis.Redis | None = None

ENV_PREFIX: str = os.getenv("REDIS_ENV", "unknown_env")

_MAX_TRANSACTION_RETRIES = 10
_DELETED_SENTINEL = "null"


def get_redis_client() -> aioredis.Redis:
    """Return the shared async Redis client backed by a connection pool."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() at startup.")
    return _redis_client


def redis_key(*parts: str) -> str:
    """Build an environment-prefixed Redis key from one or more parts."""
    return f"{ENV_PREFIX}:{':'.join(parts)}"


async def init_redis(
    host: str = os.getenv("REDIS_HOST", "redis"),
    port: int = int(os.getenv("REDIS_PORT", "6379")),
    max_connections: int = 10,
) -> aioredis.Redis:
    """Call once at application startup (e.g. FastAPI lifespan)."""
    global _redis_pool, _redis_client
    _redis_pool = ConnectionPool(
        host=host,
        port=port,
        max_connections=max_connections,
        decode_responses=True,  # Documents are JSON text
    )
    _redis_client = aioredis.Redis(connection_pool=_redis_pool)
    await _redis_client.ping()  # Fail fast if Redis is unreachable at startup
    return _redis_client


async def close_redis() -> None:
    """Call at application shutdown."""
    global _redis_pool, _redis_client
    if _redis_client:
        await _redis_client.aclose()
    if _redis_pool:
        await _redis_pool.aclose()
    _redis_client = None
    _redis_pool = None


async def check_redis() -> str:
    """Ping Redis and return 'ok' or an error message string."""
    try:
        client = get_redis_client()
        await client.ping()
        return "ok"
    except Exception as e:
        return str(e)


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        logger.error("Redis %s failed: %s", operation, exc)
        raise UpstreamUnavailableError("The document store is unavailable. Please try again.") from exc


# ---------------------------------------------------------------------------
# Document store
# ---------------------------------------------------------------------------

class RedisDocumentStore(DocumentStore):
    """DocumentStore over plain Redis strings, sets and pub/sub."""

    def __init__(self, client: aioredis.Redis | None = None) -> None:
        self._client = client or get_redis_client()
        self._listeners: set[asyncio.Task] = set()

    @staticmethod
    def _doc_key(collection: str, doc_id: str) -> str:
        return redis_key("doc", collection, doc_id)

    @staticmethod
    def _index_key(collection: str) -> str:
        return redis_key("idx", collection)

    @staticmethod
    def _channel(collection: str, doc_id: str) -> str:
        return redis_key("chan", collection, doc_id)

    async def _transact(
        self,
        collection: str,
        doc_id: str,
        mutate: Callable[[Optional[Document]], Document],
    ) -> Document:
        """
        Read the current document, apply `mutate`, and commit only if no
        other writer touched the key in between. Retries on conflict.
        """
        key = self._doc_key(collection, doc_id)

        for attempt in range(1, _MAX_TRANSACTION_RETRIES + 1):
            async with self._client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    current = json.loads(raw) if raw is not None else None
                    document = mutate(current)
                    document["id"] = doc_id
                    encoded = json.dumps(document)

                    pipe.multi()
                    pipe.set(key, encoded)
                    pipe.sadd(self._index_key(collection), doc_id)
                    pipe.publish(self._channel(collection, doc_id), encoded)
                    await pipe.execute()
                    return document
                except WatchError:
                    logger.debug(
                        "Write conflict on %s (attempt %d/%d), retrying",
                        key, attempt, _MAX_TRANSACTION_RETRIES,
                    )
                    continue

        raise UpstreamUnavailableError(
            f"Could not commit write to '{collection}/{doc_id}' after {_MAX_TRANSACTION_RETRIES} attempts"
        )

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with _translate_errors("get"):
            raw = await self._client.get(self._doc_key(collection, doc_id))
        return json.loads(raw) if raw is not None else None

    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any], merge: bool = False) -> None:
        def _mutate(current: Optional[Document]) -> Document:
            if merge and current is not None:
                return deep_merge(current, data)
            return deep_merge({}, data)

        with _translate_errors("set"):
            await self._transact(collection, doc_id, _mutate)

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[FieldPath, Any],
        expected: Optional[Mapping[FieldPath, Any]] = None,
    ) -> Document:
        def _mutate(current: Optional[Document]) -> Document:
            if current is None:
                raise NotFoundError(f"No document '{doc_id}' in '{collection}'")
            # Checked against the watched read, so a retry re-checks the fresh document
            check_preconditions(current, expected)
            return apply_field_updates(current, fields)

        with _translate_errors("update"):
            return await self._transact(collection, doc_id, _mutate)

    async def delete(self, collection: str, doc_id: str) -> None:
        with _translate_errors("delete"):
            pipe = self._client.pipeline(transaction=True)
            pipe.delete(self._doc_key(collection, doc_id))
            pipe.srem(self._index_key(collection), doc_id)
            pipe.publish(self._channel(collection, doc_id), _DELETED_SENTINEL)
            await pipe.execute()

    async def query(self, collection: str, filters: Iterable[Filter] = ()) -> list[Document]:
        filters = list(filters)
        with _translate_errors("query"):
            doc_ids = sorted(await self._client.smembers(self._index_key(collection)))
            if not doc_ids:
                return []
            raws = await self._client.mget([self._doc_key(collection, doc_id) for doc_id in doc_ids])

        documents = [json.loads(raw) for raw in raws if raw is not None]
        return [document for document in documents if matches_filters(document, filters)]

    async def subscribe(self, collection: str, doc_id: str, on_change: ChangeCallback) -> Unsubscribe:
        channel = self._channel(collection, doc_id)
        pubsub = self._client.pubsub()
        with _translate_errors("subscribe"):
            await pubsub.subscribe(channel)

        task = asyncio.create_task(self._listen(pubsub, channel, on_change))
        self._listeners.add(task)
        task.add_done_callback(self._listeners.discard)

        def _unsubscribe() -> None:
            task.cancel()

        return _unsubscribe

    async def aclose(self) -> None:
        """Cancel every live subscription. The shared client is closed by close_redis()."""
        listeners = list(self._listeners)
        for task in listeners:
            task.cancel()
        await asyncio.gather(*listeners, return_exceptions=True)

    async def _listen(self, pubsub: Any, channel: str, on_change: ChangeCallback) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                payload = message["data"]
                snapshot = None if payload == _DELETED_SENTINEL else json.loads(payload)
                try:
                    on_change(snapshot)
                except Exception:
                    logger.exception("Subscriber for %s raised", channel)
        except RedisError as exc:
            logger.warning("Subscription to %s ended: %s", channel, exc)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
