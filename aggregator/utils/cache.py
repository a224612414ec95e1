"""Redis-backed JSON cache with TTL plus a pub/sub transport."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Callable, Optional

import redis.asyncio as redis  # type: ignore
from redis.exceptions import RedisError  # type: ignore

from aggregator.errors import CacheError

logger = logging.getLogger("token_aggregator.cache")

CACHE_TTL_SECONDS = 30

MessageHandler = Callable[[str], Any]


class Subscription:
    """Handle for one channel listener; ``close()`` stops delivery."""

    def __init__(self, channel: str, pubsub: Any, task: asyncio.Task):
        self.channel = channel
        self._pubsub = pubsub
        self._task = task
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._task.done()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except RedisError as e:
            logger.warning("⚠️ pubsub close failed | channel=%s | err=%s", self.channel, e)


class CacheStore:
    """
    Key/value JSON cache and pub/sub over Redis.

    Uses two connections: one for get/set/publish and one dedicated to
    subscriptions, since a subscribed Redis connection cannot issue other commands.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        default_ttl: int = CACHE_TTL_SECONDS,
        client: Any = None,
        subscriber: Any = None,
    ):
        self.url = url
        self.default_ttl = default_ttl
        self._client = client
        self._subscriber = subscriber
        self._subscriptions: list[Subscription] = []

    async def connect(self) -> "CacheStore":
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        if self._subscriber is None:
            self._subscriber = redis.from_url(self.url, decode_responses=True)
        logger.info("✅ cache connected | url=%s", self.url)
        return self

    async def close(self) -> None:
        for sub in list(self._subscriptions):
            await sub.close()
        self._subscriptions.clear()

        for conn in (self._subscriber, self._client):
            if conn is None:
                continue
            try:
                await conn.aclose()
            except RedisError as e:
                logger.warning("⚠️ cache close failed | err=%s", e)
        self._client = None
        self._subscriber = None
        logger.info("🛑 cache closed")

    async def __aenter__(self) -> "CacheStore":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _require(self, conn: Any) -> Any:
        if conn is None:
            raise CacheError("Cache store is not connected")
        return conn

    async def ping(self) -> bool:
        try:
            return bool(await self._require(self._client).ping())
        except RedisError as e:
            raise CacheError(f"Cache ping failed: {e}") from e

    async def get_json(self, key: str) -> Any | None:
        try:
            raw = await self._require(self._client).get(key)
        except RedisError as e:
            raise CacheError(f"Cache get failed for {key}: {e}") from e

        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise CacheError(f"Cached value for {key} is not valid JSON") from e

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Overwrite ``key`` with ``value`` serialized as JSON; always sets an expiry."""
        ttl = self.default_ttl if ttl is None else int(ttl)
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        try:
            await self._require(self._client).set(key, json.dumps(value), ex=ttl)
        except RedisError as e:
            raise CacheError(f"Cache set failed for {key}: {e}") from e

    async def publish(self, channel: str, payload: Any) -> int:
        message = payload if isinstance(payload, str) else json.dumps(payload)
        try:
            return int(await self._require(self._client).publish(channel, message))
        except RedisError as e:
            raise CacheError(f"Publish failed on {channel}: {e}") from e

    async def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        pubsub = self._require(self._subscriber).pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError as e:
            raise CacheError(f"Subscribe failed on {channel}: {e}") from e

        task = asyncio.create_task(_listen(channel, pubsub, handler), name=f"subscribe:{channel}")
        sub = Subscription(channel, pubsub, task)
        self._subscriptions.append(sub)
        logger.info("✅ subscribed | channel=%s", channel)
        return sub


async def _listen(channel: str, pubsub: Any, handler: MessageHandler) -> None:
    try:
        async for message in pubsub.listen():
            source = message.get("channel")
            if isinstance(source, bytes):
                source = source.decode()
            if message.get("type") != "message" or source != channel:
                continue
            data = message.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8", errors="replace")
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("❌ subscription handler error | channel=%s", channel)
    except asyncio.CancelledError:
        raise
    except RedisError:
        logger.exception("❌ subscription listener stopped | channel=%s", channel)
