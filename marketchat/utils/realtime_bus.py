import asyncio
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from marketchat.core.config import settings
from marketchat.core.logging import get_logger


logger = get_logger(__name__)

GATEWAY_CHANNEL = "marketchat:gateway"


class NoopBus:
    """Single-process mode: the gateway delivers straight to its own registry."""

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]) -> "_IdleSubscription":
        return _IdleSubscription()

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        return

    async def clear_presence(self, user_id: str) -> None:
        return

    async def is_online(self, user_id: str) -> bool:
        return False

    async def close(self) -> None:
        return


class _IdleSubscription:

    async def run(self) -> None:
        await asyncio.Future()

    async def cancel(self) -> None:
        return


class RedisBus:
    """Redis pub/sub so every gateway process sees every fan-out."""

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url, decode_responses=True)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]) -> "RedisSubscription":
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        logger.info("Subscribed to Redis channel '%s'", channel)
        return RedisSubscription(pubsub, channel, on_message)

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        await self._redis.set(f"presence:{user_id}", "online", ex=ttl_seconds)

    async def clear_presence(self, user_id: str) -> None:
        await self._redis.delete(f"presence:{user_id}")

    async def is_online(self, user_id: str) -> bool:
        ttl = await self._redis.ttl(f"presence:{user_id}")
        return bool(ttl and ttl > 0)

    async def close(self) -> None:
        await self._redis.aclose()


class RedisSubscription:

    def __init__(self, pubsub, channel: str, on_message: Callable[[str], Awaitable[None]]) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._on_message = on_message
        self._running = True

    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except RedisError as exc:
                logger.warning("Redis subscription error on '%s': %s", self._channel, exc)
                await asyncio.sleep(0.5)
                continue
            if msg and msg.get("type") == "message":
                try:
                    await self._on_message(msg["data"])
                except Exception:
                    logger.exception("Handling a message from '%s' failed", self._channel)

    async def cancel(self) -> None:
        self._running = False
        await self._pubsub.unsubscribe(self._channel)
        await self._pubsub.aclose()


_bus: Optional[NoopBus | RedisBus] = None


def get_bus() -> NoopBus | RedisBus:
    global _bus
    if _bus is not None:
        return _bus
    if settings.REDIS_URL:
        _bus = RedisBus(settings.REDIS_URL)
        logger.info("Realtime fan-out through Redis")
    else:
        _bus = NoopBus()
        logger.info("Realtime fan-out is process-local (REDIS_URL not set)")
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
    _bus = None
