import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import redis.asyncio as redis

from admin_messaging.config import get_settings
from admin_messaging.utils.websocket_manager import manager

logger = logging.getLogger(__name__)


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def encode_event(event_type: str, payload: Dict[str, Any]) -> str:
    return json.dumps({"type": event_type, **payload}, default=_default)


class NoopBus:

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def publish_to_users(self, user_ids: Iterable[str], event_type: str, payload: Dict[str, Any]) -> None:
        return

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]):
        class _Sub:
            async def run(self):
                await asyncio.Future()

            async def cancel(self):
                return

        return _Sub()

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        return


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def publish_to_users(self, user_ids: Iterable[str], event_type: str, payload: Dict[str, Any]) -> None:
        message = encode_event(event_type, payload)
        for user_id in user_ids:
            await self.publish(user_channel(user_id), message)

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                        if msg and msg.get("type") == "message":
                            data = msg.get("data")
                            if isinstance(data, bytes):
                                data = data.decode("utf-8")
                            await on_message(data)
                    except redis.RedisError as e:
                        logger.warning("Subscription to %s interrupted: %s", channel, e)
                        await asyncio.sleep(0.5)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                except redis.RedisError:
                    logger.debug("Unsubscribe from %s failed", channel)

        return _Sub()

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        await self._redis.set(f"presence:{user_id}", "online", ex=ttl_seconds)


class LocalBus(NoopBus):
    """Delivers events to in-process websocket connections when Redis is not configured."""

    enabled = True

    def __init__(self, manager) -> None:
        self._manager = manager

    async def publish(self, channel: str, message: str) -> None:
        user_id = channel.split(":", 1)[1] if channel.startswith("user:") else channel
        if not self._manager.is_connected(user_id):
            logger.debug("No open socket for %s; event dropped", user_id)
            return
        await self._manager.send_personal_message(user_id, message)

    async def publish_to_users(self, user_ids: Iterable[str], event_type: str, payload: Dict[str, Any]) -> None:
        message = encode_event(event_type, payload)
        for user_id in user_ids:
            await self.publish(user_channel(user_id), message)


_bus: Optional[Any] = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().redis_url
    if not url:
        _bus = LocalBus(manager)
        return _bus
    _bus = RedisBus(url)
    return _bus


async def publish_safely(bus, user_ids: Iterable[str], event_type: str, payload: Dict[str, Any]) -> None:
    """Realtime fan-out is best effort; a broken bus never fails the request that triggered it."""
    try:
        await bus.publish_to_users(list(user_ids), event_type, payload)
    except Exception as e:
        logger.warning("Realtime publish of %s failed: %s", event_type, e)
