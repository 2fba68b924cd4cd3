import asyncio
import contextlib
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from admin_messaging.repositories.base import UserStore
from admin_messaging.utils.dependencies import get_user_repository, resolve_user
from admin_messaging.utils.realtime_bus import RedisBus, get_bus, user_channel
from admin_messaging.utils.security import TokenError
from admin_messaging.utils.websocket_manager import manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messaging"])

PRESENCE_TTL_SECONDS = 60


@router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, users: UserStore = Depends(get_user_repository)):
    # JWT passed as ?token=... since browsers cannot set headers on websockets
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        user = await resolve_user(token, users)
    except TokenError:
        await websocket.close(code=4401)
        return

    user_id = user["_id"]
    await manager.connect(user_id, websocket)
    bus = await get_bus()
    tasks = []
    subscriber = None
    if isinstance(bus, RedisBus):
        subscriber = await bus.subscribe(user_channel(user_id), websocket.send_text)
        tasks.append(asyncio.create_task(subscriber.run()))

        async def _presence_heartbeat():
            while True:
                try:
                    await bus.set_presence(user_id, ttl_seconds=PRESENCE_TTL_SECONDS)
                except Exception as e:
                    logger.debug("Presence heartbeat for %s failed: %s", user_id, e)
                await asyncio.sleep(PRESENCE_TTL_SECONDS / 2)

        tasks.append(asyncio.create_task(_presence_heartbeat()))

    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        logger.debug("Notification socket closed for %s", user_id)
    finally:
        manager.disconnect(user_id, websocket)
        if subscriber is not None:
            await subscriber.cancel()
        for task in tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
