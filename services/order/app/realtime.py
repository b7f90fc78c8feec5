"""
Order Service — リアルタイム配信 (WebSocket)

接続中のセッションを、そのユーザーの Redis Pub/Sub チャネル
(user:<role>_<uid>) に購読させ、届いたメッセージをそのまま転送する。

Pub/Sub は fire-and-forget。切断中に publish された通知は失われるので、
クライアントは再接続時に一覧 API で状態を取り直す。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from fastapi import WebSocket, WebSocketDisconnect

from .notifications import user_channel

logger = logging.getLogger(__name__)


async def _forward(pubsub, websocket: WebSocket, closed: asyncio.Event) -> None:
    while not closed.is_set():
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
        if message and message["type"] == "message":
            await websocket.send_text(message["data"])
        else:
            await asyncio.sleep(0.1)


async def _wait_for_disconnect(websocket: WebSocket, closed: asyncio.Event) -> None:
    # クライアントからのメッセージは使わない。切断の検知だけ
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        closed.set()


async def stream_user_events(websocket: WebSocket, redis: aioredis.Redis, role: str, user_uid: str) -> None:
    """WebSocket が閉じるまでユーザーのチャネルを転送する。"""
    channel = user_channel(role, user_uid)
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)
    logger.info("WebSocket subscribed to %s", channel)

    closed = asyncio.Event()
    forward_task = asyncio.create_task(_forward(pubsub, websocket, closed))
    try:
        await _wait_for_disconnect(websocket, closed)
    finally:
        forward_task.cancel()
        try:
            await forward_task
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            pass
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        logger.info("WebSocket for %s closed", channel)
