"""
notifications.py

API endpoints for request notifications with SSE streaming and persistent logging.
Events are written by RedisRequestNotifier; this module only reads, marks and clears them.
"""
from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from typing import Any, Dict, Optional, List
import json
import asyncio
import logging
from datetime import datetime
from marquee.core.redis_client import get_redis
from marquee.services.notification_dispatcher import SYSTEM_ALERTS_KEY

router = APIRouter()
logger = logging.getLogger(__name__)


class MarkReadRequest(BaseModel):
    user_id: int = 1


class NotificationResponse(BaseModel):
    id: int
    user_id: int
    message: str
    type: str
    link: Optional[str] = None
    source: Optional[str] = None
    read: bool
    created_at: datetime
    event: Optional[Dict[str, Any]] = None


def _key(user_id: int) -> str:
    return f"notifications:{user_id}"


@router.get("/", response_model=List[NotificationResponse])
async def get_notifications(user_id: int = 1, limit: int = 50, offset: int = 0):
    """Get paginated notifications for user, newest first."""
    redis = get_redis()
    notifications_data = await redis.lrange(_key(user_id), offset, offset + limit - 1)
    notifications = []

    for data in notifications_data:
        try:
            notifications.append(NotificationResponse(**json.loads(data)))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to parse notification: {e}")

    return notifications


@router.get("/alerts")
async def get_system_alerts(limit: int = 50):
    """Operator alerts raised by the service health monitor."""
    redis = get_redis()
    alerts = []
    for data in await redis.lrange(SYSTEM_ALERTS_KEY, 0, limit - 1):
        try:
            alerts.append(json.loads(data))
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse system alert: {e}")
    return alerts


@router.post("/{notification_id}/read")
async def mark_notification_read(notification_id: int, payload: MarkReadRequest):
    """Mark notification as read."""
    redis = get_redis()
    key = _key(payload.user_id)

    notifications_data = await redis.lrange(key, 0, -1)
    updated = False

    for i, data in enumerate(notifications_data):
        try:
            notification_dict = json.loads(data)
        except json.JSONDecodeError:
            continue
        if notification_dict.get("id") == notification_id:
            notification_dict["read"] = True
            await redis.lset(key, i, json.dumps(notification_dict))
            updated = True
            break

    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")

    return {"success": True}


@router.get("/stream")
async def stream_notifications(user_id: int):
    """Server-Sent Events endpoint for real-time notifications."""

    async def event_stream():
        redis = get_redis()
        pubsub = redis.pubsub()
        channel = _key(user_id)
        try:
            await pubsub.subscribe(channel)
            yield f"data: {json.dumps({'type': 'connected', 'message': 'Notification stream connected'})}\n\n"
            while True:
                try:
                    message = await asyncio.wait_for(pubsub.get_message(ignore_subscribe_messages=True), timeout=30.0)
                    if message and message["type"] == "message":
                        data = message['data']
                        if isinstance(data, bytes):
                            data = data.decode()
                        yield f"data: {data}\n\n"
                    elif message is None:
                        await asyncio.sleep(1.0)
                except asyncio.TimeoutError:
                    yield f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
        except asyncio.CancelledError:
            logger.info(f"Notification stream cancelled for user {user_id}")
        except Exception as e:
            logger.error(f"Notification stream error for user {user_id}: {e}")
            yield f"data: {json.dumps({'type': 'error', 'message': 'Stream error'})}\n\n"
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.close()
            except Exception as e:
                logger.warning(f"Error closing pubsub for user {user_id}: {e}")
    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )


@router.delete("/clear")
async def clear_notifications(user_id: int):
    """Clear all notifications for user."""
    await get_redis().delete(_key(user_id))
    return {"success": True, "message": "Notifications cleared"}
