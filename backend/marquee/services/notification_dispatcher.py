"""
notification_dispatcher.py

Boundary between the reconciliation engine and notification delivery. The engine
builds one RequestEvent per observed transition and hands it to a RequestNotifier;
channel formatting (email, Discord, webhooks) lives behind that interface.

The default RedisRequestNotifier persists events to per-user notification lists
and publishes them on the user's pub/sub channel, which /api/notifications streams.
"""
import json
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from marquee.core.redis_client import get_redis
from marquee.models import RequestStatus
from marquee.utils.timezone import utc_now

logger = logging.getLogger(__name__)

REQUEST_SUBMITTED = "request_submitted"
REQUEST_DOWNLOADING = "request_downloading"
REQUEST_PARTIALLY_AVAILABLE = "request_partially_available"
REQUEST_AVAILABLE = "request_available"
REQUEST_REMOVED = "request_removed"

EVENT_FOR_STATUS = {
    RequestStatus.SUBMITTED: REQUEST_SUBMITTED,
    RequestStatus.QUEUED: REQUEST_SUBMITTED,
    RequestStatus.DOWNLOADING: REQUEST_DOWNLOADING,
    RequestStatus.PARTIALLY_AVAILABLE: REQUEST_PARTIALLY_AVAILABLE,
    RequestStatus.AVAILABLE: REQUEST_AVAILABLE,
    RequestStatus.REMOVED: REQUEST_REMOVED,
}

EVENT_MESSAGES = {
    REQUEST_SUBMITTED: ("Request for '{title}' was sent to the library", "info"),
    REQUEST_DOWNLOADING: ("'{title}' is downloading", "info"),
    REQUEST_PARTIALLY_AVAILABLE: ("'{title}' is partially available", "info"),
    REQUEST_AVAILABLE: ("'{title}' is now available", "success"),
    REQUEST_REMOVED: ("'{title}' was removed from the library", "warning"),
}

# Per-user log retention mirrors the notifications API
NOTIFICATION_LIST_MAX = 1000
NOTIFICATION_TTL_SECONDS = 86400 * 30
REQUEST_EVENTS_KEY = "request_events"
SYSTEM_ALERTS_KEY = "system_alerts"


def event_for_status(status: Optional[str]) -> Optional[str]:
    return EVENT_FOR_STATUS.get(status) if status else None


@dataclass(frozen=True)
class RequestEvent:
    kind: str
    request_id: str
    request_type: str
    tmdb_id: int
    title: str
    requested_by: int
    status: str

    @classmethod
    def from_request(cls, kind: str, request) -> "RequestEvent":
        return cls(
            kind=kind,
            request_id=request.id,
            request_type=request.request_type,
            tmdb_id=request.tmdb_id,
            title=request.title,
            requested_by=request.requested_by,
            status=request.status,
        )

    def message(self) -> str:
        template, _ = EVENT_MESSAGES.get(self.kind, ("'{title}': {status}", "info"))
        return template.format(title=self.title, status=self.status)


class RequestNotifier:
    """Interface: deliver one event. Raising signals the event was not delivered."""

    async def notify(self, event: RequestEvent) -> None:
        raise NotImplementedError

    async def notify_system_alert(self, key: str, message: str, severity: str = "warning") -> None:
        raise NotImplementedError


class RedisRequestNotifier(RequestNotifier):
    def __init__(self, redis=None):
        self._redis = redis

    @property
    def redis(self):
        return self._redis if self._redis is not None else get_redis()

    async def _push(self, key: str, payload: str) -> None:
        r = self.redis
        await r.lpush(key, payload)
        await r.ltrim(key, 0, NOTIFICATION_LIST_MAX - 1)
        await r.expire(key, NOTIFICATION_TTL_SECONDS)

    async def notify(self, event: RequestEvent) -> None:
        now = utc_now()
        _, level = EVENT_MESSAGES.get(event.kind, ("", "info"))
        notification = {
            "id": int(now.timestamp() * 1000),
            "user_id": event.requested_by,
            "message": event.message(),
            "type": level,
            "link": f"/requests/{event.request_id}",
            "source": event.kind,
            "read": False,
            "created_at": now.isoformat(),
            "event": asdict(event),
        }
        payload = json.dumps(notification)
        user_key = f"notifications:{event.requested_by}"
        await self._push(user_key, payload)
        await self._push(REQUEST_EVENTS_KEY, json.dumps({**asdict(event), "at": now.isoformat()}))
        await self.redis.publish(user_key, payload)
        logger.info(f"Notified user {event.requested_by}: {event.kind} for request {event.request_id}")

    async def notify_system_alert(self, key: str, message: str, severity: str = "warning") -> None:
        now = utc_now()
        payload = json.dumps({"key": key, "message": message, "severity": severity, "created_at": now.isoformat()})
        await self._push(SYSTEM_ALERTS_KEY, payload)
        await self.redis.publish(SYSTEM_ALERTS_KEY, payload)
        logger.warning(f"System alert [{key}]: {message}")


async def deliver_status_notification(db, request, notifier: RequestNotifier) -> bool:
    """Emit the event for request.status unless it already went out.

    notified_status only advances after the notifier accepted the event, so a
    failed delivery is retried later and a delivered one is never repeated.
    A status whose event kind matches the previous one (queued -> submitted)
    is recorded without a second event. Returns True when an event was sent.
    """
    if request.notified_status == request.status:
        return False
    kind = event_for_status(request.status)
    sent = False
    if kind is not None and kind != event_for_status(request.notified_status):
        try:
            await notifier.notify(RequestEvent.from_request(kind, request))
        except Exception as e:
            logger.warning(f"Notification {kind} for request {request.id} failed, will retry: {e}")
            return False
        sent = True
    request.notified_status = request.status
    db.commit()
    return sent
