"""
service_health.py

Operator-facing health signal for external services. Fatal/auth failures seen
during reconciliation are reported here instead of being written onto requests.
Alert state per service type lives in a Redis hash so the cooldown holds across
processes:

    alerts:service:{type} -> {active, last_sent_at, last_error}
"""
import logging
import time
from typing import Any, Dict, Optional

from marquee.core.config import settings
from marquee.core.redis_client import get_redis
from marquee.models import ServiceType
from marquee.services.arr_client import ServiceError
from marquee.services.clients import build_client
from marquee.services.notification_dispatcher import RequestNotifier, RedisRequestNotifier
from marquee.services.service_directory import ServiceDirectory, get_service_directory

logger = logging.getLogger(__name__)

ALERT_KEY_PREFIX = "alerts:service:"
CHECKED_TYPES = (ServiceType.RADARR, ServiceType.SONARR, ServiceType.PROWLARR)


def should_emit_alert(state: Dict[str, Any], now: float, cooldown_seconds: int) -> bool:
    """Emit when the alert is newly active or the cooldown elapsed since the last send."""
    if str(state.get("active", "0")) != "1":
        return True
    try:
        last_sent = float(state.get("last_sent_at") or 0)
    except (TypeError, ValueError):
        last_sent = 0.0
    return now - last_sent >= cooldown_seconds


class ServiceHealthMonitor:
    def __init__(self, notifier: Optional[RequestNotifier] = None, redis=None,
                 cooldown_seconds: Optional[int] = None, directory: Optional[ServiceDirectory] = None,
                 clock=time.time):
        self.notifier = notifier or RedisRequestNotifier(redis=redis)
        self._redis = redis
        self.cooldown_seconds = cooldown_seconds if cooldown_seconds is not None else settings.alert_cooldown_seconds
        self.directory = directory
        self._clock = clock

    @property
    def redis(self):
        return self._redis if self._redis is not None else get_redis()

    async def get_state(self, service_type: str) -> Dict[str, Any]:
        return await self.redis.hgetall(f"{ALERT_KEY_PREFIX}{service_type}") or {}

    async def report_failure(self, service_type: str, error: Exception) -> bool:
        """Record a fatal/auth failure; returns True when an alert went out."""
        key = f"{ALERT_KEY_PREFIX}{service_type}"
        now = self._clock()
        state = await self.get_state(service_type)
        emit = should_emit_alert(state, now, self.cooldown_seconds)
        mapping = {"active": "1", "last_error": str(error)[:500]}
        if emit:
            mapping["last_sent_at"] = str(now)
        await self.redis.hset(key, mapping=mapping)
        if emit:
            try:
                await self.notifier.notify_system_alert(
                    f"service:{service_type}",
                    f"{service_type} is failing: {error}",
                    "error",
                )
            except Exception as e:
                logger.warning(f"Failed to send {service_type} alert: {e}")
        logger.error(f"{service_type} health failure: {error}")
        return emit

    async def report_success(self, service_type: str) -> bool:
        """Clear an active alert; returns True when a recovery alert went out."""
        key = f"{ALERT_KEY_PREFIX}{service_type}"
        state = await self.get_state(service_type)
        if str(state.get("active", "0")) != "1":
            return False
        await self.redis.hset(key, mapping={"active": "0", "last_error": ""})
        try:
            await self.notifier.notify_system_alert(f"service:{service_type}", f"{service_type} recovered", "info")
        except Exception as e:
            logger.warning(f"Failed to send {service_type} recovery alert: {e}")
        logger.info(f"{service_type} recovered")
        return True

    async def check_services(self, transport=None) -> Dict[str, str]:
        """Ping system/status on every configured service type."""
        directory = self.directory or get_service_directory()
        results: Dict[str, str] = {}
        for service_type in CHECKED_TYPES:
            client = build_client(service_type, directory, transport=transport)
            if client is None:
                results[service_type] = "not_configured"
                continue
            try:
                await client.system_status()
            except ServiceError as e:
                await self.report_failure(service_type, e)
                results[service_type] = "error"
                continue
            await self.report_success(service_type)
            results[service_type] = "ok"
        return results
