import json
import logging
from typing import Dict

from fastapi import APIRouter
from sqlalchemy import func

from marquee.core.database import SessionLocal
from marquee.core.redis_client import get_redis
from marquee.models import MediaRequest
from marquee.services.service_health import CHECKED_TYPES, ServiceHealthMonitor
from marquee.services.sync_lock import REQUEST_SYNC_LOCK_KEY
from marquee.services.tasks import LAST_IMPORT_KEY, LAST_SUMMARY_KEY

router = APIRouter()
logger = logging.getLogger(__name__)


async def _load_json(key: str):
    raw = await get_redis().get(key)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Unparseable JSON under {key}")
        return None


@router.get("/services")
async def get_service_status():
    """Current alert state per *arr service type."""
    monitor = ServiceHealthMonitor()
    services: Dict[str, dict] = {}
    for service_type in CHECKED_TYPES:
        state = await monitor.get_state(service_type)
        services[service_type] = {
            "alert_active": state.get("active") == "1",
            "last_alert_at": float(state["last_sent_at"]) if state.get("last_sent_at") else None,
            "last_error": state.get("last_error"),
        }
    return {"services": services}


@router.get("/sync")
async def get_sync_status():
    """Last reconciliation and watchlist import summaries, plus request counts by status."""
    running = bool(await get_redis().exists(REQUEST_SYNC_LOCK_KEY))

    db = SessionLocal()
    try:
        counts = dict(
            db.query(MediaRequest.status, func.count(MediaRequest.id))
            .group_by(MediaRequest.status)
            .all()
        )
    finally:
        db.close()

    return {
        "running": running,
        "last_summary": await _load_json(LAST_SUMMARY_KEY),
        "last_watchlist_import": await _load_json(LAST_IMPORT_KEY),
        "requests_by_status": counts,
    }
