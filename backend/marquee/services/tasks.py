"""
tasks.py

Celery task definitions for request reconciliation, watchlist import and
service health checks. Each task runs its coroutine on a fresh event loop so
forked workers never reuse a closed loop; overlap between passes is prevented
by the Redis lock inside RequestSyncService, not by Celery.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

from celery import shared_task

from marquee.core.config import settings
from marquee.core.redis_client import get_redis, release_loop_client
from marquee.utils.timezone import utc_now

logger = logging.getLogger(__name__)

LAST_SUMMARY_KEY = "request_sync:last_summary"
LAST_IMPORT_KEY = "watchlist_import:last_summary"
SUMMARY_TTL_SECONDS = 86400 * 7


def _run(coro_factory):
    """Run an async body on a fresh event loop inside a Celery worker."""
    loop = None
    try:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(coro_factory())
    finally:
        if loop:
            try:
                loop.run_until_complete(release_loop_client(loop))
                loop.close()
            except Exception as e:
                logger.debug(f"Event loop cleanup failed: {e}")


async def _store_summary(key: str, summary: Dict[str, Any]) -> None:
    try:
        payload = {**summary, "finished_at": utc_now().isoformat()}
        await get_redis().set(key, json.dumps(payload), ex=SUMMARY_TTL_SECONDS)
    except Exception as e:
        logger.warning(f"Could not store summary under {key}: {e}")


async def run_reconcile_pass(import_watchlists: bool = True) -> Dict[str, Any]:
    from marquee.services.request_sync import RequestSyncService
    from marquee.services.watchlist_import import WatchlistImporter

    if import_watchlists:
        try:
            imported = await WatchlistImporter().run()
            await _store_summary(LAST_IMPORT_KEY, imported)
        except Exception as e:
            logger.error(f"Watchlist import before sync failed: {e}", exc_info=True)

    summary = await RequestSyncService().run_pass()
    if summary.get("status") != "locked":
        await _store_summary(LAST_SUMMARY_KEY, summary)
    return summary


@shared_task(bind=True, max_retries=2, default_retry_delay=60)
def reconcile_requests(self, import_watchlists: bool = True):
    """Scheduled reconciliation pass over open requests.

    Returns {"status": "disabled"} when REQUEST_SYNC_DISABLED is set and
    {"status": "locked", ...} when another worker holds the pass lock.
    """
    if settings.request_sync_disabled:
        logger.info("Request sync disabled; skipping scheduled pass")
        return {"status": "disabled"}
    try:
        return _run(lambda: run_reconcile_pass(import_watchlists))
    except Exception as e:
        logger.error(f"reconcile_requests failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


@shared_task(bind=True, max_retries=2, default_retry_delay=30)
def reconcile_request(self, request_id: str):
    """Reconcile one request immediately (manual "sync now")."""
    async def _one():
        from marquee.services.request_sync import RequestSyncService
        return await RequestSyncService().sync_request(request_id)

    try:
        return _run(_one)
    except Exception as e:
        logger.error(f"reconcile_request {request_id} failed: {e}", exc_info=True)
        raise self.retry(exc=e)


@shared_task(bind=True, max_retries=2, default_retry_delay=60)
def sync_watchlists(self, user_id: Optional[int] = None):
    """Import Jellyfin favorites and Trakt watchlists as requests."""
    async def _import():
        from marquee.services.watchlist_import import WatchlistImporter
        result = await WatchlistImporter().run(user_id)
        await _store_summary(LAST_IMPORT_KEY, result)
        return result

    try:
        return _run(_import)
    except Exception as e:
        logger.error(f"sync_watchlists failed: {e}", exc_info=True)
        raise self.retry(exc=e)


@shared_task(bind=True, max_retries=0)
def check_service_health(self):
    """Probe configured *arr services and raise or clear operator alerts."""
    async def _check():
        from marquee.services.service_health import ServiceHealthMonitor
        return await ServiceHealthMonitor().check_services()

    try:
        return _run(_check)
    except Exception as e:
        logger.error(f"check_service_health failed: {e}", exc_info=True)
        return {"error": str(e)}
