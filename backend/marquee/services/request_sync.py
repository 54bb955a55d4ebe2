"""
request_sync.py

Reconciliation engine for media requests. One pass:

1. take the cluster-wide lock (busy means another instance is mid-pass: return)
2. merge duplicate episode requests
3. fetch the Radarr and Sonarr queues once and index them
4. load a bounded, oldest-first batch of requests that still need work
5. per request: resolve status against the live *arr state, persist only what
   changed, notify once per transition
6. release the lock, whatever happened

Failure isolation:
- a request's error is counted and recorded on that request; the batch goes on
- a queue fetch failure skips that provider's requests for this pass; they are
  left out of the batch so the other provider's requests still fill it
- a fatal/auth error disables that provider for the rest of the pass and is
  reported to the health monitor instead of touching request statuses
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.orm import selectinload

from marquee.core.config import Settings, settings as default_settings
from marquee.core.database import SessionLocal
from marquee.models import MediaRequest, RequestStatus, RequestType, ServiceType
from marquee.services.arr_client import (
    ArrClient, QueueIndex, ServiceError, ServiceFatalError, ServiceNotFoundError,
)
from marquee.services.clients import build_client
from marquee.services.jellyfin_client import LibraryAvailability
from marquee.services.notification_dispatcher import (
    EVENT_FOR_STATUS, RedisRequestNotifier, RequestNotifier, deliver_status_notification,
)
from marquee.services.request_merge import RequestMergeService
from marquee.services.service_directory import ServiceDirectory, get_service_directory
from marquee.services.service_health import ServiceHealthMonitor
from marquee.services.status_resolver import Resolution, resolve_episode_status, resolve_movie_status
from marquee.services.sync_lock import SyncLock, REQUEST_SYNC_LOCK_KEY
from marquee.utils.timezone import utc_now

logger = logging.getLogger(__name__)

# Statuses the resolver still works on; pending requests wait for approval first
SYNCABLE_STATUSES = (
    RequestStatus.QUEUED,
    RequestStatus.SUBMITTED,
    RequestStatus.DOWNLOADING,
    RequestStatus.PARTIALLY_AVAILABLE,
)
PROVIDERS = (ServiceType.RADARR, ServiceType.SONARR)


def new_summary() -> Dict[str, Any]:
    return {
        "status": "ok",
        "processed": 0,
        "available": 0,
        "partially_available": 0,
        "downloading": 0,
        "removed": 0,
        "errors": 0,
        "skipped": 0,
        "notified": 0,
    }


@dataclass
class PassContext:
    clients: Dict[str, Optional[ArrClient]] = field(default_factory=dict)
    queues: Dict[str, Optional[QueueIndex]] = field(default_factory=dict)
    disabled: Set[str] = field(default_factory=set)

    def usable(self, provider: str) -> bool:
        return (
            provider not in self.disabled
            and self.clients.get(provider) is not None
            and self.queues.get(provider) is not None
        )


class RequestSyncService:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        directory: Optional[ServiceDirectory] = None,
        notifier: Optional[RequestNotifier] = None,
        lock: Optional[SyncLock] = None,
        availability: Optional[LibraryAvailability] = None,
        health: Optional[ServiceHealthMonitor] = None,
        merger: Optional[RequestMergeService] = None,
        clients: Optional[Dict[str, Optional[ArrClient]]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.session_factory = session_factory
        self.directory = directory or get_service_directory()
        self.notifier = notifier or RedisRequestNotifier()
        self.lock = lock or SyncLock(REQUEST_SYNC_LOCK_KEY, ttl_seconds=self.settings.request_sync_lock_ttl_seconds)
        self.availability = availability or LibraryAvailability(self.directory)
        self.health = health or ServiceHealthMonitor(notifier=self.notifier, directory=self.directory)
        self.merger = merger or RequestMergeService(session_factory)
        self._clients = clients

    # ------------------------------------------------------------------ entry points

    async def run_pass(self) -> Dict[str, Any]:
        """Reconcile one bounded batch of requests."""
        return await self._locked(self._run_batch)

    async def sync_request(self, request_id: str) -> Dict[str, Any]:
        """Reconcile a single request now (the "try again" action)."""
        async def _one(summary):
            ctx = await self._prepare()
            await self._sync_one(request_id, ctx, summary)
        return await self._locked(_one)

    async def _locked(self, body) -> Dict[str, Any]:
        summary = new_summary()
        if not await self.lock.acquire():
            summary["status"] = "locked"
            return summary
        try:
            await body(summary)
        finally:
            await self.lock.release()
        logger.info(
            f"Request sync pass: {summary['processed']} processed, {summary['available']} available, "
            f"{summary['partially_available']} partial, {summary['downloading']} downloading, "
            f"{summary['removed']} removed, {summary['errors']} errors, {summary['skipped']} skipped"
        )
        return summary

    async def _run_batch(self, summary: Dict[str, Any]) -> None:
        try:
            self.merger.merge_duplicates()
        except Exception as e:
            logger.warning(f"Duplicate merge skipped this pass: {e}")

        ctx = await self._prepare()
        for request_id in self._load_batch(ctx):
            await self._sync_one(request_id, ctx, summary)

    # ------------------------------------------------------------------ pass setup

    def _client(self, provider: str) -> Optional[ArrClient]:
        if self._clients is not None:
            return self._clients.get(provider)
        return build_client(provider, self.directory)

    async def _prepare(self) -> PassContext:
        ctx = PassContext()
        for provider in PROVIDERS:
            client = self._client(provider)
            ctx.clients[provider] = client
            ctx.queues[provider] = None
            if client is None:
                logger.debug(f"{provider} not configured; its requests are skipped")
                continue
            try:
                entries = await client.get_queue(1, self.settings.queue_page_size)
            except ServiceFatalError as e:
                ctx.disabled.add(provider)
                await self._report_failure(provider, e)
                continue
            except ServiceError as e:
                logger.warning(f"{provider} queue fetch failed, skipping its requests this pass: {e}")
                continue
            ctx.queues[provider] = QueueIndex.build(entries)
            await self._report_success(provider)
        return ctx

    def _load_batch(self, ctx: PassContext) -> List[str]:
        # Requests of an unusable provider would only take slots from the other one
        usable_types = [
            RequestType.MOVIE if provider == ServiceType.RADARR else RequestType.EPISODE
            for provider in PROVIDERS
            if ctx.usable(provider)
        ]
        db = self.session_factory()
        try:
            syncable = and_(
                MediaRequest.status.in_(SYNCABLE_STATUSES),
                MediaRequest.request_type.in_(usable_types),
            )
            notify_backlog = and_(
                MediaRequest.status.in_(tuple(EVENT_FOR_STATUS)),
                or_(MediaRequest.notified_status.is_(None), MediaRequest.notified_status != MediaRequest.status),
            )
            rows = (
                db.query(MediaRequest.id)
                .filter(or_(syncable, notify_backlog))
                .order_by(MediaRequest.created_at.asc(), MediaRequest.id.asc())
                .limit(self.settings.request_sync_batch_size)
                .all()
            )
            return [r[0] for r in rows]
        finally:
            db.close()

    # ------------------------------------------------------------------ per request

    async def _sync_one(self, request_id: str, ctx: PassContext, summary: Dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            req = (
                db.query(MediaRequest)
                .options(selectinload(MediaRequest.items))
                .filter(MediaRequest.id == request_id)
                .first()
            )
            if req is None:
                return
            summary["processed"] += 1

            # Status may have moved outside the engine (admin approval); announce it first
            await self._deliver_notification(db, req, summary)

            if req.status not in SYNCABLE_STATUSES:
                return
            provider = req.provider
            if not ctx.usable(provider):
                summary["skipped"] += 1
                return

            try:
                resolution, backfilled = await self._resolve(req, ctx.clients[provider], ctx.queues[provider])
            except ServiceFatalError as e:
                ctx.disabled.add(provider)
                summary["skipped"] += 1
                await self._report_failure(provider, e)
                return
            except ServiceError as e:
                summary["errors"] += 1
                logger.warning(f"Transient error syncing request {req.id} ({req.title}): {e}")
                message = str(e)[:1000]
                if req.last_sync_error != message:
                    req.last_sync_error = message
                    req.last_synced_at = utc_now()
                    db.commit()
                return

            if resolution is not None and resolution.status == RequestStatus.AVAILABLE \
                    and req.request_type == RequestType.EPISODE:
                live = await self.availability.episodes_available(req)
                if live is False:
                    logger.info(f"Request {req.id} ({req.title}) complete in Sonarr but not yet in the library; deferring")
                    resolution.status = None

            changed = backfilled
            if resolution is not None:
                changed = self._apply(req, resolution) or changed
            if req.last_sync_error is not None:
                req.last_sync_error = None
                changed = True
            if not changed:
                return

            req.last_synced_at = utc_now()
            db.commit()
            if resolution is not None and resolution.status is not None:
                if resolution.status in summary:
                    summary[resolution.status] += 1
                logger.info(f"Request {req.id} ({req.title}) -> {resolution.status}")
                await self._deliver_notification(db, req, summary)
        except Exception as e:
            db.rollback()
            summary["errors"] += 1
            logger.warning(f"Failed to sync request {request_id}: {e}", exc_info=True)
        finally:
            db.close()

    async def _resolve(self, req: MediaRequest, client: ArrClient,
                       queue_index: QueueIndex) -> Tuple[Optional[Resolution], bool]:
        """Returns (resolution, provider ids backfilled). Resolution is None when
        the title was never added to the service (nothing to judge yet)."""
        if req.request_type == RequestType.MOVIE:
            return await self._resolve_movie(req, client, queue_index)
        return await self._resolve_episode(req, client, queue_index)

    async def _resolve_movie(self, req, client, queue_index):
        provider_id = next((i.provider_id for i in req.items if i.provider_id is not None), None)
        backfilled = False
        if provider_id is None:
            movie = await client.find_by_external_id(req.tmdb_id)
            if not movie:
                return None, False
            backfilled = self._backfill_provider_id(req, movie.get("id"))
        else:
            try:
                movie = await client.get_title(provider_id)
            except ServiceNotFoundError:
                movie = None
        return resolve_movie_status(req, movie, queue_index), backfilled

    async def _resolve_episode(self, req, client, queue_index):
        provider_id = next((i.provider_id for i in req.items if i.provider_id is not None), None)
        backfilled = False
        if provider_id is None:
            series = await client.find_by_external_id(req.tmdb_id)
            if not series and req.tvdb_id:
                series = await client.find_by_tvdb_id(req.tvdb_id)
            if not series:
                return None, False
            backfilled = self._backfill_provider_id(req, series.get("id"))
        else:
            try:
                series = await client.get_title(provider_id)
            except ServiceNotFoundError:
                series = None

        episodes: List[Dict[str, Any]] = []
        if series is not None:
            if req.tvdb_id is None and series.get("tvdbId"):
                req.tvdb_id = series["tvdbId"]
                backfilled = True
            try:
                episodes = await client.get_episodes(series["id"])
            except ServiceNotFoundError:
                series = None
        resolution = resolve_episode_status(req, series, episodes, queue_index, self.settings.series_partial_policy)
        return resolution, backfilled

    @staticmethod
    def _backfill_provider_id(req: MediaRequest, provider_id: Optional[int]) -> bool:
        if provider_id is None:
            return False
        changed = False
        for item in req.items:
            if item.provider_id is None:
                item.provider_id = provider_id
                changed = True
        return changed

    @staticmethod
    def _apply(req: MediaRequest, resolution: Resolution) -> bool:
        changed = False
        if resolution.item_statuses:
            for item in req.items:
                new_status = resolution.item_statuses.get(item.id)
                if new_status is not None and item.status != new_status:
                    item.status = new_status
                    changed = True
        if resolution.status is not None and resolution.status != req.status:
            req.status = resolution.status
            req.status_reason = resolution.reason
            changed = True
        return changed

    # ------------------------------------------------------------------ side effects

    async def _deliver_notification(self, db, req: MediaRequest, summary: Dict[str, Any]) -> None:
        if await deliver_status_notification(db, req, self.notifier):
            summary["notified"] += 1

    async def _report_failure(self, provider: str, error: Exception) -> None:
        try:
            await self.health.report_failure(provider, error)
        except Exception as e:
            logger.error(f"{provider} failing ({error}); health report also failed: {e}")

    async def _report_success(self, provider: str) -> None:
        try:
            await self.health.report_success(provider)
        except Exception as e:
            logger.debug(f"Could not clear {provider} health alert: {e}")
