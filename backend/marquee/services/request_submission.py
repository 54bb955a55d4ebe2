"""
request_submission.py

Sends approved (queued) requests to Radarr/Sonarr: add the title, then search.
Whole-title requests are added fully monitored with a search; episode requests
add the series unmonitored and then monitor and search only the requested
episodes. On success the request moves to submitted and its items get the
service's id. Any failure leaves the request queued so a later run retries.
"""
import logging
from typing import Dict, Optional

import httpx

from marquee.models import MediaRequest, RequestItem, RequestStatus, RequestType
from marquee.services.arr_client import ArrClient, ServiceError, ServiceTransientError
from marquee.services.clients import build_client
from marquee.services.notification_dispatcher import (
    RedisRequestNotifier, RequestNotifier, deliver_status_notification,
)
from marquee.services.service_directory import ServiceDirectory, get_service_directory

logger = logging.getLogger(__name__)


class RequestSubmitter:
    def __init__(self, directory: Optional[ServiceDirectory] = None,
                 notifier: Optional[RequestNotifier] = None,
                 clients: Optional[Dict[str, Optional[ArrClient]]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.directory = directory or get_service_directory()
        self.notifier = notifier or RedisRequestNotifier()
        self._clients = clients
        self._transport = transport

    def client_for(self, provider: str) -> Optional[ArrClient]:
        if self._clients is not None:
            return self._clients.get(provider)
        return build_client(provider, self.directory, transport=self._transport)

    async def submit(self, db, req: MediaRequest, client: Optional[ArrClient] = None) -> bool:
        """Add req to its service; True when it reached submitted."""
        client = client if client is not None else self.client_for(req.provider)
        if client is None:
            logger.info(f"{req.provider} not configured; request {req.id} stays queued")
            return False
        try:
            if req.request_type == RequestType.MOVIE:
                added = await client.add_title(req.tmdb_id, {"title": req.title})
            else:
                if not req.tvdb_id:
                    req.status_reason = "No TVDB id known for this series"
                    db.commit()
                    logger.warning(f"Request {req.id} ({req.title}) has no TVDB id; cannot add to Sonarr")
                    return False
                pairs = [(i.season, i.episode) for i in req.items if i.season is not None and i.episode is not None]
                if pairs:
                    added = await client.add_title(req.tvdb_id, {"monitor": "none", "search": False})
                    await client.monitor_and_search(added["id"], pairs)
                else:
                    added = await client.add_title(req.tvdb_id, {"monitor": "all", "search": True})
        except ServiceTransientError as e:
            logger.warning(f"Submitting request {req.id} ({req.title}) failed, will retry: {e}")
            return False
        except ServiceError as e:
            req.status_reason = str(e)[:1000]
            db.commit()
            logger.error(f"Submitting request {req.id} ({req.title}) rejected: {e}")
            return False

        added_id = (added or {}).get("id")
        for item in req.items:
            if item.provider_id is None:
                item.provider_id = added_id
            item.status = RequestStatus.SUBMITTED
        req.status = RequestStatus.SUBMITTED
        req.status_reason = None
        db.commit()
        logger.info(f"Request {req.id} ({req.title}) submitted to {req.provider} as {added_id}")
        await deliver_status_notification(db, req, self.notifier)
        return True

    async def resubmit_queued(self, db, clients: Optional[Dict[str, Optional[ArrClient]]] = None) -> Dict[str, int]:
        """Retry queued requests that never reached their service."""
        result = {"submitted": 0, "errors": 0}
        queued = (
            db.query(MediaRequest)
            .filter(MediaRequest.status == RequestStatus.QUEUED)
            .filter(~MediaRequest.items.any(RequestItem.provider_id.isnot(None)))
            .order_by(MediaRequest.created_at.asc())
            .all()
        )
        clients = dict(clients or {})
        for req in queued:
            provider = req.provider
            if provider not in clients:
                clients[provider] = self.client_for(provider)
            if clients[provider] is None:
                continue
            try:
                if await self.submit(db, req, clients[provider]):
                    result["submitted"] += 1
            except Exception as e:
                db.rollback()
                result["errors"] += 1
                logger.warning(f"Retrying request {req.id} failed: {e}")
        return result
