"""
watchlist_import.py

Turns user watchlists into media requests. Sources per user:
- Jellyfin favorites (when the user is linked to a Jellyfin account)
- the Trakt watchlist (when the user has authorized Trakt)

Titles already requested or already present in Radarr/Sonarr are skipped.
Users allowed to auto-approve get their request sent to the *arr service
right away; everyone else gets a pending request for an admin to review.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from marquee import crud
from marquee.core.database import SessionLocal
from marquee.models import MediaRequest, RequestStatus, RequestType, ServiceType, User
from marquee.services.arr_client import ArrClient
from marquee.services.jellyfin_client import JellyfinClient, JellyfinError, provider_id
from marquee.services.notification_dispatcher import RequestNotifier
from marquee.services.request_submission import RequestSubmitter
from marquee.services.service_directory import ServiceDirectory, get_service_directory
from marquee.services.tmdb_client import fetch_display_metadata
from marquee.services.trakt_client import TraktAPIError, TraktClient

logger = logging.getLogger(__name__)

AUTO_APPROVE = "auto_approve"
AUTO_APPROVE_FOR = {"movie": "auto_approve_movie", "tv": "auto_approve_tv"}
JELLYFIN_TYPES = {"movie": "movie", "series": "tv"}


def new_import_summary() -> Dict[str, int]:
    return {"users": 0, "created": 0, "auto_approved": 0, "submitted": 0, "skipped": 0, "errors": 0}


def can_auto_approve(user: User, media_type: str) -> bool:
    if user.is_admin:
        return True
    permissions = set(user.permission_list)
    return AUTO_APPROVE in permissions or AUTO_APPROVE_FOR.get(media_type) in permissions


def _request_type(media_type: str) -> str:
    return RequestType.MOVIE if media_type == "movie" else RequestType.EPISODE


def _provider(media_type: str) -> str:
    return ServiceType.RADARR if media_type == "movie" else ServiceType.SONARR


class WatchlistImporter:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        directory: Optional[ServiceDirectory] = None,
        notifier: Optional[RequestNotifier] = None,
        clients: Optional[Dict[str, Optional[ArrClient]]] = None,
        jellyfin: Optional[JellyfinClient] = None,
        trakt_factory: Optional[Callable[[int], TraktClient]] = None,
        metadata_fetcher: Callable = fetch_display_metadata,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session_factory = session_factory
        self.directory = directory or get_service_directory()
        self.submitter = RequestSubmitter(self.directory, notifier=notifier, clients=clients, transport=transport)
        self._jellyfin = jellyfin
        self._trakt_factory = trakt_factory or (lambda user_id: TraktClient(user_id, session_factory=session_factory))
        self._metadata_fetcher = metadata_fetcher
        self._transport = transport

    def _jellyfin_client(self) -> Optional[JellyfinClient]:
        if self._jellyfin is not None:
            return self._jellyfin
        resolved = self.directory.resolve_service(ServiceType.JELLYFIN)
        return JellyfinClient(resolved, transport=self._transport) if resolved else None

    async def run(self, user_id: Optional[int] = None) -> Dict[str, int]:
        summary = new_import_summary()
        # One client per service for the whole run so its list cache is shared across entries
        clients = {
            provider: self.submitter.client_for(provider) for provider in (ServiceType.RADARR, ServiceType.SONARR)
        }
        db = self.session_factory()
        try:
            users = crud.list_users_with_watchlist_sync(user_id, db=db)
            for user in users:
                summary["users"] += 1
                try:
                    await self._import_user(db, user, summary, clients)
                except Exception as e:
                    db.rollback()
                    summary["errors"] += 1
                    logger.error(f"Watchlist import failed for user {user.id}: {e}", exc_info=True)
            retried = await self.submitter.resubmit_queued(db, clients)
            summary["submitted"] += retried["submitted"]
            summary["errors"] += retried["errors"]
        finally:
            db.close()
        logger.info(
            f"Watchlist import: {summary['users']} users, {summary['created']} created, "
            f"{summary['auto_approved']} auto-approved, {summary['skipped']} skipped, {summary['errors']} errors"
        )
        return summary

    # ------------------------------------------------------------------ sources

    async def collect(self, user: User, summary: Dict[str, int]) -> List[Dict[str, Any]]:
        """Union of the user's watchlist sources keyed by (media_type, tmdb_id)."""
        merged: Dict[Tuple[str, int], Dict[str, Any]] = {}
        for entry in await self._jellyfin_entries(user, summary) + await self._trakt_entries(user, summary):
            key = (entry["media_type"], entry["tmdb_id"])
            existing = merged.get(key)
            if existing is None:
                merged[key] = entry
            else:
                for field in ("tvdb_id", "title", "year"):
                    if existing.get(field) is None and entry.get(field) is not None:
                        existing[field] = entry[field]

        wanted = []
        for entry in merged.values():
            if entry["media_type"] == "movie" and not user.watchlist_sync_movies:
                continue
            if entry["media_type"] == "tv" and not user.watchlist_sync_tv:
                continue
            wanted.append(entry)
        return wanted

    async def _jellyfin_entries(self, user: User, summary: Dict[str, int]) -> List[Dict[str, Any]]:
        if not user.jellyfin_user_id:
            return []
        client = self._jellyfin_client()
        if client is None:
            return []
        try:
            favorites = await client.get_favorites(user.jellyfin_user_id)
        except JellyfinError as e:
            summary["errors"] += 1
            logger.warning(f"Jellyfin favorites unavailable for user {user.id}: {e}")
            return []
        entries = []
        for item in favorites:
            media_type = JELLYFIN_TYPES.get(str(item.get("Type") or "").lower())
            tmdb_id = provider_id(item, "Tmdb")
            if media_type is None or tmdb_id is None:
                continue
            entries.append({
                "media_type": media_type,
                "tmdb_id": tmdb_id,
                "tvdb_id": provider_id(item, "Tvdb"),
                "title": item.get("Name") or item.get("OriginalTitle"),
                "year": item.get("ProductionYear"),
            })
        return entries

    async def _trakt_entries(self, user: User, summary: Dict[str, int]) -> List[Dict[str, Any]]:
        if not user.trakt_access_token_encrypted:
            return []
        client = self._trakt_factory(user.id)
        entries: List[Dict[str, Any]] = []
        wanted = []
        if user.watchlist_sync_movies:
            wanted.append("movies")
        if user.watchlist_sync_tv:
            wanted.append("shows")
        for media_type in wanted:
            try:
                entries.extend(await client.get_watchlist(media_type))
            except TraktAPIError as e:
                summary["errors"] += 1
                logger.warning(f"Trakt {media_type} watchlist unavailable for user {user.id}: {e}")
        return entries

    # ------------------------------------------------------------------ import

    async def _import_user(
        self, db, user: User, summary: Dict[str, int], clients: Optional[Dict[str, Optional[ArrClient]]] = None
    ) -> None:
        for entry in await self.collect(user, summary):
            try:
                await self.import_entry(db, user, entry, summary, clients)
            except Exception as e:
                db.rollback()
                summary["errors"] += 1
                logger.warning(
                    f"Could not import {entry['media_type']} tmdb:{entry['tmdb_id']} for user {user.id}: {e}"
                )

    async def import_entry(
        self,
        db,
        user: User,
        entry: Dict[str, Any],
        summary: Dict[str, int],
        clients: Optional[Dict[str, Optional[ArrClient]]] = None,
    ) -> Optional[MediaRequest]:
        media_type = entry["media_type"]
        tmdb_id = int(entry["tmdb_id"])
        request_type = _request_type(media_type)

        if crud.find_active_request_by_tmdb(request_type, tmdb_id, db=db) is not None:
            summary["skipped"] += 1
            return None

        provider = _provider(media_type)
        client = clients[provider] if clients is not None else self.submitter.client_for(provider)
        if client is not None and await self._already_tracked(client, media_type, tmdb_id, entry.get("tvdb_id")):
            summary["skipped"] += 1
            return None

        meta = await self._metadata_fetcher(tmdb_id, media_type) or {}
        auto = can_auto_approve(user, media_type)
        req = crud.create_request_with_items(
            request_type=request_type,
            tmdb_id=tmdb_id,
            tvdb_id=entry.get("tvdb_id") or meta.get("tvdb_id"),
            title=meta.get("title") or entry.get("title") or f"tmdb:{tmdb_id}",
            requested_by=user.id,
            status=RequestStatus.QUEUED if auto else RequestStatus.PENDING,
            items=[{"provider": _provider(media_type), "season": None, "episode": None}],
            poster_path=meta.get("poster_path"),
            backdrop_path=meta.get("backdrop_path"),
            release_year=meta.get("release_year") or entry.get("year"),
            db=db,
        )
        summary["created"] += 1
        if auto:
            summary["auto_approved"] += 1
            if await self.submitter.submit(db, req, client):
                summary["submitted"] += 1
        return req

    @staticmethod
    async def _already_tracked(client: ArrClient, media_type: str, tmdb_id: int, tvdb_id: Optional[int]) -> bool:
        if await client.find_by_external_id(tmdb_id):
            return True
        if media_type == "tv" and tvdb_id:
            return bool(await client.find_by_tvdb_id(tvdb_id))
        return False

