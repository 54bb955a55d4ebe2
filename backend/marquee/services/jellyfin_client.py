"""
jellyfin_client.py

Jellyfin client for the two things the engine needs from the media server:
- the per-user watchlist (favorites with TMDB provider ids)
- the authoritative availability view, used as a live cross-check before an
  episode request is announced as available

Only items with a real file count as available: virtual items and bare series
containers are ignored.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from marquee.core.config import settings
from marquee.models import ServiceType
from marquee.services.service_directory import ResolvedService, ServiceDirectory, get_service_directory

logger = logging.getLogger(__name__)

FILE_FIELDS = "ProviderIds,LocationType,MediaSources,Path,IsVirtual,Type"


class JellyfinError(Exception):
    """Raised when Jellyfin cannot be reached or rejects a call."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def has_physical_file(item: Dict[str, Any]) -> bool:
    location = str(item.get("LocationType") or "").lower()
    if location == "virtual" or item.get("IsVirtual") is True:
        return False
    if str(item.get("Type") or "").lower() == "series":
        return False
    sources = item.get("MediaSources") or []
    return bool(item.get("Path")) or any(s.get("Path") for s in sources if isinstance(s, dict))


def provider_id(item: Dict[str, Any], key: str) -> Optional[int]:
    raw = (item.get("ProviderIds") or {}).get(key)
    try:
        return int(raw) if raw not in (None, "") else None
    except (TypeError, ValueError):
        return None


class JellyfinClient:
    def __init__(self, service: ResolvedService, transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: Optional[float] = None):
        self.service = service
        self.base_url = service.base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout if timeout is not None else settings.service_timeout_seconds

    async def _request(self, path: str, params: Optional[dict] = None) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(url, headers={"X-Emby-Token": self.service.api_key}, params=params)
        except httpx.HTTPError as e:
            raise JellyfinError(f"Jellyfin unreachable: {type(e).__name__}")
        if resp.status_code >= 400:
            raise JellyfinError(f"Jellyfin responded {resp.status_code} for {path}", resp.status_code)
        try:
            return resp.json()
        except ValueError:
            raise JellyfinError(f"Jellyfin returned a non-JSON body for {path}", resp.status_code)

    async def get_favorites(self, jellyfin_user_id: str) -> List[Dict[str, Any]]:
        """Favorited movies and series, newest first (treated as the user's watchlist)."""
        data = await self._request(
            f"Users/{jellyfin_user_id}/Items",
            params={
                "Recursive": "true",
                "IncludeItemTypes": "Movie,Series",
                "Filters": "IsFavorite",
                "Fields": "ProviderIds,OriginalTitle,ProductionYear",
                "SortBy": "DateCreated",
                "SortOrder": "Descending",
                "Limit": 200,
            },
        )
        items = data.get("Items") if isinstance(data, dict) else None
        return items if isinstance(items, list) else []

    async def _items_by_external_id(self, source: str, external_id: int, include_type: str) -> List[Dict[str, Any]]:
        data = await self._request(
            "Items",
            params={
                "ExternalId": f"{source}:{int(external_id)}",
                "IncludeItemTypes": include_type,
                "Recursive": "true",
                "Fields": FILE_FIELDS,
            },
        )
        items = data.get("Items") if isinstance(data, dict) else None
        return items if isinstance(items, list) else []

    async def is_available(self, kind: str, tmdb_id: int, tvdb_id: Optional[int] = None) -> bool:
        """A movie file, or at least one episode file, exists for the title."""
        include_type = "Episode" if kind == "tv" else "Movie"
        for source, ext_id in (("tmdb", tmdb_id), ("tvdb", tvdb_id)):
            if not ext_id:
                continue
            items = await self._items_by_external_id(source, ext_id, include_type)
            if any(str(i.get("Type") or "").lower() == include_type.lower() and has_physical_file(i) for i in items):
                return True
        return False

    async def find_series_id(self, tmdb_id: int, tvdb_id: Optional[int] = None) -> Optional[str]:
        for source, ext_id in (("tmdb", tmdb_id), ("tvdb", tvdb_id)):
            if not ext_id:
                continue
            items = await self._items_by_external_id(source, ext_id, "Series")
            for item in items:
                if str(item.get("Type") or "").lower() == "series" and item.get("Id"):
                    return str(item["Id"])
        return None

    async def are_episodes_available(self, tmdb_id: int, pairs: Iterable[Tuple[int, int]],
                                      tvdb_id: Optional[int] = None) -> bool:
        """Every (season, episode) pair has a physical file in the library."""
        wanted = {(int(s), int(e)) for s, e in pairs}
        if not wanted:
            return await self.is_available("tv", tmdb_id, tvdb_id)
        series_id = await self.find_series_id(tmdb_id, tvdb_id)
        if not series_id:
            return False
        data = await self._request(f"Shows/{series_id}/Episodes", params={"Fields": FILE_FIELDS})
        episodes = data.get("Items") if isinstance(data, dict) else []
        present = {
            (ep.get("ParentIndexNumber"), ep.get("IndexNumber"))
            for ep in episodes or []
            if has_physical_file(ep)
        }
        return wanted.issubset(present)


class LibraryAvailability:
    """Live availability cross-check against Jellyfin.

    Returns None when Jellyfin is not configured or cannot answer, so the
    caller proceeds on *arr evidence alone.
    """

    def __init__(self, directory: Optional[ServiceDirectory] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.directory = directory
        self._transport = transport

    def _client(self) -> Optional[JellyfinClient]:
        resolved = (self.directory or get_service_directory()).resolve_service(ServiceType.JELLYFIN)
        if resolved is None:
            return None
        return JellyfinClient(resolved, transport=self._transport)

    async def episodes_available(self, request) -> Optional[bool]:
        client = self._client()
        if client is None:
            return None
        pairs = [(i.season, i.episode) for i in request.items if i.season is not None and i.episode is not None]
        try:
            return await client.are_episodes_available(request.tmdb_id, pairs, request.tvdb_id)
        except JellyfinError as e:
            logger.warning(f"Jellyfin availability check failed for request {request.id}: {e}")
            return None
