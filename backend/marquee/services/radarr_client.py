"""
radarr_client.py

Radarr (movie automation) API v3 client.
"""
import logging
from typing import Any, Dict, List, Optional

from marquee.services.arr_client import ArrClient, ServiceFatalError

logger = logging.getLogger(__name__)


class RadarrClient(ArrClient):
    service_type = "radarr"
    queue_title_key = "movieId"

    def _queue_params(self, page: int, page_size: int) -> dict:
        return {"page": page, "pageSize": page_size, "includeMovie": "false"}

    async def list_titles(self) -> List[Dict[str, Any]]:
        async def _load():
            return await self._request("GET", "movie") or []
        return await self.list_cache.get_or_load("movie", _load)

    async def get_title(self, movie_id: int) -> Dict[str, Any]:
        """Raises ServiceNotFoundError when Radarr no longer tracks the movie."""
        return await self._request("GET", f"movie/{int(movie_id)}")

    async def find_by_external_id(self, tmdb_id: int) -> Optional[Dict[str, Any]]:
        data = await self._request("GET", "movie", params={"tmdbId": int(tmdb_id)})
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    async def lookup(self, tmdb_id: int) -> Optional[Dict[str, Any]]:
        data = await self._request("GET", "movie/lookup/tmdb", params={"tmdbId": int(tmdb_id)})
        return data or None

    async def add_title(self, tmdb_id: int, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Add a movie by TMDB id; an existing movie is returned unchanged."""
        overrides = dict(overrides or {})
        existing = await self.find_by_external_id(tmdb_id)
        if existing:
            logger.info(f"Radarr already tracks tmdb:{tmdb_id} as movie {existing.get('id')}")
            return existing

        root, profile = await self._resolve_defaults()
        lookup = await self.lookup(tmdb_id) or {}
        title = overrides.pop("title", None) or lookup.get("title")
        if not title:
            raise ServiceFatalError(f"radarr lookup returned nothing for tmdb:{tmdb_id}", self.service_type)
        search = overrides.pop("search", self.config.get("searchOnAdd", True))

        payload = {
            "title": title,
            "tmdbId": int(tmdb_id),
            "year": lookup.get("year"),
            "titleSlug": lookup.get("titleSlug"),
            "images": lookup.get("images") or [],
            "qualityProfileId": overrides.pop("qualityProfileId", profile),
            "rootFolderPath": overrides.pop("rootFolderPath", root),
            "minimumAvailability": overrides.pop("minimumAvailability", self.config.get("minimumAvailability", "released")),
            "monitored": True,
            "addOptions": {"searchForMovie": bool(search)},
        }
        payload.update(overrides)
        created = await self._request("POST", "movie", json_body=payload)
        self.list_cache.clear()
        logger.info(f"Added tmdb:{tmdb_id} to Radarr as movie {created.get('id') if created else '?'}")
        return created
