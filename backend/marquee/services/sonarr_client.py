"""
sonarr_client.py

Sonarr (TV automation) API v3 client: series lookup/add, episode listing,
episode monitoring and search commands.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from marquee.services.arr_client import ArrClient, ServiceFatalError

logger = logging.getLogger(__name__)


class SonarrClient(ArrClient):
    service_type = "sonarr"
    queue_title_key = "seriesId"

    def _queue_params(self, page: int, page_size: int) -> dict:
        return {"page": page, "pageSize": page_size, "includeSeries": "false", "includeEpisode": "false"}

    async def list_titles(self) -> List[Dict[str, Any]]:
        async def _load():
            return await self._request("GET", "series") or []
        return await self.list_cache.get_or_load("series", _load)

    async def get_title(self, series_id: int) -> Dict[str, Any]:
        """Raises ServiceNotFoundError when Sonarr no longer tracks the series."""
        return await self._request("GET", f"series/{int(series_id)}")

    async def find_by_external_id(self, tmdb_id: int) -> Optional[Dict[str, Any]]:
        for series in await self.list_titles():
            if series.get("tmdbId") == int(tmdb_id):
                return series
        return None

    async def find_by_tvdb_id(self, tvdb_id: int) -> Optional[Dict[str, Any]]:
        data = await self._request("GET", "series", params={"tvdbId": int(tvdb_id)})
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    async def lookup_series(self, term: str) -> List[Dict[str, Any]]:
        return await self._request("GET", "series/lookup", params={"term": term}) or []

    async def add_title(self, tvdb_id: int, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Add a series by TVDB id built from Sonarr's own lookup result.

        overrides may carry `monitor` ("all" or "none"), `search` and any
        series field. An already-tracked series is returned unchanged.
        """
        overrides = dict(overrides or {})
        existing = await self.find_by_tvdb_id(tvdb_id)
        if existing:
            logger.info(f"Sonarr already tracks tvdb:{tvdb_id} as series {existing.get('id')}")
            return existing

        matches = await self.lookup_series(f"tvdb:{int(tvdb_id)}")
        if not matches:
            raise ServiceFatalError(f"sonarr lookup returned nothing for tvdb:{tvdb_id}", self.service_type)
        series = dict(matches[0])

        root, profile = await self._resolve_defaults()
        monitor = overrides.pop("monitor", "all")
        search = overrides.pop("search", self.config.get("searchOnAdd", True))
        series.update({
            "qualityProfileId": overrides.pop("qualityProfileId", profile),
            "rootFolderPath": overrides.pop("rootFolderPath", root),
            "seriesType": overrides.pop("seriesType", self.config.get("seriesType", "standard")),
            "seasonFolder": overrides.pop("seasonFolder", self.config.get("seasonFolder", True)),
            "monitored": True,
            "addOptions": {
                "monitor": monitor,
                "searchForMissingEpisodes": bool(search) and monitor != "none",
                "searchForCutoffUnmetEpisodes": False,
            },
        })
        if self.config.get("languageProfileId"):
            series["languageProfileId"] = self.config["languageProfileId"]
        series.update(overrides)

        created = await self._request("POST", "series", json_body=series)
        self.list_cache.clear()
        logger.info(f"Added tvdb:{tvdb_id} to Sonarr as series {created.get('id') if created else '?'}")
        return created

    async def get_episodes(self, series_id: int) -> List[Dict[str, Any]]:
        return await self._request("GET", "episode", params={"seriesId": int(series_id)}) or []

    async def set_episodes_monitored(self, episode_ids: Iterable[int], monitored: bool = True) -> Any:
        ids = [int(e) for e in episode_ids]
        if not ids:
            return None
        return await self._request("PUT", "episode/monitor", json_body={"episodeIds": ids, "monitored": bool(monitored)})

    async def trigger_episode_search(self, episode_ids: Iterable[int]) -> Any:
        ids = [int(e) for e in episode_ids]
        if not ids:
            return None
        return await self._request("POST", "command", json_body={"name": "EpisodeSearch", "episodeIds": ids})

    async def monitor_and_search(self, series_id: int, pairs: Iterable[Tuple[int, int]]) -> List[int]:
        """Monitor and search the given (season, episode) pairs; returns the matched episode ids."""
        wanted = {(int(s), int(e)) for s, e in pairs}
        episodes = await self.get_episodes(series_id)
        ids = [ep["id"] for ep in episodes
               if (ep.get("seasonNumber"), ep.get("episodeNumber")) in wanted and isinstance(ep.get("id"), int)]
        if ids:
            await self.set_episodes_monitored(ids, True)
            await self.trigger_episode_search(ids)
        return ids
