"""
prowlarr_client.py

Prowlarr (indexer aggregator) client for the manual release search path.
"""
import logging
from typing import Any, Dict, List, Optional

from marquee.services.arr_client import ArrClient

logger = logging.getLogger(__name__)

SEARCH_CATEGORIES = {
    "movie": [2000, 2030, 2040, 2045, 2050],
    "tv": [5000, 5030, 5040],
}


def _normalize_release(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "title": raw.get("title"),
        "indexer": raw.get("indexer"),
        "indexer_id": raw.get("indexerId"),
        "size": raw.get("size"),
        "seeders": raw.get("seeders"),
        "leechers": raw.get("leechers"),
        "guid": raw.get("guid"),
        "protocol": raw.get("protocol"),
        "publish_date": raw.get("publishDate"),
        "download_url": raw.get("downloadUrl") or raw.get("magnetUrl"),
        "info_url": raw.get("infoUrl"),
    }


class ProwlarrClient(ArrClient):
    service_type = "prowlarr"
    api_version = "v1"

    async def search(self, term: str, media_type: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Free-text or id-qualified ("tmdb:603") release search across all indexers."""
        params: Dict[str, Any] = {"query": term, "type": "search", "limit": int(limit)}
        if media_type in SEARCH_CATEGORIES:
            params["categories"] = SEARCH_CATEGORIES[media_type]
        data = await self._request("GET", "search", params=params) or []
        releases = [_normalize_release(r) for r in data if isinstance(r, dict)]
        releases.sort(key=lambda r: r.get("seeders") or 0, reverse=True)
        logger.info(f"Prowlarr search '{term}' returned {len(releases)} releases")
        return releases[:limit]
