"""
TMDB client for Marquee.
- Async httpx client; results are not cached here.
- API key from Redis settings (settings:global:tmdb_api_key), else TMDB_API_KEY.
- 429 responses go through the shared exponential backoff.
- Failures return None: display metadata is optional for request creation.
"""
import logging
from typing import Any, Dict, Optional
import httpx
from marquee.core.config import settings
from marquee.core.redis_client import get_redis
from marquee.services.rate_limit import with_backoff

TMDB_BASE = "https://api.themoviedb.org/3"
logger = logging.getLogger(__name__)


class TMDBThrottled(Exception):
    status_code = 429


async def get_tmdb_api_key() -> Optional[str]:
    try:
        key = await get_redis().get("settings:global:tmdb_api_key")
    except Exception as e:
        logger.debug(f"TMDB key lookup in Redis failed: {e}")
        key = None
    return key or settings.tmdb_api_key or None


async def fetch_tmdb_metadata(tmdb_id: int, media_type: str = "movie",
                              transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[Dict[str, Any]]:
    """Raw TMDB record for /movie/{id} or /tv/{id}, with external ids appended."""
    api_key = await get_tmdb_api_key()
    if not api_key:
        logger.warning("TMDB API key not configured")
        return None

    url = f"{TMDB_BASE}/{media_type}/{int(tmdb_id)}"
    params = {"api_key": api_key, "append_to_response": "external_ids"}

    async def make_request():
        async with httpx.AsyncClient(timeout=10, transport=transport) as client:
            resp = await client.get(url, params=params)
            if resp.status_code == 429:
                raise TMDBThrottled(f"TMDB throttled {media_type}/{tmdb_id}")
            resp.raise_for_status()
            return resp.json()

    try:
        return await with_backoff(make_request, max_retries=4, service="tmdb_api", user_id="global")
    except Exception as e:
        logger.debug(f"TMDB API failed for {media_type}/{tmdb_id}: {e}")
        return None


def _year(date_str: Optional[str]) -> Optional[int]:
    if not date_str or len(date_str) < 4:
        return None
    try:
        return int(date_str[:4])
    except ValueError:
        return None


async def fetch_display_metadata(tmdb_id: int, media_type: str = "movie",
                                 transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[Dict[str, Any]]:
    """Title, artwork, release year and tvdb id for request cards; None when unavailable."""
    tmdb_type = "movie" if media_type == "movie" else "tv"
    data = await fetch_tmdb_metadata(tmdb_id, tmdb_type, transport=transport)
    if not data:
        return None
    if tmdb_type == "movie":
        title = data.get("title") or data.get("original_title")
        year = _year(data.get("release_date"))
    else:
        title = data.get("name") or data.get("original_name")
        year = _year(data.get("first_air_date"))
    external = data.get("external_ids") or {}
    return {
        "title": title,
        "poster_path": data.get("poster_path"),
        "backdrop_path": data.get("backdrop_path"),
        "release_year": year,
        "tvdb_id": external.get("tvdb_id"),
    }
