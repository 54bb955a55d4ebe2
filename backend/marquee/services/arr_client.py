"""
arr_client.py

Shared async HTTP plumbing for the *arr family (Radarr, Sonarr, Prowlarr) with
one consistent error classification:

- ServiceNotFoundError: the service no longer has the entity (HTTP 404)
- ServiceTransientError: timeouts, connection failures, 5xx, 429, garbage bodies;
  retry next pass and leave request status alone
- ServiceAuthError / ServiceFatalError: bad credentials or configuration; surface
  to operators, never mutate individual request statuses

Queue snapshots are normalised into QueueEntry records and indexed per pass.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from marquee.core.config import settings
from marquee.services.service_directory import ResolvedService
from marquee.utils.cache import TTLCache

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base exception for external service errors."""

    def __init__(self, message: str, service: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.service = service
        self.status_code = status_code


class ServiceNotFoundError(ServiceError):
    """The external service reports the entity does not exist."""
    pass


class ServiceTransientError(ServiceError):
    """Network/timeout/5xx style failure; safe to retry later."""
    pass


class ServiceFatalError(ServiceError):
    """Misconfiguration or a request the service will keep rejecting."""
    pass


class ServiceAuthError(ServiceFatalError):
    """Credentials rejected (401/403)."""
    pass


def classify_status(status_code: int, service: str, detail: str = "") -> Optional[ServiceError]:
    """Map an HTTP status to the error taxonomy; None for success."""
    if status_code < 400:
        return None
    msg = f"{service} responded {status_code}" + (f": {detail[:200]}" if detail else "")
    if status_code == 404:
        return ServiceNotFoundError(msg, service, status_code)
    if status_code in (401, 403):
        return ServiceAuthError(msg, service, status_code)
    if status_code in (408, 429) or status_code >= 500:
        return ServiceTransientError(msg, service, status_code)
    return ServiceFatalError(msg, service, status_code)


@dataclass(frozen=True)
class QueueEntry:
    title_id: Optional[int]  # movieId (radarr) or seriesId (sonarr)
    episode_ids: Tuple[int, ...] = ()
    status: str = ""
    title: Optional[str] = None
    size: Optional[float] = None
    sizeleft: Optional[float] = None

    @property
    def is_active(self) -> bool:
        state = (self.status or "").strip().lower()
        return bool(state) and state not in ("completed", "failed")

    @classmethod
    def from_record(cls, record: Dict[str, Any], title_key: str) -> "QueueEntry":
        episode_ids: List[int] = []
        for eid in record.get("episodeIds") or []:
            if isinstance(eid, int):
                episode_ids.append(eid)
        if not episode_ids and isinstance(record.get("episodeId"), int):
            episode_ids.append(record["episodeId"])
        title_id = record.get(title_key)
        return cls(
            title_id=title_id if isinstance(title_id, int) else None,
            episode_ids=tuple(episode_ids),
            status=str(record.get("status") or ""),
            title=record.get("title"),
            size=record.get("size"),
            sizeleft=record.get("sizeleft"),
        )


@dataclass
class QueueIndex:
    """Read-only lookup over one queue snapshot, rebuilt every pass."""
    by_title: Dict[int, List[QueueEntry]] = field(default_factory=dict)
    by_episode: Dict[int, List[QueueEntry]] = field(default_factory=dict)

    @classmethod
    def build(cls, entries: Iterable[QueueEntry]) -> "QueueIndex":
        index = cls()
        for entry in entries:
            if entry.title_id is not None:
                index.by_title.setdefault(entry.title_id, []).append(entry)
            for eid in entry.episode_ids:
                index.by_episode.setdefault(eid, []).append(entry)
        return index

    def title_active(self, title_id: Optional[int]) -> bool:
        if title_id is None:
            return False
        return any(e.is_active for e in self.by_title.get(title_id, ()))

    def episode_active(self, episode_id: Optional[int]) -> bool:
        if episode_id is None:
            return False
        return any(e.is_active for e in self.by_episode.get(episode_id, ()))

    def __len__(self) -> int:
        return sum(len(v) for v in self.by_title.values())


class ArrClient:
    """Base client; subclasses set service_type, api_version and queue_title_key."""

    service_type = "arr"
    api_version = "v3"
    queue_title_key = "movieId"

    def __init__(self, service: ResolvedService, transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: Optional[float] = None, list_ttl: Optional[float] = None,
                 profile_ttl: Optional[float] = None):
        self.service = service
        self.base_url = service.base_url.rstrip("/")
        self.config = dict(service.config or {})
        self._transport = transport
        self._timeout = timeout if timeout is not None else settings.service_timeout_seconds
        self.list_cache = TTLCache(list_ttl if list_ttl is not None else settings.list_cache_ttl_seconds)
        self.profile_cache = TTLCache(profile_ttl if profile_ttl is not None else settings.profile_cache_ttl_seconds)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/{self.api_version}/{path.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        return {"X-Api-Key": self.service.api_key, "Accept": "application/json"}

    async def _request(self, method: str, path: str, params: Optional[dict] = None,
                       json_body: Optional[Any] = None) -> Any:
        url = self._url(path)
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.request(method, url, headers=self._headers(), params=params, json=json_body)
        except httpx.TimeoutException:
            raise ServiceTransientError(f"{self.service_type} request timed out: {method} {path}", self.service_type, 504)
        except httpx.TransportError as e:
            raise ServiceTransientError(f"{self.service_type} unreachable: {type(e).__name__}", self.service_type, 502)

        error = classify_status(resp.status_code, self.service_type, resp.text)
        if error is not None:
            raise error

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            raise ServiceTransientError(f"{self.service_type} returned a non-JSON body for {path}", self.service_type, resp.status_code)

    async def get_queue(self, page: int = 1, page_size: Optional[int] = None) -> List[QueueEntry]:
        page_size = page_size or settings.queue_page_size
        data = await self._request("GET", "queue", params=self._queue_params(page, page_size))
        records = data.get("records") if isinstance(data, dict) else data
        entries = [QueueEntry.from_record(r, self.queue_title_key) for r in (records or []) if isinstance(r, dict)]
        logger.debug(f"{self.service_type} queue page {page}: {len(entries)} entries")
        return entries

    def _queue_params(self, page: int, page_size: int) -> dict:
        return {"page": page, "pageSize": page_size}

    async def get_quality_profiles(self) -> List[Dict[str, Any]]:
        async def _load():
            return await self._request("GET", "qualityprofile") or []
        return await self.profile_cache.get_or_load("qualityprofile", _load)

    async def get_root_folders(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "rootfolder") or []

    async def system_status(self) -> Dict[str, Any]:
        return await self._request("GET", "system/status") or {}

    async def _resolve_defaults(self) -> Tuple[str, int]:
        """Root folder path and quality profile id from config, else the first the service offers."""
        root = self.config.get("rootFolderPath")
        profile = self.config.get("qualityProfileId")
        if not root:
            folders = await self.get_root_folders()
            if not folders:
                raise ServiceFatalError(f"{self.service_type} has no root folder configured", self.service_type)
            root = folders[0].get("path")
        if not profile:
            profiles = await self.get_quality_profiles()
            if not profiles:
                raise ServiceFatalError(f"{self.service_type} has no quality profiles", self.service_type)
            profile = profiles[0].get("id")
        return str(root), int(profile)
