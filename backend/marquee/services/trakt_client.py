"""
trakt_client.py

Async Trakt API client for watchlist import. OAuth tokens live encrypted on the
user row; the access token is refreshed before use when it is within
TRAKT_REFRESH_MARGIN_SECONDS of expiry, and once more if Trakt answers 401.
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx

from marquee.core.config import settings
from marquee.core.database import SessionLocal
from marquee.models import User
from marquee.services.rate_limit import with_backoff
from marquee.utils.encryption import decrypt_optional, encrypt, encrypt_optional, DecryptionError
from marquee.utils.timezone import ensure_utc, expires_within, from_epoch, utc_now

logger = logging.getLogger(__name__)

TRAKT_API_URL = "https://api.trakt.tv"


class TraktAPIError(Exception):
    """Base exception for Trakt API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TraktAuthError(TraktAPIError):
    """Raised when Trakt authentication fails or token is missing/expired."""
    pass


class TraktNetworkError(TraktAPIError):
    """Raised when network or connection to Trakt fails."""
    pass


class TraktUnavailableError(TraktAPIError):
    """Raised when Trakt API is offline, unavailable or throttling."""
    pass


def _base_headers(client_id: str) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "trakt-api-version": "2",
        "trakt-api-key": client_id,
    }


def token_expiry(token_data: Dict[str, Any]):
    """expires_at = created_at + expires_in (Trakt returns both in seconds)."""
    expires_in = token_data.get("expires_in")
    if expires_in is None:
        return None
    created = from_epoch(token_data.get("created_at")) or utc_now()
    return created + timedelta(seconds=int(expires_in))


def store_user_tokens(db, user: User, token_data: Dict[str, Any]) -> None:
    """Persist a Trakt token response (authorization_code or refresh_token grant) on the user."""
    user.trakt_access_token_encrypted = encrypt(token_data["access_token"])
    if token_data.get("refresh_token"):
        user.trakt_refresh_token_encrypted = encrypt_optional(token_data.get("refresh_token"))
    user.trakt_expires_at = token_expiry(token_data)
    db.commit()


async def exchange_authorization_code(code: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, Any]:
    """Swap an OAuth authorization code for tokens."""
    if not settings.trakt_client_id or not settings.trakt_client_secret:
        raise TraktAuthError("Trakt integration is not configured")
    try:
        async with httpx.AsyncClient(timeout=10, transport=transport) as client:
            resp = await client.post(
                f"{TRAKT_API_URL}/oauth/token",
                json={
                    "code": code,
                    "client_id": settings.trakt_client_id,
                    "client_secret": settings.trakt_client_secret,
                    "redirect_uri": settings.trakt_redirect_uri,
                    "grant_type": "authorization_code",
                },
                headers=_base_headers(settings.trakt_client_id),
            )
    except httpx.RequestError as e:
        raise TraktNetworkError(f"Network error connecting to Trakt API: {type(e).__name__}")
    if not resp.is_success:
        logger.error(f"Trakt token exchange failed: {resp.status_code} {resp.text[:200]}")
        raise TraktAuthError("Failed to exchange code for token", resp.status_code)
    return resp.json()


class TraktClient:
    def __init__(self, user_id: int, session_factory: Callable = SessionLocal,
                 client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 refresh_margin_seconds: Optional[int] = None):
        self.user_id = user_id
        self.session_factory = session_factory
        self._client_id = client_id if client_id is not None else settings.trakt_client_id
        self._client_secret = client_secret if client_secret is not None else settings.trakt_client_secret
        self._transport = transport
        self._margin = refresh_margin_seconds if refresh_margin_seconds is not None else settings.trakt_refresh_margin_seconds
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._expires_at = None

    def _load_tokens(self) -> None:
        db = self.session_factory()
        try:
            user = db.get(User, self.user_id)
            if user is None:
                raise TraktAuthError(f"Unknown user {self.user_id}")
            try:
                self._access_token = decrypt_optional(user.trakt_access_token_encrypted)
                self._refresh_token = decrypt_optional(user.trakt_refresh_token_encrypted)
            except DecryptionError as e:
                raise TraktAuthError(f"Stored Trakt tokens are unreadable: {e}")
            self._expires_at = ensure_utc(user.trakt_expires_at)
        finally:
            db.close()

    def _persist_tokens(self, token_data: Dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            user = db.get(User, self.user_id)
            if user is None:
                raise TraktAuthError(f"Unknown user {self.user_id}")
            store_user_tokens(db, user, token_data)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        self._access_token = token_data["access_token"]
        self._refresh_token = token_data.get("refresh_token") or self._refresh_token
        self._expires_at = token_expiry(token_data)

    async def refresh_access_token(self) -> str:
        if not self._refresh_token or not self._client_id or not self._client_secret:
            raise TraktAuthError("Trakt access token expired and no refresh token available. Please reauthorize your Trakt account.")
        payload = {
            "refresh_token": self._refresh_token,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "redirect_uri": settings.trakt_redirect_uri,
            "grant_type": "refresh_token",
        }
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                resp = await client.post(f"{TRAKT_API_URL}/oauth/token", json=payload, headers=_base_headers(self._client_id))
        except httpx.RequestError as e:
            raise TraktNetworkError(f"Network error refreshing Trakt token: {type(e).__name__}")
        if not resp.is_success:
            logger.error(f"Trakt token refresh failed for user {self.user_id}: {resp.status_code}")
            raise TraktAuthError("Trakt access token expired and refresh failed. Please reauthorize your Trakt account.", resp.status_code)
        tokens = resp.json()
        if not tokens.get("access_token"):
            raise TraktAuthError("Trakt refresh response carried no access token")
        self._persist_tokens(tokens)
        logger.info(f"Refreshed Trakt token for user {self.user_id}")
        return self._access_token

    async def ensure_fresh_token(self) -> str:
        if self._access_token is None:
            self._load_tokens()
        if not self._client_id:
            raise TraktAuthError("Trakt integration is not configured. Please contact your administrator.")
        if not self._access_token:
            raise TraktAuthError("Trakt account is not authorized. Please reauthorize your Trakt account.")
        if self._expires_at is not None and expires_within(self._expires_at, self._margin):
            await self.refresh_access_token()
        return self._access_token

    async def _send(self, method: str, endpoint: str, token: str, params: Optional[dict]) -> httpx.Response:
        headers = {**_base_headers(self._client_id), "Authorization": f"Bearer {token}"}
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                return await client.request(method, f"{TRAKT_API_URL}{endpoint}", headers=headers, params=params)
        except httpx.TimeoutException:
            raise TraktNetworkError("Network timeout connecting to Trakt API.")
        except httpx.RequestError as e:
            raise TraktNetworkError(f"Network error connecting to Trakt API: {type(e).__name__}")

    async def _request(self, method: str, endpoint: str, params: Optional[dict] = None, max_retries: int = 3) -> Any:
        async def make_request():
            token = await self.ensure_fresh_token()
            resp = await self._send(method, endpoint, token, params)
            if resp.status_code == 401:
                token = await self.refresh_access_token()
                resp = await self._send(method, endpoint, token, params)
                if resp.status_code == 401:
                    raise TraktAuthError("Trakt rejected the refreshed token. Please reauthorize your Trakt account.", 401)
            status = resp.status_code
            if status == 429:
                raise TraktUnavailableError("Trakt API rate limit exceeded.", status)
            if status in (502, 503, 504) or status >= 520:
                raise TraktUnavailableError(f"Trakt API is currently unavailable (status {status}).", status)
            if status >= 400:
                raise TraktAPIError(f"Trakt API returned HTTP {status}", status)
            if status == 204 or not resp.content:
                return {}
            return resp.json()

        return await with_backoff(make_request, max_retries=max_retries, service="trakt_api", user_id=str(self.user_id))

    async def get_user_profile(self) -> Dict[str, Any]:
        return await self._request("GET", "/users/me")

    async def get_watchlist(self, media_type: str = "movies") -> List[Dict[str, Any]]:
        """Watchlist entries normalised to {media_type, tmdb_id, tvdb_id, title, year}."""
        if media_type not in ("movies", "shows"):
            raise ValueError(f"Unsupported Trakt watchlist type: {media_type}")
        rows = await self._request("GET", f"/sync/watchlist/{media_type}") or []
        key = "movie" if media_type == "movies" else "show"
        items: List[Dict[str, Any]] = []
        for row in rows:
            media = row.get(key) or {}
            ids = media.get("ids") or {}
            if not ids.get("tmdb"):
                continue
            items.append({
                "media_type": "movie" if key == "movie" else "tv",
                "tmdb_id": int(ids["tmdb"]),
                "tvdb_id": ids.get("tvdb"),
                "title": media.get("title"),
                "year": media.get("year"),
            })
        return items
