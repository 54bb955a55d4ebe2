"""
Trakt OAuth endpoints for linking a user's Trakt watchlist.
"""
import logging
import uuid
from urllib.parse import urlencode
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from marquee.core.config import settings
from marquee.core.database import get_db
from marquee.core.redis_client import get_redis
from marquee.models import User
from marquee.services.trakt_client import (
    TraktAPIError, TraktAuthError, TraktClient, exchange_authorization_code, store_user_tokens,
)
from marquee.utils.timezone import format_iso_utc

router = APIRouter()
logger = logging.getLogger(__name__)

TRAKT_AUTHORIZE_URL = "https://trakt.tv/oauth/authorize"
STATE_TTL_SECONDS = 600


def _require_configured() -> None:
    if not settings.trakt_client_id or not settings.trakt_client_secret:
        raise HTTPException(
            status_code=400,
            detail="Trakt API credentials not configured. Please set them up first."
        )


def _get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/oauth/url")
async def get_oauth_url(user_id: int = Query(1)):
    """Get Trakt OAuth authorization URL."""
    _require_configured()
    state = str(uuid.uuid4())

    # State maps back to the user completing the flow
    await get_redis().setex(f"trakt_oauth_state:{state}", STATE_TTL_SECONDS, str(user_id))

    query = urlencode({
        "response_type": "code",
        "client_id": settings.trakt_client_id,
        "redirect_uri": settings.trakt_redirect_uri,
        "state": state,
    })
    return {"auth_url": f"{TRAKT_AUTHORIZE_URL}?{query}", "state": state}


@router.post("/oauth/callback")
async def oauth_callback(code: str = Query(...), state: str = Query(...), db: Session = Depends(get_db)):
    """Handle OAuth callback and store the user's tokens encrypted."""
    redis = get_redis()
    state_key = f"trakt_oauth_state:{state}"
    stored = await redis.get(state_key)
    if not stored:
        raise HTTPException(status_code=400, detail="Invalid or expired state parameter")
    await redis.delete(state_key)

    user = _get_user(db, int(stored))
    try:
        token_data = await exchange_authorization_code(code)
    except TraktAPIError as e:
        logger.error(f"OAuth callback failed for user {user.id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    try:
        store_user_tokens(db, user, token_data)
    except Exception as e:
        db.rollback()
        logger.error(f"Storing Trakt tokens for user {user.id} failed: {e}")
        raise HTTPException(status_code=500, detail="Authentication failed")

    try:
        profile = await TraktClient(user_id=user.id).get_user_profile()
        return {"success": True, "user": {"username": profile.get("username"), "name": profile.get("name")}}
    except TraktAPIError as e:
        logger.warning(f"Failed to fetch user info after auth: {e}")
        return {"success": True, "user": None}


@router.get("/status")
async def get_auth_status(user_id: int = Query(1), db: Session = Depends(get_db)):
    """Get current Trakt authentication status for a user."""
    user = _get_user(db, user_id)
    authenticated = bool(user.trakt_access_token_encrypted)
    profile = None
    error = None
    if authenticated:
        try:
            data = await TraktClient(user_id=user.id).get_user_profile()
            profile = {"username": data.get("username"), "name": data.get("name")}
        except TraktAuthError as e:
            authenticated = False
            error = str(e)
        except TraktAPIError as e:
            # Still report authenticated but with limited info
            error = f"profile fetch failed: {e}"
    return {
        "authenticated": authenticated,
        "user": profile,
        "expires_at": format_iso_utc(user.trakt_expires_at),
        "error": error,
    }


@router.delete("/disconnect")
def disconnect(user_id: int = Query(1), db: Session = Depends(get_db)):
    """Disconnect Trakt account."""
    user = _get_user(db, user_id)
    try:
        user.trakt_access_token_encrypted = None
        user.trakt_refresh_token_encrypted = None
        user.trakt_expires_at = None
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to disconnect: {e}")
        raise HTTPException(status_code=500, detail="Failed to disconnect account")
    return {"success": True, "message": "Trakt account disconnected"}
