"""
search.py - Manual release search via Prowlarr
"""
from fastapi import APIRouter, Query, HTTPException
from typing import List
import logging
from marquee.models import ServiceType
from marquee.schemas import ReleaseSchema
from marquee.services.arr_client import ServiceError, ServiceTransientError
from marquee.services.clients import build_client

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/releases", response_model=List[ReleaseSchema])
async def search_releases(
    q: str = Query(..., min_length=1, description="Search term, or an id query such as tmdb:603"),
    media_type: str = Query(None, description="Restrict to 'movie' or 'tv' categories"),
    limit: int = Query(100, ge=1, le=500),
):
    """
    Search every Prowlarr indexer for releases, best-seeded first.
    """
    client = build_client(ServiceType.PROWLARR)
    if client is None:
        raise HTTPException(status_code=503, detail="Prowlarr is not configured")
    try:
        return await client.search(q, media_type=media_type, limit=limit)
    except ServiceTransientError as e:
        logger.warning(f"Prowlarr search '{q}' failed: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    except ServiceError as e:
        logger.error(f"Prowlarr search '{q}' rejected: {e}")
        raise HTTPException(status_code=502, detail=str(e))
