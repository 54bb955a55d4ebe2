"""
requests.py

API endpoints for media requests: list, detail, create, and on-demand sync.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from marquee import crud
from marquee.core.database import get_db
from marquee.models import RequestStatus, RequestType, ServiceType, User
from marquee.schemas import MediaRequestSchema, RequestCreate
from marquee.services.request_submission import RequestSubmitter
from marquee.services.request_sync import RequestSyncService
from marquee.services.tmdb_client import fetch_display_metadata
from marquee.services.watchlist_import import can_auto_approve

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/", response_model=List[MediaRequestSchema])
def list_requests(
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    request_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    if status and status not in RequestStatus.ALL:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    return crud.list_requests(status=status, requested_by=user_id, request_type=request_type,
                              limit=limit, offset=offset, db=db)


@router.get("/{request_id}", response_model=MediaRequestSchema)
def get_request(request_id: str, db: Session = Depends(get_db)):
    req = crud.get_request(request_id, db=db)
    if req is None:
        raise HTTPException(status_code=404, detail="Request not found")
    return req


@router.post("/", response_model=MediaRequestSchema, status_code=201)
async def create_request(payload: RequestCreate, db: Session = Depends(get_db)):
    """Create a request. Users allowed to auto-approve get it sent to Radarr/Sonarr immediately."""
    user = db.get(User, payload.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")

    request_type = payload.request_type
    if request_type == RequestType.EPISODE and not payload.episodes:
        raise HTTPException(status_code=400, detail="TV requests need at least one episode")

    existing = crud.find_active_request_by_tmdb(request_type, payload.tmdb_id, db=db)
    if existing is not None:
        raise HTTPException(status_code=409, detail=f"An active request already exists: {existing.id}")

    meta = await fetch_display_metadata(payload.tmdb_id, payload.media_type) or {}
    title = meta.get("title") or payload.title
    if not title:
        raise HTTPException(status_code=400, detail="Title unknown; provide one or configure TMDB")

    if request_type == RequestType.MOVIE:
        items = [{"provider": ServiceType.RADARR}]
    else:
        items = [{"provider": ServiceType.SONARR, "season": e.season, "episode": e.episode}
                 for e in payload.episodes]

    auto = can_auto_approve(user, payload.media_type)
    try:
        req = crud.create_request_with_items(
            request_type=request_type,
            tmdb_id=payload.tmdb_id,
            tvdb_id=payload.tvdb_id or meta.get("tvdb_id"),
            title=title,
            requested_by=user.id,
            status=RequestStatus.QUEUED if auto else RequestStatus.PENDING,
            items=items,
            poster_path=meta.get("poster_path"),
            backdrop_path=meta.get("backdrop_path"),
            release_year=meta.get("release_year"),
            db=db,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if auto:
        try:
            await RequestSubmitter().submit(db, req)
        except Exception as e:
            db.rollback()
            logger.warning(f"Immediate submission of request {req.id} failed; it stays queued: {e}")
    return crud.get_request(req.id, db=db)


@router.post("/sync")
def trigger_full_sync():
    """Enqueue a reconciliation pass on the worker."""
    from marquee.services.tasks import reconcile_requests
    task = reconcile_requests.delay()
    return {"success": True, "task_id": task.id}


@router.post("/{request_id}/sync")
async def sync_request_now(request_id: str, db: Session = Depends(get_db)):
    """Reconcile one request right away ("try again now")."""
    if crud.get_request(request_id, db=db) is None:
        raise HTTPException(status_code=404, detail="Request not found")
    summary = await RequestSyncService().sync_request(request_id)
    if summary.get("status") == "locked":
        raise HTTPException(status_code=409, detail="A sync pass is already running; try again shortly")
    db.expire_all()
    return {"summary": summary, "request": MediaRequestSchema.model_validate(crud.get_request(request_id, db=db))}
