from contextlib import contextmanager
from typing import List, Optional, Sequence
from sqlalchemy.orm import Session, selectinload
import json
import logging

from .core.database import SessionLocal
from . import models
from .models import MediaRequest, RequestItem, RequestStatus, RequestType, ServiceType

logger = logging.getLogger(__name__)


@contextmanager
def _session(db: Optional[Session] = None):
    """Use the caller's session, or open (and close) a fresh one."""
    if db is not None:
        yield db
        return
    own = SessionLocal()
    try:
        yield own
    finally:
        own.close()


def find_active_request_by_tmdb(request_type: str, tmdb_id: int, db: Optional[Session] = None) -> Optional[MediaRequest]:
    """An existing pending/queued/submitted request for the same title, if any."""
    with _session(db) as s:
        return (
            s.query(MediaRequest)
            .filter(
                MediaRequest.request_type == request_type,
                MediaRequest.tmdb_id == int(tmdb_id),
                MediaRequest.status.in_(RequestStatus.ACTIVE),
            )
            .order_by(MediaRequest.created_at.asc())
            .first()
        )


def create_request_with_items(
    *,
    request_type: str,
    tmdb_id: int,
    title: str,
    requested_by: int,
    status: str,
    items: Sequence[dict],
    tvdb_id: Optional[int] = None,
    poster_path: Optional[str] = None,
    backdrop_path: Optional[str] = None,
    release_year: Optional[int] = None,
    notified_status: Optional[str] = None,
    db: Optional[Session] = None,
) -> MediaRequest:
    """Create a request and its items in one transaction.

    items: dicts with provider, provider_id, season, episode and an optional status.
    """
    if request_type not in (RequestType.MOVIE, RequestType.EPISODE):
        raise ValueError(f"Unknown request type: {request_type}")
    if not items:
        raise ValueError("A request needs at least one item")
    if request_type == RequestType.MOVIE and len(items) != 1:
        raise ValueError("Movie requests carry exactly one item")

    with _session(db) as s:
        try:
            req = MediaRequest(
                request_type=request_type,
                tmdb_id=int(tmdb_id),
                tvdb_id=tvdb_id,
                title=title,
                status=status,
                notified_status=notified_status if notified_status is not None else (
                    status if status == RequestStatus.PENDING else None),
                requested_by=requested_by,
                poster_path=poster_path,
                backdrop_path=backdrop_path,
                release_year=release_year,
            )
            seen = set()
            for raw in items:
                provider = raw.get("provider") or (ServiceType.RADARR if request_type == RequestType.MOVIE else ServiceType.SONARR)
                unit = (provider, raw.get("season"), raw.get("episode"))
                if unit in seen:
                    continue
                seen.add(unit)
                req.items.append(RequestItem(
                    provider=provider,
                    provider_id=raw.get("provider_id"),
                    season=raw.get("season"),
                    episode=raw.get("episode"),
                    status=raw.get("status") or status,
                ))
            s.add(req)
            s.commit()
            s.refresh(req)
            logger.info(f"Created {request_type} request {req.id} for tmdb:{tmdb_id} ({title}) as {status}")
            return req
        except Exception as e:
            logger.error(f"Failed to create request for tmdb:{tmdb_id}: {e}")
            s.rollback()
            raise


def get_request(request_id: str, db: Optional[Session] = None) -> Optional[MediaRequest]:
    with _session(db) as s:
        return (
            s.query(MediaRequest)
            .options(selectinload(MediaRequest.items))
            .filter(MediaRequest.id == request_id)
            .first()
        )


def list_requests(status: Optional[str] = None, requested_by: Optional[int] = None,
                  request_type: Optional[str] = None, limit: int = 50, offset: int = 0,
                  db: Optional[Session] = None) -> List[MediaRequest]:
    with _session(db) as s:
        q = s.query(MediaRequest).options(selectinload(MediaRequest.items))
        if status:
            q = q.filter(MediaRequest.status == status)
        if requested_by is not None:
            q = q.filter(MediaRequest.requested_by == requested_by)
        if request_type:
            q = q.filter(MediaRequest.request_type == request_type)
        return q.order_by(MediaRequest.created_at.desc()).offset(offset).limit(limit).all()


def mark_request_status(request_id: str, status: str, reason: Optional[str] = None,
                        db: Optional[Session] = None) -> Optional[MediaRequest]:
    """Set request and item status directly (admin path: approve/deny)."""
    if status not in RequestStatus.ALL:
        raise ValueError(f"Unknown status: {status}")
    with _session(db) as s:
        try:
            req = s.query(MediaRequest).filter(MediaRequest.id == request_id).first()
            if req is None:
                return None
            req.status = status
            req.status_reason = reason
            for item in req.items:
                item.status = status
            s.commit()
            s.refresh(req)
            return req
        except Exception:
            s.rollback()
            raise


def list_users_with_watchlist_sync(user_id: Optional[int] = None, db: Optional[Session] = None) -> List[models.User]:
    with _session(db) as s:
        q = s.query(models.User).filter(
            (models.User.watchlist_sync_movies.is_(True)) | (models.User.watchlist_sync_tv.is_(True))
        )
        if user_id is not None:
            q = q.filter(models.User.id == user_id)
        return q.order_by(models.User.id.asc()).all()


def list_services(service_type: Optional[str] = None, db: Optional[Session] = None) -> List[models.MediaService]:
    with _session(db) as s:
        q = s.query(models.MediaService)
        if service_type:
            q = q.filter(models.MediaService.type == service_type)
        return q.order_by(models.MediaService.created_at.desc()).all()


def create_service(*, name: str, service_type: str, base_url: str, api_key_encrypted: str,
                   config: Optional[dict] = None, enabled: bool = True,
                   db: Optional[Session] = None) -> models.MediaService:
    if service_type not in ServiceType.ALL:
        raise ValueError(f"Unknown service type: {service_type}")
    with _session(db) as s:
        try:
            svc = models.MediaService(
                name=name,
                type=service_type,
                base_url=base_url.rstrip("/"),
                api_key_encrypted=api_key_encrypted,
                config=json.dumps(config or {}),
                enabled=enabled,
            )
            s.add(svc)
            s.commit()
            s.refresh(svc)
            return svc
        except Exception:
            s.rollback()
            raise


def update_service(service_id: int, fields: dict, db: Optional[Session] = None) -> Optional[models.MediaService]:
    with _session(db) as s:
        try:
            svc = s.query(models.MediaService).filter(models.MediaService.id == service_id).first()
            if svc is None:
                return None
            for key, value in fields.items():
                if key == "config":
                    value = json.dumps(value or {})
                elif key == "base_url" and value:
                    value = value.rstrip("/")
                setattr(svc, key, value)
            s.commit()
            s.refresh(svc)
            return svc
        except Exception:
            s.rollback()
            raise


def delete_service(service_id: int, db: Optional[Session] = None) -> Optional[str]:
    """Delete a service; returns its type so the caller can invalidate caches."""
    with _session(db) as s:
        try:
            svc = s.query(models.MediaService).filter(models.MediaService.id == service_id).first()
            if svc is None:
                return None
            service_type = svc.type
            s.delete(svc)
            s.commit()
            return service_type
        except Exception:
            s.rollback()
            raise

