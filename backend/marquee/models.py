"""
models.py

SQLAlchemy models for users, media requests with their per-episode items, and
configured external services (Radarr, Sonarr, Prowlarr, Jellyfin).
"""
import json
import uuid
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, Text, UniqueConstraint, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from marquee.utils.timezone import utc_now

Base = declarative_base()


class RequestStatus:
    PENDING = "pending"
    QUEUED = "queued"
    SUBMITTED = "submitted"
    DOWNLOADING = "downloading"
    PARTIALLY_AVAILABLE = "partially_available"
    AVAILABLE = "available"
    REMOVED = "removed"
    DENIED = "denied"
    FAILED = "failed"

    # Lifecycle order used to refuse downgrades; removed/denied/failed sit outside it
    RANK = {
        PENDING: 0,
        QUEUED: 1,
        SUBMITTED: 1,
        DOWNLOADING: 2,
        PARTIALLY_AVAILABLE: 3,
        AVAILABLE: 4,
    }
    ACTIVE = (PENDING, QUEUED, SUBMITTED)
    TERMINAL = (AVAILABLE, REMOVED, DENIED, FAILED)
    ALL = (PENDING, QUEUED, SUBMITTED, DOWNLOADING, PARTIALLY_AVAILABLE, AVAILABLE, REMOVED, DENIED, FAILED)


class RequestType:
    MOVIE = "movie"
    EPISODE = "episode"


class ServiceType:
    RADARR = "radarr"
    SONARR = "sonarr"
    PROWLARR = "prowlarr"
    JELLYFIN = "jellyfin"

    ALL = (RADARR, SONARR, PROWLARR, JELLYFIN)


def _new_uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    username = Column(String(120), unique=True, nullable=False)
    email = Column(String, unique=True, nullable=True)
    groups = Column(Text, default="[]")       # JSON list, e.g. ["admin"]
    permissions = Column(Text, default="[]")  # JSON list, e.g. ["auto_approve_tv"]
    jellyfin_user_id = Column(String(64), nullable=True)
    watchlist_sync_movies = Column(Boolean, default=False)
    watchlist_sync_tv = Column(Boolean, default=False)
    trakt_access_token_encrypted = Column(Text, nullable=True)
    trakt_refresh_token_encrypted = Column(Text, nullable=True)
    trakt_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now)

    requests = relationship("MediaRequest", back_populates="requester")

    def _json_list(self, raw) -> list:
        try:
            value = json.loads(raw) if raw else []
        except (TypeError, ValueError):
            return []
        return [str(v).lower() for v in value] if isinstance(value, list) else []

    @property
    def group_list(self) -> list:
        return self._json_list(self.groups)

    @property
    def permission_list(self) -> list:
        return self._json_list(self.permissions)

    @property
    def is_admin(self) -> bool:
        return any(g in ("admin", "owner") for g in self.group_list)


class MediaRequest(Base):
    __tablename__ = "media_requests"
    id = Column(String(36), primary_key=True, default=_new_uuid)
    request_type = Column(String(16), nullable=False)  # 'movie' or 'episode'
    tmdb_id = Column(Integer, nullable=False, index=True)
    tvdb_id = Column(Integer, nullable=True)
    title = Column(String(500), nullable=False)
    status = Column(String(32), nullable=False, default=RequestStatus.PENDING, index=True)
    status_reason = Column(Text, nullable=True)
    # Last status a notification went out for; drives exactly-once delivery
    notified_status = Column(String(32), nullable=True)
    last_sync_error = Column(Text, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    requested_by = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    poster_path = Column(String(500), nullable=True)
    backdrop_path = Column(String(500), nullable=True)
    release_year = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    requester = relationship("User", back_populates="requests")
    items = relationship(
        "RequestItem",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="RequestItem.id",
    )

    __table_args__ = (
        Index("ix_media_requests_tmdb_type", "tmdb_id", "request_type"),
    )

    @property
    def provider(self) -> str:
        return ServiceType.RADARR if self.request_type == RequestType.MOVIE else ServiceType.SONARR

    def __repr__(self) -> str:
        return f"<MediaRequest {self.id} {self.request_type}:{self.tmdb_id} {self.status}>"


class RequestItem(Base):
    __tablename__ = "request_items"
    id = Column(Integer, primary_key=True)
    request_id = Column(String(36), ForeignKey("media_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(16), nullable=False)  # 'radarr' or 'sonarr'
    provider_id = Column(Integer, nullable=True)
    season = Column(Integer, nullable=True)
    episode = Column(Integer, nullable=True)
    status = Column(String(32), nullable=False, default=RequestStatus.PENDING)
    created_at = Column(DateTime, default=utc_now)

    request = relationship("MediaRequest", back_populates="items")

    __table_args__ = (
        UniqueConstraint("request_id", "provider", "season", "episode", name="uq_request_item_unit"),
    )

    @property
    def unit(self) -> tuple:
        return (self.provider, self.season, self.episode)


class MediaService(Base):
    __tablename__ = "media_services"
    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False)
    type = Column(String(16), nullable=False, index=True)  # radarr | sonarr | prowlarr | jellyfin
    base_url = Column(String(500), nullable=False)
    api_key_encrypted = Column(Text, nullable=False)
    config = Column(Text, default="{}")  # JSON blob: defaultServer, rootFolderPath, qualityProfileId, ...
    enabled = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    @property
    def config_dict(self) -> dict:
        try:
            value = json.loads(self.config) if self.config else {}
        except (TypeError, ValueError):
            return {}
        return value if isinstance(value, dict) else {}
