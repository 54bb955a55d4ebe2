"""
schemas.py

Pydantic schemas for MediaRequest, RequestItem, MediaService and release search.
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Dict, Any, List
import datetime

from .models import RequestType, ServiceType


class RequestItemSchema(BaseModel):
    id: int
    provider: str
    provider_id: Optional[int] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    status: str
    model_config = ConfigDict(from_attributes=True)


class MediaRequestSchema(BaseModel):
    id: str
    request_type: str
    tmdb_id: int
    tvdb_id: Optional[int] = None
    title: str
    status: str
    status_reason: Optional[str] = None
    last_sync_error: Optional[str] = None
    last_synced_at: Optional[datetime.datetime] = None
    requested_by: int
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
    release_year: Optional[int] = None
    created_at: datetime.datetime
    updated_at: Optional[datetime.datetime] = None
    items: List[RequestItemSchema] = []
    model_config = ConfigDict(from_attributes=True)


class MediaServiceSchema(BaseModel):
    """Service record as returned by the API; the api key never leaves the server."""
    id: int
    name: str
    type: str
    base_url: str
    enabled: bool
    config: Dict[str, Any] = {}
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    @classmethod
    def from_model(cls, svc) -> "MediaServiceSchema":
        return cls(
            id=svc.id,
            name=svc.name,
            type=svc.type,
            base_url=svc.base_url,
            enabled=bool(svc.enabled),
            config=svc.config_dict,
            created_at=svc.created_at,
            updated_at=svc.updated_at,
        )


# Payloads
class EpisodeRef(BaseModel):
    season: int = Field(ge=0)
    episode: int = Field(ge=1)


class RequestCreate(BaseModel):
    media_type: str  # "movie" | "tv"
    tmdb_id: int = Field(gt=0)
    user_id: int = 1
    title: Optional[str] = None
    tvdb_id: Optional[int] = None
    episodes: Optional[List[EpisodeRef]] = None

    @field_validator("media_type")
    @classmethod
    def _media_type(cls, v: str) -> str:
        if v not in ("movie", "tv"):
            raise ValueError("media_type must be 'movie' or 'tv'")
        return v

    @property
    def request_type(self) -> str:
        return RequestType.MOVIE if self.media_type == "movie" else RequestType.EPISODE


class ServiceCreate(BaseModel):
    name: str
    type: str
    base_url: str
    api_key: str
    config: Optional[Dict[str, Any]] = None
    enabled: bool = True

    @field_validator("type")
    @classmethod
    def _type(cls, v: str) -> str:
        if v not in ServiceType.ALL:
            raise ValueError(f"type must be one of {', '.join(ServiceType.ALL)}")
        return v


class ServiceUpdate(BaseModel):
    name: Optional[str] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    enabled: Optional[bool] = None


class ReleaseSchema(BaseModel):
    title: Optional[str] = None
    indexer: Optional[str] = None
    indexer_id: Optional[int] = None
    guid: Optional[str] = None
    size: Optional[int] = None
    seeders: Optional[int] = None
    leechers: Optional[int] = None
    protocol: Optional[str] = None
    publish_date: Optional[str] = None
    download_url: Optional[str] = None
    info_url: Optional[str] = None
