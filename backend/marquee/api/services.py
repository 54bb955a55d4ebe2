"""
services.py

API endpoints for configuring Radarr, Sonarr, Prowlarr and Jellyfin instances.
API keys are encrypted on write and never returned; every change invalidates
the Service Directory cache for that service type.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from marquee import crud
from marquee.core.database import get_db
from marquee.models import MediaService
from marquee.schemas import MediaServiceSchema, ServiceCreate, ServiceUpdate
from marquee.services.arr_client import ServiceError
from marquee.services.clients import CLIENT_CLASSES, build_client
from marquee.services.service_directory import get_service_directory
from marquee.utils.encryption import encrypt

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/", response_model=List[MediaServiceSchema])
def list_services(type: Optional[str] = None, db: Session = Depends(get_db)):
    return [MediaServiceSchema.from_model(s) for s in crud.list_services(type, db=db)]


@router.post("/", response_model=MediaServiceSchema, status_code=201)
def create_service(payload: ServiceCreate, db: Session = Depends(get_db)):
    try:
        svc = crud.create_service(
            name=payload.name,
            service_type=payload.type,
            base_url=payload.base_url,
            api_key_encrypted=encrypt(payload.api_key),
            config=payload.config,
            enabled=payload.enabled,
            db=db,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    get_service_directory().clear_cache(svc.type)
    logger.info(f"Configured {svc.type} service '{svc.name}' at {svc.base_url}")
    return MediaServiceSchema.from_model(svc)


@router.put("/{service_id}", response_model=MediaServiceSchema)
def update_service(service_id: int, payload: ServiceUpdate, db: Session = Depends(get_db)):
    fields = payload.model_dump(exclude_unset=True)
    api_key = fields.pop("api_key", None)
    if api_key:
        fields["api_key_encrypted"] = encrypt(api_key)
    svc = crud.update_service(service_id, fields, db=db)
    if svc is None:
        raise HTTPException(status_code=404, detail="Service not found")
    get_service_directory().clear_cache(svc.type)
    return MediaServiceSchema.from_model(svc)


@router.delete("/{service_id}")
def delete_service(service_id: int, db: Session = Depends(get_db)):
    service_type = crud.delete_service(service_id, db=db)
    if service_type is None:
        raise HTTPException(status_code=404, detail="Service not found")
    get_service_directory().clear_cache(service_type)
    return {"success": True}


@router.post("/{service_id}/test")
async def test_service(service_id: int, db: Session = Depends(get_db)):
    """Ping the active instance of this service's type."""
    svc = db.get(MediaService, service_id)
    if svc is None:
        raise HTTPException(status_code=404, detail="Service not found")
    if svc.type not in CLIENT_CLASSES:
        raise HTTPException(status_code=400, detail=f"No connectivity test for {svc.type}")
    directory = get_service_directory()
    directory.clear_cache(svc.type)
    client = build_client(svc.type, directory)
    if client is None:
        return {"success": False, "error": "Service is disabled or its API key is unreadable"}
    try:
        status = await client.system_status()
    except ServiceError as e:
        return {"success": False, "error": str(e), "status_code": e.status_code}
    return {"success": True, "version": status.get("version") if isinstance(status, dict) else None}
