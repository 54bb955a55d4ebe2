"""
clients.py

Builds typed *arr clients from Service Directory records.
"""
from typing import Optional

import httpx

from marquee.models import ServiceType
from marquee.services.arr_client import ArrClient
from marquee.services.prowlarr_client import ProwlarrClient
from marquee.services.radarr_client import RadarrClient
from marquee.services.service_directory import ServiceDirectory, get_service_directory
from marquee.services.sonarr_client import SonarrClient

CLIENT_CLASSES = {
    ServiceType.RADARR: RadarrClient,
    ServiceType.SONARR: SonarrClient,
    ServiceType.PROWLARR: ProwlarrClient,
}


def build_client(service_type: str, directory: Optional[ServiceDirectory] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[ArrClient]:
    """Client for the active instance of service_type, or None when not configured."""
    cls = CLIENT_CLASSES.get(service_type)
    if cls is None:
        raise ValueError(f"Unsupported service type: {service_type}")
    resolved = (directory or get_service_directory()).resolve_service(service_type)
    if resolved is None:
        return None
    return cls(resolved, transport=transport)
