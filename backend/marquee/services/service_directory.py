"""
service_directory.py

Resolves the active instance of each external service type (radarr, sonarr,
prowlarr, jellyfin) from the media_services table and hands back a decrypted,
ready-to-use record. Results are cached per type for a few seconds so a
reconciliation pass does not decrypt and query on every external call, while
credential rotation is still picked up promptly.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from marquee.core.config import settings
from marquee.core.database import SessionLocal
from marquee.models import MediaService
from marquee.utils.cache import TTLCache
from marquee.utils.encryption import decrypt, DecryptionError

logger = logging.getLogger(__name__)

# Cached marker for "looked up, nothing configured" so misses are cached too
_NOT_CONFIGURED = "not-configured"


@dataclass(frozen=True)
class ResolvedService:
    id: int
    type: str
    name: str
    base_url: str
    api_key: str
    config: Dict[str, Any] = field(default_factory=dict)


class ServiceDirectory:
    def __init__(self, session_factory: Callable = SessionLocal, ttl_seconds: Optional[float] = None,
                 cache: Optional[TTLCache] = None):
        self.session_factory = session_factory
        self.cache = cache or TTLCache(ttl_seconds if ttl_seconds is not None else settings.service_cache_ttl_seconds)

    def resolve_service(self, service_type: str) -> Optional[ResolvedService]:
        """Return the decrypted record for service_type, or None when not configured.

        Never raises for missing/broken configuration so optional integrations
        can simply be skipped by the caller.
        """
        cached = self.cache.get(service_type)
        if cached is not None:
            return None if cached == _NOT_CONFIGURED else cached

        resolved = self._load(service_type)
        self.cache.set(service_type, resolved if resolved is not None else _NOT_CONFIGURED)
        return resolved

    def clear_cache(self, service_type: Optional[str] = None) -> None:
        """Invalidate one type (after a config change) or every type."""
        self.cache.clear(service_type)

    def _load(self, service_type: str) -> Optional[ResolvedService]:
        db = self.session_factory()
        try:
            rows = (
                db.query(MediaService)
                .filter(MediaService.type == service_type, MediaService.enabled.is_(True))
                .order_by(MediaService.created_at.desc(), MediaService.id.desc())
                .all()
            )
        except Exception as e:
            logger.warning(f"Failed to load {service_type} service config: {e}")
            return None
        finally:
            db.close()

        if not rows:
            return None

        chosen = next((r for r in rows if r.config_dict.get("defaultServer")), rows[0])
        base_url = (chosen.base_url or "").strip().rstrip("/")
        if not base_url:
            logger.warning(f"{service_type} service '{chosen.name}' has no base URL; treating as not configured")
            return None
        try:
            api_key = decrypt(chosen.api_key_encrypted)
        except DecryptionError as e:
            logger.warning(f"{service_type} service '{chosen.name}' API key could not be decrypted: {e}")
            return None

        return ResolvedService(
            id=chosen.id,
            type=service_type,
            name=chosen.name,
            base_url=base_url,
            api_key=api_key,
            config=chosen.config_dict,
        )


_directory: Optional[ServiceDirectory] = None


def get_service_directory() -> ServiceDirectory:
    global _directory
    if _directory is None:
        _directory = ServiceDirectory()
    return _directory
