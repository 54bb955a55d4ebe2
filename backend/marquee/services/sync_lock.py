"""
sync_lock.py

Cluster-wide, non-blocking mutual exclusion for reconciliation passes.
Redis SET NX EX with a per-holder token; release only deletes the key when the
token still matches, so a pass that outlived its TTL cannot free a lock that
another instance has since acquired.
"""
import logging
import uuid
from typing import Optional

from marquee.core.redis_client import get_redis

logger = logging.getLogger(__name__)

REQUEST_SYNC_LOCK_KEY = "lock:request-sync"

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class SyncLockBusy(Exception):
    """Raised when sync lock cannot be acquired."""
    pass


class SyncLock:
    """Redis-based lock for sync operations."""

    def __init__(self, lock_key: str = REQUEST_SYNC_LOCK_KEY, ttl_seconds: int = 900, redis=None):
        self.lock_key = lock_key
        self.ttl_seconds = int(ttl_seconds)
        self._redis = redis
        self._token: Optional[str] = None

    @property
    def redis(self):
        # Bind lazily so the client belongs to the loop that actually runs the pass
        return self._redis if self._redis is not None else get_redis()

    @property
    def held(self) -> bool:
        return self._token is not None

    async def acquire(self) -> bool:
        """Try once; False means another instance holds the lock."""
        token = uuid.uuid4().hex
        acquired = await self.redis.set(self.lock_key, token, ex=self.ttl_seconds, nx=True)
        if not acquired:
            logger.info(f"Lock already held: {self.lock_key}")
            return False
        self._token = token
        return True

    async def release(self) -> None:
        if self._token is None:
            return
        token, self._token = self._token, None
        try:
            released = await self.redis.eval(_RELEASE_SCRIPT, 1, self.lock_key, token)
            if not released:
                logger.warning(f"Lock {self.lock_key} expired before release")
        except Exception as e:
            logger.warning(f"Failed to release lock {self.lock_key}: {e}")

    async def __aenter__(self):
        if not await self.acquire():
            raise SyncLockBusy(f"Could not acquire lock: {self.lock_key}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
