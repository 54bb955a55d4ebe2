from redis import asyncio as aioredis
from redis.asyncio.connection import ConnectionPool as AsyncConnectionPool
from ..core.config import settings
import asyncio
import threading
from typing import Dict, Optional

# One client per event loop: Celery tasks each run on a fresh loop and an
# asyncio connection cannot be awaited from a loop other than its own.
_redis_async_by_loop: Dict[str, aioredis.Redis] = {}


def _loop_key(loop: Optional[asyncio.AbstractEventLoop] = None) -> str:
	"""The running loop's identity, else the thread's."""
	if loop is not None:
		return f"loop-{id(loop)}"
	try:
		return f"loop-{id(asyncio.get_running_loop())}"
	except RuntimeError:
		return f"thread-{threading.get_ident()}"


def get_redis() -> aioredis.Redis:
	"""Async Redis client (decoded str responses) bound to the current event loop."""
	key = _loop_key()
	client = _redis_async_by_loop.get(key)
	if client is not None:
		return client

	pool = AsyncConnectionPool.from_url(
		settings.redis_url,
		decode_responses=True,
		max_connections=50,
		socket_connect_timeout=5,
		socket_timeout=5,
		retry_on_timeout=True,
	)
	client = aioredis.Redis(connection_pool=pool)
	_redis_async_by_loop[key] = client
	return client


async def release_loop_client(loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
	"""Close and forget the client of a loop that is about to shut down."""
	client = _redis_async_by_loop.pop(_loop_key(loop), None)
	if client is not None:
		await client.aclose()
