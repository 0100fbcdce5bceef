import asyncio
import logging
import ssl
from typing import Any, Dict, Optional

from redis.asyncio import Redis

from .config import settings

_logger = logging.getLogger(__name__)

_redis: Optional[Redis] = None
_lock = asyncio.Lock()


def _connection_kwargs() -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {
        "host": settings.REDIS_HOST,
        "port": settings.REDIS_PORT,
        "username": settings.REDIS_USERNAME or None,
        "password": settings.REDIS_PASSWORD or None,
        "db": settings.REDIS_DB,
        "decode_responses": True,
    }
    if settings.REDIS_SSL:
        # relax cert verification for local/dev
        kwargs.update({"ssl": True, "ssl_cert_reqs": ssl.CERT_NONE})
    return kwargs


async def get_redis() -> Redis:
    """Shared Redis connection, created on first use.

    A failed connect leaves no cached client behind, so the next caller
    (the next notification, the next SSE reconnect) tries again.
    """
    global _redis
    if _redis is None:
        async with _lock:
            if _redis is None:
                client = Redis(**_connection_kwargs())
                try:
                    await client.ping()
                except Exception as e:
                    _logger.error("Failed to connect to Redis | host=%s port=%s err=%s", settings.REDIS_HOST, settings.REDIS_PORT, e)
                    await client.close()
                    raise
                _redis = client
                _logger.info(
                    "Connected to Redis | host=%s port=%s ssl=%s",
                    settings.REDIS_HOST,
                    settings.REDIS_PORT,
                    settings.REDIS_SSL,
                )
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        try:
            await _redis.close()
        finally:
            _redis = None
