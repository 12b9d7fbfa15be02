import logging
from typing import Optional

import redis

from carecall.core.config import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Return a shared Redis client, or None when no Redis URL is configured.

    Socket timeouts are always set so an unreachable server fails fast and the
    caller's degraded-mode policy applies instead of a hang.
    """
    global _client
    if _client is not None:
        return _client
    if not settings.REDIS_URL:
        logger.info("REDIS_URL not configured; Redis-backed features will use local fallbacks")
        return None
    _client = redis.Redis.from_url(
        settings.REDIS_URL,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        decode_responses=True,
    )
    return _client
