import logging
from functools import lru_cache

from redis import Redis
from redis.exceptions import RedisError

from app.core.settings import get_settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    settings = get_settings()
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=settings.redis_timeout_sec,
        socket_timeout=settings.redis_timeout_sec,
    )


def redis_reachable(client: Redis | None = None) -> bool:
    """Ping the shared tier; an outage only costs cross-process reuse."""
    try:
        return bool((client or get_redis()).ping())
    except RedisError as exc:
        logger.warning("redis unreachable: %s", exc)
        return False
