from __future__ import annotations

from functools import lru_cache

from redis import Redis
from redis.exceptions import RedisError

from .config import settings

_REDIS_SOCKET_TIMEOUT_SECONDS = 2.0


@lru_cache(maxsize=1)
def get_redis_client() -> Redis:
    # Intent claims sit on the OAuth callback path; never hang it on Redis.
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=_REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=_REDIS_SOCKET_TIMEOUT_SECONDS,
    )


def reset_redis_client() -> None:
    get_redis_client.cache_clear()


def ping_redis() -> bool:
    try:
        return bool(get_redis_client().ping())
    except RedisError:
        return False
