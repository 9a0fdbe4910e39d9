"""Shared Redis connection for the multi-process generation guard.

REDIS_URL selects the server (default redis://localhost:6379/0). REDIS_PASSWORD
is used only when the URL carries no password of its own.
"""

import os
from typing import Optional

import redis

DEFAULT_REDIS_URL = "redis://localhost:6379/0"

# Guard calls sit on the request path; fail fast instead of hanging a handler
SOCKET_TIMEOUT_SECONDS = 2

_redis: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Return the process-wide Redis client, connecting lazily."""
    global _redis
    if _redis is None:
        kwargs: dict = {
            "decode_responses": True,
            "socket_connect_timeout": SOCKET_TIMEOUT_SECONDS,
            "socket_timeout": SOCKET_TIMEOUT_SECONDS,
        }
        password = os.getenv("REDIS_PASSWORD")
        if password:
            # Options parsed from the URL take precedence over kwargs
            kwargs["password"] = password
        _redis = redis.Redis.from_url(os.getenv("REDIS_URL", DEFAULT_REDIS_URL), **kwargs)
    return _redis


def reset_redis() -> None:
    """Close and drop the shared client (tests, settings reload)."""
    global _redis
    if _redis is not None:
        _redis.close()
        _redis = None
