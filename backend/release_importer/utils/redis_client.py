"""Redis clients with SSL handling for Upstash and other hosted providers."""

from __future__ import annotations

import ssl
from functools import lru_cache
from typing import Any

from redis import Redis

from release_importer.core.config import get_settings


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Create a Redis client, relaxing certificate checks for hosted TLS endpoints.

    Args:
        url: Redis connection URL (redis:// or rediss://)
        **kwargs: Extra client options (decode_responses, socket_connect_timeout, ...)
    """
    if ".upstash.io" in url and url.startswith("redis://"):
        url = url.replace("redis://", "rediss://", 1)

    client = Redis.from_url(url, **kwargs)

    if url.startswith("rediss://"):
        pool_kwargs = getattr(client.connection_pool, "connection_kwargs", None)
        if pool_kwargs is not None:
            pool_kwargs["ssl_cert_reqs"] = ssl.CERT_NONE

    return client


@lru_cache
def get_text_client() -> Redis:
    """Shared client for JSON telemetry (decoded strings)."""
    return create_redis_client(
        get_settings().redis_url, decode_responses=True, socket_connect_timeout=2
    )


@lru_cache
def get_binary_client() -> Redis:
    """Shared client for raw file bytes."""
    return create_redis_client(
        get_settings().redis_url, decode_responses=False, socket_connect_timeout=2
    )
