"""Redis connection pools."""

import redis.asyncio as redis


def create_redis(url: str, max_connections: int = 50, timeout: float | None = None) -> redis.Redis:
    """Build a Redis client with its own connection pool.

    Nothing is dialled until the first command; callers decide how to
    treat an unreachable server.
    """
    return redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )


async def close_redis(client: redis.Redis | None) -> None:
    """Close a Redis client and its pool."""
    if client is not None:
        await client.aclose()
