"""
Redis connection shared by leader election and the readiness probe.

Redis is only needed when ``leader_election_enabled`` is set; a single
replica runs without it.
"""
from typing import Optional
from urllib.parse import urlsplit

import redis.asyncio as redis
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from oradb_operator.config.logging import get_logger
from oradb_operator.config.settings import settings
from oradb_operator.exceptions import ConfigurationError

logger = get_logger(__name__)


def redacted_url(url: str) -> str:
    """Drop credentials from a Redis URL before it is logged."""
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return f"{parts.scheme}://{host}{parts.path}"


class RedisConnection:
    """Process-wide Redis client."""

    client: Optional[redis.Redis] = None

    @classmethod
    async def connect(cls, max_attempts: int = 10) -> None:
        """
        Open the client and wait until Redis answers a PING.

        Attempts back off exponentially from 2s up to 30s. The last
        ConnectionError or TimeoutError is re-raised.
        """
        target = redacted_url(settings.redis_url)
        client = redis.Redis.from_url(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
            health_check_interval=30,
        )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=2, min=2, max=30),
            retry=retry_if_exception_type((redis.ConnectionError, redis.TimeoutError)),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    logger.info(
                        "connecting_to_redis",
                        url=target,
                        attempt=attempt.retry_state.attempt_number,
                        max_attempts=max_attempts,
                    )
                    await client.ping()
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.error("redis_unreachable", url=target, error=str(e))
            await client.aclose()
            raise

        cls.client = client
        logger.info("redis_connected", url=target)

    @classmethod
    async def close(cls) -> None:
        if cls.client is None:
            return
        await cls.client.aclose()
        cls.client = None
        logger.info("redis_connection_closed")

    @classmethod
    async def get_client(cls) -> redis.Redis:
        if cls.client is None:
            raise ConfigurationError(
                "Redis is not connected",
                details={"url": redacted_url(settings.redis_url)},
            )
        return cls.client

    @classmethod
    async def ping(cls) -> bool:
        """Return True when Redis answers; never raises."""
        if cls.client is None:
            return False
        try:
            return bool(await cls.client.ping())
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.warning("redis_ping_failed", error=str(e))
            return False
