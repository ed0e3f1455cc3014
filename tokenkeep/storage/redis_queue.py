from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from tokenkeep.logging import get_logger
from tokenkeep.service.notifications import NotificationJob

logger = get_logger(__name__)


class RedisNotificationQueue:
    """Redis list holding serialized notification jobs (RPUSH in, BLPOP out)."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        key: str = "tokenkeep:notifications",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.redis_url = redis_url
        self.key = key
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before accepting jobs."""
        # Short-lived sync client so the async client is not bound to a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def push(self, job: NotificationJob) -> None:
        await self.client.rpush(self.key, job.to_json())

    async def pop(self, timeout: float) -> Optional[NotificationJob]:
        # BLPOP takes whole seconds; zero would block forever.
        item = await self.client.blpop([self.key], timeout=max(1, int(timeout)))
        if not item:
            return None
        _, raw = item
        try:
            return NotificationJob.from_json(raw)
        except (ValueError, KeyError) as exc:
            logger.error("notification_job_malformed", error=str(exc))
            return None

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
