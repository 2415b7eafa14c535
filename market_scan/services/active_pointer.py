from __future__ import annotations

import uuid

from redis.exceptions import RedisError

from market_scan.utils.logging import get_logger

logger = get_logger(__name__)


class ActiveScanPointer:
    """The one value a browser session keeps across reloads: its live scan id."""

    def __init__(self, redis, session_id: str, ttl: int | None = None) -> None:
        self.redis = redis
        self.key = f"scan:active:{session_id}"
        self.ttl = ttl

    async def get(self) -> uuid.UUID | None:
        if self.redis is None:
            return None
        try:
            value = await self.redis.get(self.key)
        except RedisError as e:
            logger.warning("Could not read active scan pointer", key=self.key, error=str(e))
            return None
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode()
        try:
            return uuid.UUID(value)
        except ValueError:
            logger.warning("Discarding malformed active scan pointer", key=self.key)
            await self.clear()
            return None

    async def set(self, job_id: uuid.UUID | str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(self.key, str(job_id), ex=self.ttl or None)
        except RedisError as e:
            logger.warning("Could not store active scan pointer", key=self.key, error=str(e))

    async def clear(self) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.delete(self.key)
        except RedisError as e:
            logger.warning("Could not clear active scan pointer", key=self.key, error=str(e))
