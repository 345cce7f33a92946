"""
Per-request processing guard.

At most one extraction or orchestration may run for a given meeting request.
The guard is a claim marker taken before the work starts and released when
it ends; nothing is held across awaits except the marker itself. A second
claim for the same id fails fast with RequestBusyError.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from stina.errors import RequestBusyError
from stina.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "stina:processing:"


class ProcessingGuard(Protocol):
    async def acquire(self, meeting_request_id: str) -> str: ...

    async def release(self, meeting_request_id: str, token: str) -> None: ...


@asynccontextmanager
async def claimed(guard: ProcessingGuard, meeting_request_id: str) -> AsyncIterator[str]:
    """Hold the claim for the duration of the block."""
    token = await guard.acquire(meeting_request_id)
    try:
        yield token
    finally:
        await guard.release(meeting_request_id, token)


class InMemoryProcessingGuard:
    """Single-process guard; claims are checked and set without awaiting in between."""

    def __init__(self):
        self._claims: dict[str, str] = {}

    def is_claimed(self, meeting_request_id: str) -> bool:
        return meeting_request_id in self._claims

    async def acquire(self, meeting_request_id: str) -> str:
        if meeting_request_id in self._claims:
            raise RequestBusyError(meeting_request_id)
        token = uuid.uuid4().hex
        self._claims[meeting_request_id] = token
        return token

    async def release(self, meeting_request_id: str, token: str) -> None:
        if self._claims.get(meeting_request_id) == token:
            del self._claims[meeting_request_id]


class RedisProcessingGuard:
    """
    Multi-process guard: SET NX PX with a random token.

    The TTL bounds how long a crashed worker can block a request. Release is
    a compare-and-delete so an expired claim re-taken by another worker is
    never removed by the original holder.
    """

    RELEASE_LUA_SCRIPT = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    def __init__(self, client: redis.Redis, ttl_seconds: int = 300):
        self.client = client
        self.ttl_ms = ttl_seconds * 1000

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 300) -> "RedisProcessingGuard":
        pool = ConnectionPool.from_url(
            redis_url,
            max_connections=20,
            retry_on_timeout=True,
            socket_connect_timeout=10,
            socket_timeout=10,
            health_check_interval=30,
            decode_responses=True,
        )
        return cls(redis.Redis(connection_pool=pool), ttl_seconds=ttl_seconds)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except redis.RedisError as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def close(self) -> None:
        await self.client.aclose()
        logger.info("Redis processing guard closed")

    async def acquire(self, meeting_request_id: str) -> str:
        token = uuid.uuid4().hex
        acquired = await self.client.set(
            f"{KEY_PREFIX}{meeting_request_id}", token, nx=True, px=self.ttl_ms
        )
        if not acquired:
            logger.info("Processing claim rejected", meeting_request_id=meeting_request_id)
            raise RequestBusyError(meeting_request_id)
        return token

    async def release(self, meeting_request_id: str, token: str) -> None:
        try:
            await self.client.eval(
                self.RELEASE_LUA_SCRIPT, 1, f"{KEY_PREFIX}{meeting_request_id}", token
            )
        except redis.RedisError as e:
            # The TTL will free the claim
            logger.error(
                "Failed to release processing claim",
                meeting_request_id=meeting_request_id,
                error=str(e),
            )
