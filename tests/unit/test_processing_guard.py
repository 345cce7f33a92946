from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis

from stina.errors import RequestBusyError
from stina.services.orchestration.processing_guard import (
    KEY_PREFIX,
    InMemoryProcessingGuard,
    RedisProcessingGuard,
    claimed,
)


class TestInMemoryGuard:
    @pytest.mark.asyncio
    async def test_second_claim_is_rejected(self):
        guard = InMemoryProcessingGuard()
        await guard.acquire("meeting_a")

        with pytest.raises(RequestBusyError):
            await guard.acquire("meeting_a")
        # Other requests are independent
        await guard.acquire("meeting_b")

    @pytest.mark.asyncio
    async def test_release_needs_matching_token(self):
        guard = InMemoryProcessingGuard()
        token = await guard.acquire("meeting_a")

        await guard.release("meeting_a", "someone-else")
        assert guard.is_claimed("meeting_a")

        await guard.release("meeting_a", token)
        assert not guard.is_claimed("meeting_a")

    @pytest.mark.asyncio
    async def test_claimed_releases_on_error(self):
        guard = InMemoryProcessingGuard()

        with pytest.raises(RuntimeError):
            async with claimed(guard, "meeting_a"):
                assert guard.is_claimed("meeting_a")
                raise RuntimeError("stage failed")

        assert not guard.is_claimed("meeting_a")


class TestRedisGuard:
    @pytest.fixture
    def client(self):
        client = AsyncMock()
        client.set.return_value = True
        client.eval.return_value = 1
        client.ping.return_value = True
        return client

    @pytest.mark.asyncio
    async def test_acquire_sets_key_with_ttl(self, client):
        guard = RedisProcessingGuard(client, ttl_seconds=120)

        token = await guard.acquire("meeting_a")

        client.set.assert_awaited_once_with(
            f"{KEY_PREFIX}meeting_a", token, nx=True, px=120_000
        )

    @pytest.mark.asyncio
    async def test_existing_claim_is_busy(self, client):
        client.set.return_value = None
        guard = RedisProcessingGuard(client)

        with pytest.raises(RequestBusyError):
            await guard.acquire("meeting_a")

    @pytest.mark.asyncio
    async def test_release_is_compare_and_delete(self, client):
        guard = RedisProcessingGuard(client)

        await guard.release("meeting_a", "token-1")

        client.eval.assert_awaited_once_with(
            RedisProcessingGuard.RELEASE_LUA_SCRIPT, 1, f"{KEY_PREFIX}meeting_a", "token-1"
        )

    @pytest.mark.asyncio
    async def test_release_failure_is_logged(self, client):
        client.eval.side_effect = redis.ConnectionError("connection lost")
        guard = RedisProcessingGuard(client)

        await guard.release("meeting_a", "token-1")

    @pytest.mark.asyncio
    async def test_ping(self, client):
        guard = RedisProcessingGuard(client)
        assert await guard.ping() is True

        client.ping.side_effect = redis.ConnectionError("down")
        assert await guard.ping() is False

    @pytest.mark.asyncio
    async def test_close(self, client):
        await RedisProcessingGuard(client).close()
        client.aclose.assert_awaited_once()
