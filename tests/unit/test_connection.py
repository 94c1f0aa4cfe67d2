"""
Tests for the database pool and helper retry behaviour.
"""

from unittest.mock import AsyncMock, patch

import psycopg
import pytest

from app.db.helpers import DatabaseError, with_db_retry
from app.db.pool import DatabasePoolManager


def _operational_failure():
    error = DatabaseError("Query failed: server closed the connection", operation="fetch_one")
    error.__cause__ = psycopg.OperationalError("server closed the connection")
    return error


class TestPoolManager:
    """Tests for the pool manager without a live database."""

    @pytest.mark.asyncio
    async def test_health_check_before_initialize(self):
        manager = DatabasePoolManager(conninfo="postgresql://localhost/none")

        result = await manager.health_check()

        assert result["healthy"] is False
        assert result["error"] == "Pool not initialized"

    @pytest.mark.asyncio
    async def test_connection_requires_initialize(self):
        manager = DatabasePoolManager(conninfo="postgresql://localhost/none")

        with pytest.raises(RuntimeError):
            async with manager.connection():
                pass

    @pytest.mark.asyncio
    async def test_close_before_initialize_is_noop(self):
        manager = DatabasePoolManager(conninfo="postgresql://localhost/none")

        await manager.close()

        assert manager.initialized is False


class TestWithDbRetry:
    """Tests for the retry decorator."""

    @pytest.mark.asyncio
    async def test_retries_operational_errors(self):
        calls = AsyncMock(side_effect=[_operational_failure(), {"ok": 1}])

        @with_db_retry(max_retries=2, base_delay=0.01)
        async def query():
            return await calls()

        with patch("app.db.helpers.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await query()

        assert result == {"ok": 1}
        assert calls.await_count == 2
        sleep.assert_awaited_once_with(0.01)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        calls = AsyncMock(side_effect=[_operational_failure() for _ in range(3)])

        @with_db_retry(max_retries=2, base_delay=0.01)
        async def query():
            return await calls()

        with patch("app.db.helpers.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(DatabaseError) as exc_info:
                await query()

        assert exc_info.value.recoverable is False
        assert calls.await_count == 3

    @pytest.mark.asyncio
    async def test_non_operational_errors_are_not_retried(self):
        calls = AsyncMock(side_effect=DatabaseError("Query failed: syntax error", operation="execute"))

        @with_db_retry(max_retries=2)
        async def query():
            return await calls()

        with pytest.raises(DatabaseError):
            await query()

        assert calls.await_count == 1
