"""Tests for LeasedConnection."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from pglifecycle.infra.db.connection_context import (
    LeasedConnection,
    acquire_connection,
    borrow_connection,
)
from tests.fixtures.db_fakes import FakeConnection, FakePool


class TestLeasedConnection:
    """Test suite for LeasedConnection."""

    @pytest.mark.asyncio
    async def test_release_returns_connection_once(
        self, fake_pool: FakePool, fake_conn: FakeConnection
    ) -> None:
        lease = await acquire_connection(fake_pool)

        assert await lease.release() is True
        assert await lease.release() is False
        assert lease.released
        assert fake_pool.release_count(fake_conn) == 1
        assert not fake_conn.terminated

    @pytest.mark.asyncio
    async def test_broken_lease_is_terminated_on_release(
        self, fake_pool: FakePool, fake_conn: FakeConnection
    ) -> None:
        lease = await acquire_connection(fake_pool)
        lease.mark_broken()

        await lease.release()

        assert lease.broken
        assert fake_conn.terminated
        assert fake_pool.release_count(fake_conn) == 1

    @pytest.mark.asyncio
    async def test_force_release_terminates(
        self, fake_pool: FakePool, fake_conn: FakeConnection
    ) -> None:
        lease = await acquire_connection(fake_pool)

        await lease.release(force=True)

        assert fake_conn.terminated

    @pytest.mark.asyncio
    async def test_async_context_manager_releases_on_error(
        self, fake_pool: FakePool, fake_conn: FakeConnection
    ) -> None:
        with pytest.raises(RuntimeError):
            async with await acquire_connection(fake_pool) as lease:
                await lease.execute("SELECT 1")
                raise RuntimeError("work failed")

        assert fake_pool.release_count(fake_conn) == 1

    @pytest.mark.asyncio
    async def test_delegates_queries_with_timeout(self) -> None:
        mock_conn = MagicMock()
        mock_conn.fetchval = AsyncMock(return_value=1)
        mock_conn.fetch = AsyncMock(return_value=[])
        lease = LeasedConnection(None, mock_conn)

        assert await lease.fetchval("SELECT $1", 1, timeout=3) == 1
        assert await lease.fetch("SELECT 2") == []

        mock_conn.fetchval.assert_awaited_once_with("SELECT $1", 1, column=0, timeout=3)
        mock_conn.fetch.assert_awaited_once_with("SELECT 2", timeout=None)

    @pytest.mark.asyncio
    async def test_sync_pool_release_supported(self) -> None:
        mock_conn = MagicMock()
        mock_pool = MagicMock()
        mock_pool.release = MagicMock(return_value=None)

        lease = LeasedConnection(mock_pool, mock_conn)
        await lease.release()

        mock_pool.release.assert_called_once_with(mock_conn)

    @pytest.mark.asyncio
    async def test_acquire_errors_propagate(self, fake_pool: FakePool) -> None:
        fake_pool.acquire_error = TimeoutError("pool exhausted")

        with pytest.raises(TimeoutError, match="pool exhausted"):
            await acquire_connection(fake_pool, timeout=0.1)


class TestBorrowConnection:
    @pytest.mark.asyncio
    async def test_borrowed_connection_is_never_released(
        self, fake_pool: FakePool, fake_conn: FakeConnection
    ) -> None:
        lease = borrow_connection(fake_conn)

        assert lease.owned is False
        assert await lease.release() is False
        assert fake_pool.released == []

    @pytest.mark.asyncio
    async def test_borrowing_a_lease_unwraps_it(
        self, fake_pool: FakePool, fake_conn: FakeConnection
    ) -> None:
        outer = await acquire_connection(fake_pool)

        inner = borrow_connection(outer)
        await inner.release()

        assert inner.raw is fake_conn
        assert not outer.released
        await outer.release()
        assert fake_pool.release_count(fake_conn) == 1
