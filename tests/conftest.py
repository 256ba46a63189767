from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import asyncpg
import pytest
import pytest_asyncio
from dotenv import load_dotenv
from faker import Faker

from pglifecycle.config.db_settings import PoolConfig
from pglifecycle.infra.lifecycle import LifecycleRegistry
from pglifecycle.infra.runtime import Runtime, create_runtime
from tests.fixtures.db_fakes import FakeConnection, FakePool


@pytest.fixture
def faker() -> Faker:
    """Provide a Faker instance for channel names and payloads."""
    return Faker(["en_US"])


@pytest.fixture
def fake_conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fake_pool(fake_conn: FakeConnection) -> FakePool:
    return FakePool(fake_conn)


@pytest.fixture
def registry() -> LifecycleRegistry:
    return LifecycleRegistry()


@pytest_asyncio.fixture
async def runtime() -> AsyncIterator[Runtime]:
    """A runtime against the real database named by DATABASE_URL."""
    try:
        load_dotenv(override=False)
        config = PoolConfig(DB_CONNECT_ATTEMPTS=1)  # type: ignore[call-arg]
    except (ValueError, RuntimeError) as exc:
        pytest.skip(f"Skipping database tests: {exc}")

    try:
        rt = await create_runtime(config, on_fatal=lambda _exc: None)
    except (OSError, asyncpg.PostgresError) as exc:
        pytest.skip(f"Skipping database tests: {exc}")
    try:
        yield rt
    finally:
        await rt.close()
        # Give a small delay to ensure cleanup completes
        await asyncio.sleep(0.1)
