"""
Top-level test configuration for the appstore controllers.
"""

import os
from collections.abc import AsyncGenerator

# Ensure test-friendly defaults
os.environ.setdefault("APPSTORE_JSON_LOGS", "false")
os.environ.setdefault("APPSTORE_LOG_LEVEL", "DEBUG")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from appstore.db.models import Base  # noqa: E402
from appstore.storage.protocol import ObjectNotFoundError  # noqa: E402


class MemoryStore:
    """In-memory ObjectStore with the same put-once semantics as the real backends."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.puts: list[str] = []
        self.deletes: list[str] = []

    async def put(self, key: str, data: bytes) -> None:
        self.puts.append(key)
        self.objects.setdefault(key, data)

    async def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise ObjectNotFoundError(key)
        return self.objects[key]

    async def delete(self, keys: list[str]) -> None:
        for key in keys:
            self.deletes.append(key)
            self.objects.pop(key, None)

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def close(self) -> None:
        pass


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession]]:
    """Session factory over a fresh in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    await engine.dispose()
