"""
Tiered failover facade over the small- and large-object backends.

Reads try the large-object backend first and fall back to the small-object
backend on a miss, so packages written before S3 was configured stay
readable. Writes and deletes go to the large-object backend when one is
configured, otherwise to the small-object backend.
"""

from __future__ import annotations

from appstore.logging_config import get_logger
from appstore.storage.protocol import ObjectNotFoundError, ObjectStore

logger = get_logger(__name__)


class TieredStore:
    """ObjectStore that fails over between two backends."""

    def __init__(self, small: ObjectStore, large: ObjectStore | None = None) -> None:
        self._small = small
        self._large = large

    @property
    def _primary(self) -> ObjectStore:
        return self._large if self._large is not None else self._small

    async def put(self, key: str, data: bytes) -> None:
        await self._primary.put(key, data)
        logger.debug("Object uploaded", key=key, size_bytes=len(data))

    async def get(self, key: str) -> bytes:
        if self._large is not None:
            try:
                return await self._large.get(key)
            except ObjectNotFoundError:
                logger.debug("Object not in large-object store, trying fallback", key=key)
        return await self._small.get(key)

    async def delete(self, keys: list[str]) -> None:
        if not keys:
            return
        await self._primary.delete(keys)

    async def exists(self, key: str) -> bool:
        if self._large is not None and await self._large.exists(key):
            return True
        return await self._small.exists(key)

    async def close(self) -> None:
        if self._large is not None:
            await self._large.close()
        await self._small.close()
