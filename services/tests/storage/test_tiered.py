"""
Tests for the tiered failover store.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from appstore.config import StorageConfig
from appstore.storage import build_store
from appstore.storage.protocol import ObjectNotFoundError, ObjectStore
from appstore.storage.tiered import TieredStore


class TestTieredStore:
    async def test_small_only_roundtrip(self, memory_store) -> None:
        store = TieredStore(small=memory_store)
        await store.put("k", b"v")
        assert await store.get("k") == b"v"
        assert memory_store.objects == {"k": b"v"}

    async def test_writes_go_to_large_when_configured(self, memory_store) -> None:
        large = type(memory_store)()
        store = TieredStore(small=memory_store, large=large)

        await store.put("k", b"v")

        assert large.objects == {"k": b"v"}
        assert memory_store.objects == {}

    async def test_read_falls_back_to_small(self, memory_store) -> None:
        large = type(memory_store)()
        memory_store.objects["legacy"] = b"old"
        store = TieredStore(small=memory_store, large=large)

        assert await store.get("legacy") == b"old"
        assert await store.exists("legacy")

    async def test_missing_everywhere(self, memory_store) -> None:
        store = TieredStore(small=memory_store, large=type(memory_store)())
        with pytest.raises(ObjectNotFoundError):
            await store.get("nope")
        assert not await store.exists("nope")

    async def test_delete_empty_is_noop(self, memory_store) -> None:
        store = TieredStore(small=memory_store)
        await store.delete([])
        assert memory_store.deletes == []

    async def test_delete_goes_to_primary(self, memory_store) -> None:
        large = type(memory_store)()
        large.objects["k"] = b"v"
        store = TieredStore(small=memory_store, large=large)

        await store.delete(["k"])

        assert large.deletes == ["k"]
        assert memory_store.deletes == []

    async def test_satisfies_protocol(self, memory_store) -> None:
        assert isinstance(TieredStore(small=memory_store), ObjectStore)


class TestBuildStore:
    def test_configmap_only_by_default(self) -> None:
        store = build_store(StorageConfig(), MagicMock())
        assert isinstance(store, TieredStore)
        assert store._large is None

    def test_s3_layered_when_bucket_set(self) -> None:
        cfg = StorageConfig.model_validate({"s3": {"bucket": "charts"}})
        store = build_store(cfg, MagicMock())
        assert store._large is not None
