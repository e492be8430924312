"""
Tests for the S3 storage backend.

Integration tests require LocalStack. Set LOCALSTACK_ENDPOINT to enable.
Unit tests use mocks.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from appstore.storage.protocol import (
    ObjectNotFoundError,
    ObjectStoreError,
    ObjectStorePermissionError,
)
from appstore.storage.s3 import S3Store


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "op")


def _mock_client() -> MagicMock:
    client = MagicMock()
    client.head_object = AsyncMock()
    client.put_object = AsyncMock()
    client.get_object = AsyncMock()
    client.delete_objects = AsyncMock(return_value={})
    return client


class TestS3StoreUnit:
    """Unit tests with mocked boto3 client."""

    @pytest.fixture
    def store(self) -> S3Store:
        return S3Store(bucket="test-bucket", region="us-east-1", prefix="appstore")

    @pytest.fixture
    def client(self, store: S3Store) -> MagicMock:
        client = _mock_client()
        store._client = client
        return client

    async def test_full_key_with_prefix(self, store: S3Store) -> None:
        assert store._full_key("nginx-1.0.0") == "appstore/nginx-1.0.0"

    async def test_full_key_without_prefix(self) -> None:
        store = S3Store(bucket="test-bucket", prefix="")
        assert store._full_key("nginx-1.0.0") == "nginx-1.0.0"

    async def test_prefix_slashes_stripped(self) -> None:
        store = S3Store(bucket="test-bucket", prefix="/charts/")
        assert store._full_key("a") == "charts/a"

    async def test_put_skips_existing_object(self, store: S3Store, client: MagicMock) -> None:
        await store.put("nginx-1.0.0", b"data")
        client.put_object.assert_not_called()

    async def test_put_new_object(self, store: S3Store, client: MagicMock) -> None:
        client.head_object.side_effect = _client_error("404")
        await store.put("nginx-1.0.0", b"data")
        client.put_object.assert_awaited_once()
        assert client.put_object.call_args.kwargs["Key"] == "appstore/nginx-1.0.0"

    async def test_put_access_denied(self, store: S3Store, client: MagicMock) -> None:
        client.head_object.side_effect = _client_error("404")
        client.put_object.side_effect = _client_error("AccessDenied")
        with pytest.raises(ObjectStorePermissionError):
            await store.put("k", b"data")

    async def test_get_missing(self, store: S3Store, client: MagicMock) -> None:
        client.get_object.side_effect = _client_error("NoSuchKey")
        with pytest.raises(ObjectNotFoundError):
            await store.get("missing")

    async def test_get_other_error(self, store: S3Store, client: MagicMock) -> None:
        client.get_object.side_effect = _client_error("InternalError")
        with pytest.raises(ObjectStoreError):
            await store.get("k")

    async def test_get_reads_body(self, store: S3Store, client: MagicMock) -> None:
        body = MagicMock()
        body.read = AsyncMock(return_value=b"chart")
        client.get_object.return_value = {"Body": body}
        assert await store.get("k") == b"chart"

    async def test_delete_batches_prefixed_keys(self, store: S3Store, client: MagicMock) -> None:
        await store.delete(["a", "b"])
        client.delete_objects.assert_awaited_once()
        objects = client.delete_objects.call_args.kwargs["Delete"]["Objects"]
        assert objects == [{"Key": "appstore/a"}, {"Key": "appstore/b"}]

    async def test_delete_splits_large_batches(self, store: S3Store, client: MagicMock) -> None:
        await store.delete([f"k{i}" for i in range(1001)])
        assert client.delete_objects.await_count == 2

    async def test_delete_nothing(self, store: S3Store, client: MagicMock) -> None:
        await store.delete([])
        client.delete_objects.assert_not_called()

    async def test_delete_ignores_missing(self, store: S3Store, client: MagicMock) -> None:
        client.delete_objects.return_value = {"Errors": [{"Key": "appstore/a", "Code": "NoSuchKey"}]}
        await store.delete(["a"])

    async def test_delete_reports_failures(self, store: S3Store, client: MagicMock) -> None:
        client.delete_objects.return_value = {
            "Errors": [{"Key": "appstore/a", "Code": "InternalError", "Message": "try again"}]
        }
        with pytest.raises(ObjectStoreError, match="try again"):
            await store.delete(["a"])

    async def test_delete_access_denied(self, store: S3Store, client: MagicMock) -> None:
        client.delete_objects.side_effect = _client_error("AccessDenied")
        with pytest.raises(ObjectStorePermissionError):
            await store.delete(["a"])

    async def test_exists_false_on_404(self, store: S3Store, client: MagicMock) -> None:
        client.head_object.side_effect = _client_error("404")
        assert await store.exists("k") is False


class TestS3StoreIntegration:
    """Integration tests using LocalStack. Skipped unless LOCALSTACK_ENDPOINT is set."""

    @pytest.fixture
    async def store(
        self, localstack_available: bool, localstack_endpoint: str, s3_test_bucket: str
    ) -> S3Store:
        if not localstack_available:
            pytest.skip("LocalStack not available")
        store = S3Store(
            bucket=s3_test_bucket,
            region="us-east-1",
            endpoint_url=localstack_endpoint,
        )
        client = await store._get_client()
        try:
            await client.create_bucket(Bucket=s3_test_bucket)
        except ClientError:
            pass  # Bucket may already exist
        return store

    async def test_put_get_roundtrip(self, store: S3Store) -> None:
        await store.put("integration/chart.tgz", b"s3 integration test data")
        assert await store.get("integration/chart.tgz") == b"s3 integration test data"
        await store.close()

    async def test_delete_and_exists(self, store: S3Store) -> None:
        await store.put("integration/to-delete", b"data")
        assert await store.exists("integration/to-delete")

        await store.delete(["integration/to-delete"])
        assert not await store.exists("integration/to-delete")
        await store.close()
