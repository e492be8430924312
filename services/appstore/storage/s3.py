"""
S3-compatible large-object backend for the artifact store.

Uses aioboto3 for async I/O. Auth relies on the SDK credential chain
(IRSA in K8s, env vars or profile locally). endpoint_url points the client
at MinIO or another S3-compatible service.

Objects are written once: a put for a key that already exists is a no-op,
matching the ConfigMap backend.
"""

from __future__ import annotations

from typing import Any, NoReturn

import aioboto3
from botocore.exceptions import ClientError

from appstore.logging_config import get_logger
from appstore.storage.protocol import (
    ObjectNotFoundError,
    ObjectStoreError,
    ObjectStorePermissionError,
)

logger = get_logger(__name__)

_NOT_FOUND = frozenset({"NoSuchKey", "NotFound", "404"})
_DENIED = frozenset({"AccessDenied", "403"})

# DeleteObjects accepts at most 1000 keys per request
_DELETE_BATCH = 1000


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


def _raise_for(e: ClientError, key: str) -> NoReturn:
    code = _error_code(e)
    if code in _NOT_FOUND:
        raise ObjectNotFoundError(key) from e
    if code in _DENIED:
        raise ObjectStorePermissionError(str(e)) from e
    raise ObjectStoreError(str(e)) from e


class S3Store:
    """Object store backed by an S3-compatible bucket."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        prefix: str = "",
        endpoint_url: str = "",
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._prefix = prefix.strip("/")
        self._endpoint_url = endpoint_url or None

        self._session = aioboto3.Session()
        self._client: Any = None

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}/{key}" if self._prefix else key

    async def _get_client(self) -> Any:
        if self._client is None:
            self._client = await self._session.client(
                "s3",
                region_name=self._region,
                endpoint_url=self._endpoint_url,
            ).__aenter__()
            logger.info(
                "S3 client initialized",
                bucket=self._bucket,
                region=self._region,
                endpoint=self._endpoint_url or "aws",
            )
        return self._client

    async def put(self, key: str, data: bytes) -> None:
        if await self.exists(key):
            logger.debug("Object already stored", key=key)
            return

        client = await self._get_client()
        try:
            await client.put_object(
                Bucket=self._bucket,
                Key=self._full_key(key),
                Body=data,
                ContentType="application/octet-stream",
            )
        except ClientError as e:
            _raise_for(e, key)
        logger.debug("Object stored", key=key, size_bytes=len(data))

    async def get(self, key: str) -> bytes:
        client = await self._get_client()
        try:
            response = await client.get_object(Bucket=self._bucket, Key=self._full_key(key))
            return await response["Body"].read()
        except ClientError as e:
            _raise_for(e, key)

    async def delete(self, keys: list[str]) -> None:
        """Delete keys in batches. Keys that do not exist are ignored."""
        if not keys:
            return
        client = await self._get_client()

        for start in range(0, len(keys), _DELETE_BATCH):
            batch = keys[start : start + _DELETE_BATCH]
            try:
                response = await client.delete_objects(
                    Bucket=self._bucket,
                    Delete={
                        "Objects": [{"Key": self._full_key(k)} for k in batch],
                        "Quiet": True,
                    },
                )
            except ClientError as e:
                _raise_for(e, batch[0])

            errors = [err for err in response.get("Errors", []) if err.get("Code") not in _NOT_FOUND]
            if errors:
                first = errors[0]
                if first.get("Code") in _DENIED:
                    raise ObjectStorePermissionError(first.get("Message", "access denied"))
                raise ObjectStoreError(
                    f"failed to delete {len(errors)} object(s), first {first.get('Key')}: "
                    f"{first.get('Message', first.get('Code'))}"
                )

    async def exists(self, key: str) -> bool:
        client = await self._get_client()
        try:
            await client.head_object(Bucket=self._bucket, Key=self._full_key(key))
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND:
                return False
            raise ObjectStoreError(str(e)) from e
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.__aexit__(None, None, None)
            self._client = None
            logger.info("S3 client closed")
