"""
ConfigMap small-object backend for the artifact store.

Each object lives in its own ConfigMap in a fixed namespace of the host
cluster, payload under binaryData. This is the fallback when no S3 bucket
is configured, so it only suits chart-sized objects.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import re

from kubernetes import client
from kubernetes.client.rest import ApiException

from appstore.kube.timeouts import request_timeout
from appstore.logging_config import get_logger
from appstore.storage.protocol import (
    ObjectNotFoundError,
    ObjectStoreError,
    ObjectStorePermissionError,
    ObjectTooLargeError,
)

logger = get_logger(__name__)

DATA_KEY = "data"
# etcd caps an object at 1MiB; leave room for metadata
MAX_OBJECT_BYTES = 1_000_000

_DNS1123_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")


class ConfigMapStore:
    """Object store backed by ConfigMaps."""

    def __init__(
        self,
        api_client: client.ApiClient,
        namespace: str = "kubesphere-system",
        name_prefix: str = "application-",
    ) -> None:
        self._core_v1 = client.CoreV1Api(api_client)
        self._namespace = namespace
        self._name_prefix = name_prefix

    def _configmap_name(self, key: str) -> str:
        """Map a key to a valid ConfigMap name."""
        name = f"{self._name_prefix}{key}".lower()
        if len(name) <= 253 and _DNS1123_SUBDOMAIN.match(name):
            return name
        digest = hashlib.sha256(key.encode()).hexdigest()[:32]
        return f"{self._name_prefix}{digest}"

    async def _call(self, fn):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, fn)

    async def put(self, key: str, data: bytes) -> None:
        if len(data) > MAX_OBJECT_BYTES:
            raise ObjectTooLargeError(key, len(data), MAX_OBJECT_BYTES)

        name = self._configmap_name(key)
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=self._namespace,
                labels={"app.kubernetes.io/managed-by": "appstore"},
                annotations={"appstore.io/object-key": key},
            ),
            binary_data={DATA_KEY: base64.b64encode(data).decode()},
        )

        try:
            await self._call(
                lambda: self._core_v1.create_namespaced_config_map(
                    namespace=self._namespace, body=body, _request_timeout=request_timeout()
                )
            )
            logger.debug("Stored object in ConfigMap", key=key, configmap=name)
        except ApiException as e:
            if e.status == 409:
                logger.debug("Object already stored", key=key, configmap=name)
                return
            if e.status == 403:
                raise ObjectStorePermissionError(str(e)) from e
            raise ObjectStoreError(str(e)) from e

    async def get(self, key: str) -> bytes:
        name = self._configmap_name(key)
        try:
            cm = await self._call(
                lambda: self._core_v1.read_namespaced_config_map(
                    name=name, namespace=self._namespace, _request_timeout=request_timeout()
                )
            )
        except ApiException as e:
            if e.status == 404:
                raise ObjectNotFoundError(key) from e
            if e.status == 403:
                raise ObjectStorePermissionError(str(e)) from e
            raise ObjectStoreError(str(e)) from e

        payload = (cm.binary_data or {}).get(DATA_KEY)
        if payload is None:
            raise ObjectNotFoundError(key)
        return base64.b64decode(payload)

    async def delete(self, keys: list[str]) -> None:
        for key in keys:
            name = self._configmap_name(key)
            try:
                await self._call(
                    lambda name=name: self._core_v1.delete_namespaced_config_map(
                        name=name, namespace=self._namespace, _request_timeout=request_timeout()
                    )
                )
            except ApiException as e:
                if e.status == 404:
                    continue
                if e.status == 403:
                    raise ObjectStorePermissionError(str(e)) from e
                raise ObjectStoreError(str(e)) from e

    async def exists(self, key: str) -> bool:
        try:
            await self.get(key)
            return True
        except ObjectNotFoundError:
            return False

    async def close(self) -> None:
        """The API client is owned by the caller."""
