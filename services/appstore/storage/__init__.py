"""
Artifact store for chart packages and attachments.

Provides init_storage() / close_storage() for process lifespan and
get_storage() for components wired up outside the controller manager.
"""

from __future__ import annotations

from kubernetes import client

from appstore.config import StorageConfig
from appstore.logging_config import get_logger
from appstore.storage.protocol import ObjectStore

logger = get_logger(__name__)

# Module-level storage instance
_store: ObjectStore | None = None


def build_store(cfg: StorageConfig, api_client: client.ApiClient) -> ObjectStore:
    """Build the tiered store from configuration.

    The ConfigMap backend is always present. S3 is layered on top when a
    bucket is configured.
    """
    from appstore.storage.configmap import ConfigMapStore
    from appstore.storage.tiered import TieredStore

    small = ConfigMapStore(
        api_client,
        namespace=cfg.configmap.namespace,
        name_prefix=cfg.configmap.name_prefix,
    )

    large = None
    if cfg.s3.enabled:
        from appstore.storage.s3 import S3Store

        large = S3Store(
            bucket=cfg.s3.bucket,
            region=cfg.s3.region,
            prefix=cfg.s3.prefix,
            endpoint_url=cfg.s3.endpoint_url,
        )

    logger.info(
        "Storage initialized",
        small="configmap",
        namespace=cfg.configmap.namespace,
        large="s3" if large is not None else None,
        bucket=cfg.s3.bucket or None,
    )
    return TieredStore(small=small, large=large)


async def init_storage(cfg: StorageConfig, api_client: client.ApiClient) -> ObjectStore:
    """Initialize the storage backends. Called during manager startup."""
    global _store  # noqa: PLW0603
    _store = build_store(cfg, api_client)
    return _store


async def close_storage() -> None:
    """Close the storage backends and release resources."""
    global _store  # noqa: PLW0603
    if _store is not None:
        await _store.close()
        _store = None
        logger.info("Storage closed")


def get_storage() -> ObjectStore:
    """Return the storage backend. Raises RuntimeError if not initialized."""
    if _store is None:
        raise RuntimeError("Storage not initialized, call init_storage() first")
    return _store
