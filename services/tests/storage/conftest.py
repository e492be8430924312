"""
Shared fixtures for storage tests.
"""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest

from appstore.storage.configmap import ConfigMapStore


@pytest.fixture
def core_v1() -> MagicMock:
    """Mocked CoreV1Api injected into ConfigMapStore."""
    return MagicMock()


@pytest.fixture
def cm_store(core_v1: MagicMock) -> ConfigMapStore:
    store = ConfigMapStore(MagicMock(), namespace="kubesphere-system", name_prefix="application-")
    store._core_v1 = core_v1
    return store


@pytest.fixture
def localstack_available() -> bool:
    """Check if LocalStack is available for S3 integration tests.

    Verifies both that the env var is set AND that the service is actually
    reachable, avoiding failures when the env var is set but LocalStack
    hasn't finished starting.
    """
    endpoint = os.environ.get("LOCALSTACK_ENDPOINT", "")
    if not endpoint:
        return False

    import httpx

    try:
        httpx.get(f"{endpoint}/_localstack/health", timeout=2)
        return True
    except httpx.HTTPError:
        return False


@pytest.fixture
def localstack_endpoint() -> str:
    """Return the LocalStack endpoint URL."""
    return os.environ.get("LOCALSTACK_ENDPOINT", "http://localhost:4566")


@pytest.fixture
def s3_test_bucket() -> str:
    """Return the S3 test bucket name."""
    return os.environ.get("S3_TEST_BUCKET", "appstore-test")
