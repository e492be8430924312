"""
Helm release storage.

Helm 3 keeps every revision of a release in a Secret in the release
namespace, labelled owner=helm and name=<release>. The `release` data key
holds base64(gzip(JSON)) on top of the API's own base64 encoding. Reading
these Secrets directly gives the controller release status without a helm
binary in the controller image.
"""

import asyncio
import base64
import gzip
import json
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from appstore.executor.protocol import (
    HELM_DEPLOYED,
    ExecutorError,
    ReleaseInfo,
    ReleaseNotFoundError,
)
from appstore.kube.timeouts import request_timeout
from appstore.logging_config import get_logger

logger = get_logger(__name__)

RELEASE_DATA_KEY = "release"
DEADLINE_EXCEEDED = "context deadline exceeded"

_GZIP_MAGIC = b"\x1f\x8b"


def decode_release(payload: str) -> dict[str, Any]:
    """Decode the `release` value of a helm storage Secret as returned by the API."""
    data = base64.b64decode(base64.b64decode(payload))
    if data[:2] == _GZIP_MAGIC:
        data = gzip.decompress(data)
    return json.loads(data)


def encode_release(record: dict[str, Any]) -> str:
    """Inverse of decode_release."""
    data = gzip.compress(json.dumps(record).encode())
    return base64.b64encode(base64.b64encode(data)).decode()


def release_from_record(record: dict[str, Any], secret_name: str = "") -> ReleaseInfo:
    info = record.get("info") or {}
    return ReleaseInfo(
        name=record.get("name", ""),
        namespace=record.get("namespace", ""),
        version=int(record.get("version", 0)),
        status=info.get("status", ""),
        description=info.get("description", ""),
        manifest=record.get("manifest", ""),
        hooks=[h.get("manifest", "") for h in record.get("hooks") or []],
        raw=record,
        secret_name=secret_name,
    )


def is_deadline_exceeded(description: str) -> bool:
    """Whether a failed release's description reports a helm --wait timeout.

    Helm exposes no structured reason, only the human-readable error, so this
    is a substring match.
    """
    return DEADLINE_EXCEEDED in description


async def get_latest_release(api_client: client.ApiClient, namespace: str, name: str) -> ReleaseInfo:
    """Return the newest revision of a release. Raises ReleaseNotFoundError."""
    core_v1 = client.CoreV1Api(api_client)
    loop = asyncio.get_event_loop()
    secrets = await loop.run_in_executor(
        None,
        lambda: core_v1.list_namespaced_secret(
            namespace=namespace,
            label_selector=f"owner=helm,name={name}",
            _request_timeout=request_timeout(),
        ),
    )

    latest: ReleaseInfo | None = None
    for secret in secrets.items:
        payload = (secret.data or {}).get(RELEASE_DATA_KEY)
        if not payload:
            continue
        try:
            record = decode_release(payload)
        except (ValueError, OSError) as e:
            raise ExecutorError(f"corrupt helm release record {secret.metadata.name}: {e}") from e
        rel = release_from_record(record, secret.metadata.name)
        if latest is None or rel.version > latest.version:
            latest = rel

    if latest is None:
        raise ReleaseNotFoundError(name, namespace)
    return latest


async def mark_deployed(api_client: client.ApiClient, release: ReleaseInfo) -> None:
    """Rewrite the release's storage Secret with status deployed.

    Used once a timed-out install has been observed ready, so helm itself
    agrees with the controller on the next upgrade.
    """
    record = dict(release.raw)
    info = dict(record.get("info") or {})
    info["status"] = HELM_DEPLOYED
    info["description"] = "Successfully deployed"
    record["info"] = info

    core_v1 = client.CoreV1Api(api_client)
    loop = asyncio.get_event_loop()
    try:
        secret = await loop.run_in_executor(
            None,
            lambda: core_v1.read_namespaced_secret(
                name=release.secret_name, namespace=release.namespace, _request_timeout=request_timeout()
            ),
        )
        secret.data = dict(secret.data or {})
        secret.data[RELEASE_DATA_KEY] = encode_release(record)
        labels = dict(secret.metadata.labels or {})
        labels["status"] = HELM_DEPLOYED
        secret.metadata.labels = labels
        await loop.run_in_executor(
            None,
            lambda: core_v1.replace_namespaced_secret(
                name=release.secret_name,
                namespace=release.namespace,
                body=secret,
                _request_timeout=request_timeout(),
            ),
        )
    except ApiException as e:
        logger.error(
            "Failed to update helm release record",
            release=release.name,
            namespace=release.namespace,
            error=str(e),
        )
        raise

    release.status = HELM_DEPLOYED
    release.description = info["description"]
    release.raw = record
    logger.info("Helm release marked deployed", release=release.name, namespace=release.namespace)
