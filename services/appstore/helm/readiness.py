"""Per-kind readiness checks for the resources of a release."""

import asyncio
import time
from collections.abc import Callable
from typing import Any

from kubernetes import dynamic

from appstore.executor.protocol import ReleaseInfo
from appstore.kube.resources import ManifestDocument, decode_manifest, fetch
from appstore.logging_config import get_logger

logger = get_logger(__name__)


def _int(value: Any, default: int = 0) -> int:
    return default if value is None else int(value)


def _max_unavailable(spec: dict[str, Any], replicas: int) -> int:
    rolling = (spec.get("strategy") or {}).get("rollingUpdate") or {}
    value = rolling.get("maxUnavailable", 0)
    if isinstance(value, str) and value.endswith("%"):
        return replicas * int(value[:-1]) // 100
    return _int(value)


def deployment_ready(obj: dict[str, Any]) -> bool:
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    if spec.get("paused"):
        return True
    generation = _int((obj.get("metadata") or {}).get("generation"))
    if _int(status.get("observedGeneration")) < generation:
        return False
    replicas = _int(spec.get("replicas"), 1)
    expected = replicas - _max_unavailable(spec, replicas)
    return (
        _int(status.get("updatedReplicas")) >= replicas
        and _int(status.get("availableReplicas")) >= expected
    )


def statefulset_ready(obj: dict[str, Any]) -> bool:
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    if (spec.get("updateStrategy") or {}).get("type") == "OnDelete":
        return True
    replicas = _int(spec.get("replicas"), 1)
    partition = _int(((spec.get("updateStrategy") or {}).get("rollingUpdate") or {}).get("partition"))
    return (
        _int(status.get("readyReplicas")) >= replicas
        and _int(status.get("updatedReplicas")) >= replicas - partition
    )


def daemonset_ready(obj: dict[str, Any]) -> bool:
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    if (spec.get("updateStrategy") or {}).get("type") == "OnDelete":
        return True
    desired = _int(status.get("desiredNumberScheduled"))
    return (
        _int(status.get("updatedNumberScheduled")) >= desired
        and _int(status.get("numberReady")) >= desired
    )


def replicaset_ready(obj: dict[str, Any]) -> bool:
    replicas = _int((obj.get("spec") or {}).get("replicas"), 1)
    return _int((obj.get("status") or {}).get("readyReplicas")) >= replicas


def job_ready(obj: dict[str, Any]) -> bool:
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    if _int(status.get("failed")) > _int(spec.get("backoffLimit"), 6):
        return False
    return _int(status.get("succeeded")) >= _int(spec.get("completions"), 1)


def pod_ready(obj: dict[str, Any]) -> bool:
    status = obj.get("status") or {}
    if status.get("phase") == "Succeeded":
        return True
    return any(
        c.get("type") == "Ready" and c.get("status") == "True"
        for c in status.get("conditions") or []
    )


def pvc_ready(obj: dict[str, Any]) -> bool:
    return (obj.get("status") or {}).get("phase") == "Bound"


def service_ready(obj: dict[str, Any]) -> bool:
    spec = obj.get("spec") or {}
    if spec.get("type") == "ExternalName":
        return True
    if not spec.get("clusterIP"):
        return False
    if spec.get("type") == "LoadBalancer":
        ingress = ((obj.get("status") or {}).get("loadBalancer") or {}).get("ingress")
        return bool(ingress)
    return True


_CHECKS: dict[str, Callable[[dict[str, Any]], bool]] = {
    "Deployment": deployment_ready,
    "StatefulSet": statefulset_ready,
    "DaemonSet": daemonset_ready,
    "ReplicaSet": replicaset_ready,
    "Job": job_ready,
    "Pod": pod_ready,
    "PersistentVolumeClaim": pvc_ready,
    "Service": service_ready,
}


def is_ready(obj: dict[str, Any]) -> bool:
    """Readiness of a live object; kinds without a check are always ready."""
    check = _CHECKS.get(obj.get("kind", ""))
    return check(obj) if check else True


def documents_ready(
    dyn_client: dynamic.DynamicClient,
    documents: list[ManifestDocument],
    deadline: float | None = None,
) -> bool:
    """Check documents in order, stopping at the first that is missing or not ready.

    A missing object is final: helm creates resources in order, so anything
    later in the list cannot be ready either. Past deadline (a time.monotonic()
    value) the remaining documents count as not ready.
    """
    total = len(documents)
    for idx, doc in enumerate(documents, start=1):
        if deadline is not None and time.monotonic() >= deadline:
            logger.warning("Readiness check timed out", position=f"{idx}/{total}", resource=str(doc.resource))
            return False
        obj = fetch(dyn_client, doc.resource)
        if obj is None:
            logger.warning("Release resource not found", position=f"{idx}/{total}", resource=str(doc.resource))
            return False
        if not is_ready(obj):
            logger.info("Release resource not ready", position=f"{idx}/{total}", resource=str(doc.resource))
            return False
    return True


async def release_ready(
    dyn_client: dynamic.DynamicClient, release: ReleaseInfo, timeout: float | None = None
) -> bool:
    """Whether every hook resource and then every chart resource is ready.

    With a timeout the check gives up, reporting not ready, once it has
    run that many seconds.
    """
    deadline = None if timeout is None else time.monotonic() + timeout

    def _check() -> bool:
        documents: list[ManifestDocument] = []
        for hook in release.hooks:
            documents.extend(decode_manifest(dyn_client, hook, release.namespace))
        hook_count = len(documents)
        documents.extend(decode_manifest(dyn_client, release.manifest, release.namespace))
        logger.debug(
            "Checking release readiness",
            release=release.name,
            hooks=hook_count,
            resources=len(documents) - hook_count,
        )
        return documents_ready(dyn_client, documents, deadline)

    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, _check)
