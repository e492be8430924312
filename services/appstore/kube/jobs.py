"""K8s Job and ConfigMap lifecycle for helm executor Jobs.

Uses the kubernetes Python client against the target cluster's API client,
which the caller owns.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes import client
from kubernetes.client.rest import ApiException

from appstore.kube.timeouts import request_timeout
from appstore.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class JobState:
    """Counters of a Job's pods plus its retry budget."""

    active: int = 0
    succeeded: int = 0
    failed: int = 0
    backoff_limit: int = 6

    @property
    def exhausted(self) -> bool:
        return self.failed > self.backoff_limit

    @property
    def finished(self) -> bool:
        return self.succeeded > 0 or self.exhausted


def job_state(job: client.V1Job) -> JobState:
    status = job.status or client.V1JobStatus()
    backoff = job.spec.backoff_limit if job.spec and job.spec.backoff_limit is not None else 6
    return JobState(
        active=status.active or 0,
        succeeded=status.succeeded or 0,
        failed=status.failed or 0,
        backoff_limit=backoff,
    )

async def _call(fn):
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, fn)


async def create_job(api_client: client.ApiClient, job_spec: dict, namespace: str = "") -> str:
    """Create a K8s Job from a spec dict.

    Returns the job name.
    """
    if not namespace:
        namespace = job_spec["metadata"]["namespace"]

    batch_api = client.BatchV1Api(api_client)
    job_name = job_spec.get("metadata", {}).get("name", "unknown")

    try:
        await _call(
            lambda: batch_api.create_namespaced_job(
                namespace=namespace, body=job_spec, _request_timeout=request_timeout()
            )
        )
        logger.info("Created K8s Job", job=job_name, namespace=namespace)
        return job_name
    except ApiException as e:
        logger.error("Failed to create Job", job=job_name, error=str(e))
        raise


async def get_job(api_client: client.ApiClient, job_name: str, namespace: str) -> client.V1Job | None:
    """Read a Job, or None if it does not exist."""
    batch_api = client.BatchV1Api(api_client)
    try:
        return await _call(
            lambda: batch_api.read_namespaced_job(
                name=job_name, namespace=namespace, _request_timeout=request_timeout()
            )
        )
    except ApiException as e:
        if e.status == 404:
            return None
        raise


async def find_running_job(api_client: client.ApiClient, namespace: str, labels: dict[str, str]) -> str:
    """Name of the newest unfinished Job carrying all of labels, or ""."""
    batch_api = client.BatchV1Api(api_client)
    selector = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
    job_list = await _call(
        lambda: batch_api.list_namespaced_job(
            namespace=namespace, label_selector=selector, _request_timeout=request_timeout()
        )
    )

    running = [
        job for job in job_list.items
        if job.metadata.deletion_timestamp is None and not job_state(job).finished
    ]
    if not running:
        return ""
    newest = max(running, key=lambda job: job.metadata.creation_timestamp or datetime.min.replace(tzinfo=UTC))
    return newest.metadata.name


async def delete_job(api_client: client.ApiClient, job_name: str, namespace: str) -> None:
    """Delete a Job and its pods. A missing Job is not an error."""
    batch_api = client.BatchV1Api(api_client)

    try:
        await _call(
            lambda: batch_api.delete_namespaced_job(
                name=job_name,
                namespace=namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
                _request_timeout=request_timeout(),
            )
        )
        logger.info("Deleted K8s Job", job=job_name, namespace=namespace)
    except ApiException as e:
        if e.status == 404:
            logger.debug("Job already deleted", job=job_name)
        else:
            logger.error("Failed to delete Job", job=job_name, error=str(e))
            raise


async def create_configmap(api_client: client.ApiClient, configmap: dict, namespace: str) -> None:
    core_api = client.CoreV1Api(api_client)
    name = configmap["metadata"]["name"]
    try:
        await _call(
            lambda: core_api.create_namespaced_config_map(
                namespace=namespace, body=configmap, _request_timeout=request_timeout()
            )
        )
        logger.debug("Created ConfigMap", configmap=name, namespace=namespace)
    except ApiException as e:
        logger.error("Failed to create ConfigMap", configmap=name, error=str(e))
        raise


async def delete_configmap(api_client: client.ApiClient, name: str, namespace: str) -> None:
    """Delete a ConfigMap. A missing ConfigMap is not an error."""
    core_api = client.CoreV1Api(api_client)
    try:
        await _call(
            lambda: core_api.delete_namespaced_config_map(
                name=name, namespace=namespace, _request_timeout=request_timeout()
            )
        )
        logger.debug("Deleted ConfigMap", configmap=name, namespace=namespace)
    except ApiException as e:
        if e.status != 404:
            logger.error("Failed to delete ConfigMap", configmap=name, error=str(e))
            raise


async def ensure_namespace(api_client: client.ApiClient, namespace: str) -> None:
    """Create a namespace unless it already exists."""
    core_api = client.CoreV1Api(api_client)
    body = client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace))
    try:
        await _call(lambda: core_api.create_namespace(body=body, _request_timeout=request_timeout()))
        logger.info("Created namespace", namespace=namespace)
    except ApiException as e:
        if e.status != 409:
            raise
