"""Build K8s Job and ConfigMap specs for helm install, upgrade and uninstall."""

import base64
import hashlib
import secrets

import yaml

from appstore.config import HelmExecutorConfig
from appstore.logging_config import get_logger

logger = get_logger(__name__)

WORKSPACE_SOURCE = "/tmp/helm-executor-source"
WORKSPACE = "/tmp/helm-executor"

KUBECONFIG_FILE = "kube.config"
VALUES_FILE = "values.yaml"
KUSTOMIZATION_FILE = "kustomization.yaml"
POST_RENDER_FILE = "helm-post-render.sh"
HELM_OUTPUT_FILE = ".local-helm-output.yaml"

RELEASE_LABEL = "appstore.io/release"
ACTION_LABEL = "appstore.io/action"
DIGEST_LABEL = "appstore.io/content-digest"

# kustomize cannot read stdin, so helm's rendered output goes to a file first
POST_RENDER_SCRIPT = f"""#!/bin/sh
cat > ./{HELM_OUTPUT_FILE}
kustomize build
"""

_NAME_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
# Job names become pod labels, which cap at 63 chars
_MAX_NAME_PART = 63 - len("helm-executor-") - 7


def generate_name(name: str) -> str:
    """helm-executor-<name>-<6 random chars>, shared by the Job and its ConfigMap."""
    suffix = "".join(secrets.choice(_NAME_ALPHABET) for _ in range(6))
    return f"helm-executor-{name[:_MAX_NAME_PART].rstrip('-')}-{suffix}"


def chart_file(chart_name: str) -> str:
    return f"{chart_name}.tgz"


def content_digest(package: bytes, values: bytes) -> str:
    """Short digest of a Job's chart and values, used to recognize a Job already started."""
    h = hashlib.sha256(package)
    h.update(b"\0")
    h.update(values)
    return h.hexdigest()[:16]


def job_labels(release_name: str, action: str, digest: str = "") -> dict[str, str]:
    labels = {
        "app.kubernetes.io/name": "helm-executor",
        "app.kubernetes.io/managed-by": "appstore",
        RELEASE_LABEL: release_name,
        ACTION_LABEL: action,
    }
    if digest:
        labels[DIGEST_LABEL] = digest
    return labels


def build_kustomization(labels: dict[str, str], annotations: dict[str, str]) -> str:
    """Kustomization that stamps extra labels and annotations on rendered output."""
    kustomization: dict = {
        "apiVersion": "kustomize.config.k8s.io/v1beta1",
        "kind": "Kustomization",
        "resources": [f"./{HELM_OUTPUT_FILE}"],
    }
    if annotations:
        kustomization["commonAnnotations"] = dict(annotations)
    if labels:
        # labels without selectors, so existing workloads keep matching
        kustomization["labels"] = [{"pairs": dict(labels)}]
    return yaml.safe_dump(kustomization, sort_keys=False)


def build_helm_args(
    action: str,
    release_name: str,
    namespace: str,
    chart_name: str = "",
    has_values: bool = False,
    has_kubeconfig: bool = False,
    post_render: bool = False,
    wait_timeout_seconds: int = 0,
) -> list[str]:
    """Arguments for the helm container. action is install, upgrade or uninstall.

    upgrade runs as `helm upgrade --install`, so it also recovers a release
    that failed or was never recorded.
    """
    if action == "uninstall":
        args = ["uninstall", release_name, "--namespace", namespace]
    else:
        args = ["upgrade", "--install"] if action == "upgrade" else [action]
        args += ["--wait", release_name, chart_file(chart_name), "--namespace", namespace]
        if wait_timeout_seconds:
            args += ["--timeout", f"{wait_timeout_seconds}s"]
        if has_values:
            args += ["--values", VALUES_FILE]
        if post_render:
            args += ["--post-renderer", f"{WORKSPACE}/{POST_RENDER_FILE}"]

    if has_kubeconfig:
        args += ["--kubeconfig", KUBECONFIG_FILE]
    return args


def build_source_configmap(
    name: str,
    namespace: str,
    release_name: str,
    action: str,
    files: dict[str, bytes],
    digest: str = "",
) -> dict:
    """ConfigMap carrying the Job's working files.

    Everything goes in binaryData so the chart archive survives intact.
    """
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": job_labels(release_name, action, digest),
        },
        "binaryData": {k: base64.b64encode(v).decode() for k, v in files.items()},
    }


def build_install_files(
    chart_name: str,
    chart_data: bytes,
    values: bytes,
    kubeconfig: bytes,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> dict[str, bytes]:
    files = {chart_file(chart_name): chart_data}
    if values:
        files[VALUES_FILE] = values
    if kubeconfig:
        files[KUBECONFIG_FILE] = kubeconfig
    if labels or annotations:
        files[POST_RENDER_FILE] = POST_RENDER_SCRIPT.encode()
        files[KUSTOMIZATION_FILE] = build_kustomization(labels or {}, annotations or {}).encode()
    return files


def build_job_spec(
    name: str,
    namespace: str,
    release_name: str,
    action: str,
    args: list[str],
    executor_config: HelmExecutorConfig,
    with_source: bool = True,
    digest: str = "",
) -> dict:
    """Build the Job that runs helm.

    The source ConfigMap is mounted read-only, so a postStart hook copies it
    into a writable emptyDir that serves as the working directory.
    """
    labels = job_labels(release_name, action, digest)
    container: dict = {
        "name": "helm",
        "image": executor_config.image,
        "imagePullPolicy": "IfNotPresent",
        "command": ["helm"],
        "args": args,
        "workingDir": WORKSPACE,
    }
    volumes: list[dict] = [{"name": "data", "emptyDir": {}}]
    mounts: list[dict] = [{"name": "data", "mountPath": WORKSPACE}]

    if with_source:
        volumes.append(
            {"name": "source", "configMap": {"name": name, "defaultMode": 0o755}}
        )
        mounts.append({"name": "source", "mountPath": WORKSPACE_SOURCE})
        container["lifecycle"] = {
            "postStart": {
                "exec": {
                    "command": ["/bin/sh", "-c", f"cp -r {WORKSPACE_SOURCE}/. {WORKSPACE}"],
                }
            }
        }
    container["volumeMounts"] = mounts

    job_spec: dict = {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": labels,
        },
        "spec": {
            "backoffLimit": executor_config.backoff_limit,
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "terminationGracePeriodSeconds": 0,
                    "restartPolicy": "Never",
                    "containers": [container],
                    "volumes": volumes,
                },
            },
        },
    }

    if executor_config.ttl_seconds_after_finished:
        job_spec["spec"]["ttlSecondsAfterFinished"] = executor_config.ttl_seconds_after_finished

    return job_spec
