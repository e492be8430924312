"""
Manifest documents and their resolution to API resources.

A raw YAML document is resolved once, through the dynamic client's
discovery, into a ResourceRef naming the concrete resource it targets. All
functions here are synchronous and expected to run in an executor thread.
"""

from dataclasses import asdict, dataclass
from typing import Any

import yaml
from kubernetes import dynamic
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

from appstore.executor.protocol import ExecutorError
from appstore.kube.timeouts import request_timeout
from appstore.logging_config import get_logger

logger = get_logger(__name__)


class ManifestError(ExecutorError):
    """Raised for undecodable or non-compliant manifest bundles."""


@dataclass(frozen=True)
class ResourceRef:
    """A concrete API object: discovered resource plus name and namespace."""

    api_version: str
    kind: str
    name: str
    namespace: str = ""

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceRef":
        return cls(
            api_version=data["api_version"],
            kind=data["kind"],
            name=data["name"],
            namespace=data.get("namespace", ""),
        )

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}:{self.namespace}/{self.name}"
        return f"{self.kind}:{self.name}"


@dataclass
class ManifestDocument:
    """One decoded document of a bundle and the resource it resolves to."""

    resource: ResourceRef
    body: dict[str, Any]


def load_documents(text: str | bytes) -> list[dict[str, Any]]:
    """Split a multi-document YAML bundle, dropping empty documents."""
    try:
        docs = [d for d in yaml.safe_load_all(text) if d]
    except yaml.YAMLError as e:
        raise ManifestError(f"invalid manifest: {e}") from e

    for doc in docs:
        if not isinstance(doc, dict) or not doc.get("apiVersion") or not doc.get("kind"):
            raise ManifestError("manifest document without apiVersion/kind")
        if not (doc.get("metadata") or {}).get("name"):
            raise ManifestError(f"{doc['kind']} document without metadata.name")
    return docs


def resolve(
    dyn_client: dynamic.DynamicClient, document: dict[str, Any], default_namespace: str
) -> ResourceRef:
    """Resolve a document to a ResourceRef via API discovery.

    Namespaced resources without an explicit namespace land in
    default_namespace; cluster-scoped resources carry none.
    """
    api_version = document["apiVersion"]
    kind = document["kind"]
    try:
        api_resource = dyn_client.resources.get(api_version=api_version, kind=kind)
    except ResourceNotFoundError as e:
        raise ManifestError(f"no API resource for {api_version} {kind}") from e

    metadata = document.get("metadata") or {}
    namespace = ""
    if api_resource.namespaced:
        namespace = metadata.get("namespace") or default_namespace
    return ResourceRef(
        api_version=api_version,
        kind=kind,
        name=metadata["name"],
        namespace=namespace,
    )


def decode_manifest(
    dyn_client: dynamic.DynamicClient, text: str | bytes, default_namespace: str
) -> list[ManifestDocument]:
    documents = []
    for doc in load_documents(text):
        ref = resolve(dyn_client, doc, default_namespace)
        if ref.namespace:
            doc.setdefault("metadata", {})["namespace"] = ref.namespace
        documents.append(ManifestDocument(resource=ref, body=doc))
    return documents


def fetch(dyn_client: dynamic.DynamicClient, ref: ResourceRef) -> dict[str, Any] | None:
    """Read the live object, or None when it does not exist."""
    api_resource = dyn_client.resources.get(api_version=ref.api_version, kind=ref.kind)
    try:
        obj = api_resource.get(
            name=ref.name, namespace=ref.namespace or None, _request_timeout=request_timeout()
        )
    except NotFoundError:
        return None
    return obj.to_dict()
