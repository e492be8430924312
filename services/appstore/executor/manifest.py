"""
Executor for raw manifest bundles (yaml and edge application types).

Documents are applied synchronously with server-side apply through the
dynamic client, so no Job is involved and every operation returns "" for
the job name. The set of applied resources is recorded in a ConfigMap next
to them, which is what get, upgrade and uninstall work from.
"""

import asyncio
import json
import time
from typing import Any

from kubernetes import client, dynamic
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import DynamicApiError, NotFoundError

from appstore.executor.protocol import (
    HELM_DEPLOYED,
    HELM_PENDING_INSTALL,
    ExecutorError,
    ReleaseInfo,
    ReleaseNotFoundError,
)
from appstore.helm.readiness import documents_ready
from appstore.kube.resources import (
    ManifestDocument,
    ManifestError,
    ResourceRef,
    decode_manifest,
    fetch,
    load_documents,
)
from appstore.kube.timeouts import request_timeout
from appstore.logging_config import get_logger

logger = get_logger(__name__)

FIELD_MANAGER = "appstore"
RECORD_PREFIX = "appstore-manifest-"
RECORD_KEY = "resources"


def compliance_check(values: bytes | str, template: bytes | str, namespace: str) -> list[dict[str, Any]]:
    """Validate a user-edited bundle against the catalog template.

    The edited bundle must have the same documents, in order, with the same
    kind and apiVersion, and every document must target the release
    namespace. Returns the edited documents.
    """
    edited = load_documents(values)
    expected = load_documents(template)
    if len(edited) != len(expected):
        raise ManifestError(
            f"bundle has {len(edited)} documents, template has {len(expected)}"
        )
    for doc, tmpl in zip(edited, expected, strict=True):
        if doc["kind"] != tmpl["kind"] or doc["apiVersion"] != tmpl["apiVersion"]:
            raise ManifestError(
                f"document {doc['apiVersion']} {doc['kind']} does not match "
                f"template {tmpl['apiVersion']} {tmpl['kind']}"
            )
        if (doc.get("metadata") or {}).get("namespace") != namespace:
            raise ManifestError("subresource must have same namespace with app release")
    return edited


class ManifestInstaller:
    """ReleaseExecutor for manifest bundles in one namespace of one cluster."""

    def __init__(
        self,
        api_client: client.ApiClient,
        dyn_client: dynamic.DynamicClient,
        namespace: str,
    ) -> None:
        self._core_v1 = client.CoreV1Api(api_client)
        self._dyn = dyn_client
        self._namespace = namespace

    def _record_name(self, release_name: str) -> str:
        return f"{RECORD_PREFIX}{release_name}"

    async def _call(self, fn):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, fn)

    # --- resource record ---

    async def _read_record(self, release_name: str) -> list[ResourceRef] | None:
        try:
            cm = await self._call(
                lambda: self._core_v1.read_namespaced_config_map(
                    name=self._record_name(release_name),
                    namespace=self._namespace,
                    _request_timeout=request_timeout(),
                )
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return [ResourceRef.from_dict(r) for r in json.loads((cm.data or {}).get(RECORD_KEY, "[]"))]

    async def _write_record(self, release_name: str, refs: list[ResourceRef]) -> None:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=self._record_name(release_name),
                namespace=self._namespace,
                labels={
                    "app.kubernetes.io/managed-by": "appstore",
                    "appstore.io/release": release_name,
                },
            ),
            data={RECORD_KEY: json.dumps([r.to_dict() for r in refs])},
        )
        try:
            await self._call(
                lambda: self._core_v1.create_namespaced_config_map(
                    namespace=self._namespace, body=body, _request_timeout=request_timeout()
                )
            )
        except ApiException as e:
            if e.status != 409:
                raise
            await self._call(
                lambda: self._core_v1.replace_namespaced_config_map(
                    name=self._record_name(release_name),
                    namespace=self._namespace,
                    body=body,
                    _request_timeout=request_timeout(),
                )
            )

    async def _delete_record(self, release_name: str) -> None:
        try:
            await self._call(
                lambda: self._core_v1.delete_namespaced_config_map(
                    name=self._record_name(release_name),
                    namespace=self._namespace,
                    _request_timeout=request_timeout(),
                )
            )
        except ApiException as e:
            if e.status != 404:
                raise

    # --- resource operations (run in executor threads) ---

    def _apply(self, documents: list[ManifestDocument]) -> None:
        for doc in documents:
            api_resource = self._dyn.resources.get(
                api_version=doc.resource.api_version, kind=doc.resource.kind
            )
            self._dyn.server_side_apply(
                api_resource,
                body=doc.body,
                name=doc.resource.name,
                namespace=doc.resource.namespace or None,
                field_manager=FIELD_MANAGER,
                force_conflicts=True,
                _request_timeout=request_timeout(),
            )
            logger.debug("Applied resource", resource=str(doc.resource))

    def _delete(self, refs: list[ResourceRef]) -> None:
        for ref in refs:
            api_resource = self._dyn.resources.get(api_version=ref.api_version, kind=ref.kind)
            try:
                api_resource.delete(
                    name=ref.name, namespace=ref.namespace or None, _request_timeout=request_timeout()
                )
                logger.debug("Deleted resource", resource=str(ref))
            except NotFoundError:
                logger.debug("Resource already deleted", resource=str(ref))

    def _bundle(self, package: bytes, values: bytes) -> bytes | list[dict[str, Any]]:
        if values and values.strip():
            return compliance_check(values, package, self._namespace)
        return package

    def _decode(self, bundle: bytes | list[dict[str, Any]]) -> list[ManifestDocument]:
        if isinstance(bundle, list):
            bundle = "---\n".join(json.dumps(doc) for doc in bundle)
        return decode_manifest(self._dyn, bundle, self._namespace)

    # --- ReleaseExecutor ---

    async def get(self, release_name: str) -> ReleaseInfo:
        refs = await self._read_record(release_name)
        if refs is None:
            raise ReleaseNotFoundError(release_name, self._namespace)

        def _all_exist() -> bool:
            return all(fetch(self._dyn, ref) is not None for ref in refs)

        deployed = await self._call(_all_exist)
        return ReleaseInfo(
            name=release_name,
            namespace=self._namespace,
            status=HELM_DEPLOYED if deployed else HELM_PENDING_INSTALL,
            description="All resources applied" if deployed else "Waiting for resources",
        )

    async def install(self, release_name: str, package: bytes, values: bytes) -> str:
        """Apply the bundle, then delete resources a previous bundle had and this one lacks.

        The record lists every resource that may exist before anything is
        applied, so uninstall finds the resources of a partial apply.
        """
        bundle = self._bundle(package, values)
        previous = await self._read_record(release_name) or []
        try:
            documents = await self._call(lambda: self._decode(bundle))
        except DynamicApiError as e:
            raise ExecutorError(f"failed to resolve manifest: {e.summary()}") from e

        refs = [d.resource for d in documents]
        stale = [ref for ref in previous if ref not in refs]
        await self._write_record(release_name, refs + stale)
        try:
            await self._call(lambda: self._apply(documents))
        except DynamicApiError as e:
            raise ExecutorError(f"failed to apply manifest: {e.summary()}") from e
        logger.info(
            "Manifest applied",
            release=release_name,
            namespace=self._namespace,
            resources=len(documents),
        )

        if stale:
            try:
                await self._call(lambda: self._delete(list(reversed(stale))))
            except DynamicApiError as e:
                raise ExecutorError(f"failed to prune resources: {e.summary()}") from e
            await self._write_record(release_name, refs)
            logger.info("Pruned resources", release=release_name, resources=len(stale))
        return ""

    async def upgrade(self, release_name: str, package: bytes, values: bytes) -> str:
        return await self.install(release_name, package, values)

    async def uninstall(self, release_name: str) -> str:
        refs = await self._read_record(release_name)
        if refs is None:
            return ""
        try:
            await self._call(lambda: self._delete(list(reversed(refs))))
        except DynamicApiError as e:
            raise ExecutorError(f"failed to delete resources: {e.summary()}") from e
        await self._delete_record(release_name)
        logger.info("Manifest removed", release=release_name, namespace=self._namespace)
        return ""

    async def wait_for_ready(self, release_name: str, timeout: float) -> bool:
        refs = await self._read_record(release_name)
        if refs is None:
            raise ReleaseNotFoundError(release_name, self._namespace)
        documents = [ManifestDocument(resource=ref, body={}) for ref in refs]
        deadline = time.monotonic() + timeout
        return await self._call(lambda: documents_ready(self._dyn, documents, deadline))

    async def mark_deployed(self, release: ReleaseInfo) -> None:
        # Status is derived from the live resources; nothing to persist.
        release.status = HELM_DEPLOYED
