"""
Tests for the manifest bundle executor.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import DynamicApiError

from appstore.executor.manifest import RECORD_KEY, ManifestInstaller, compliance_check
from appstore.executor.protocol import (
    HELM_DEPLOYED,
    HELM_PENDING_INSTALL,
    ExecutorError,
    ReleaseNotFoundError,
)
from appstore.kube.resources import ManifestDocument, ManifestError, ResourceRef, load_documents
from appstore.kube.timeouts import DEFAULT_REQUEST_TIMEOUT

TEMPLATE = """
apiVersion: v1
kind: ConfigMap
metadata:
  name: settings
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
"""

EDITED = """
apiVersion: v1
kind: ConfigMap
metadata:
  name: settings
  namespace: demo
data:
  a: "1"
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
  namespace: demo
"""


class TestLoadDocuments:
    def test_skips_empty_documents(self) -> None:
        assert len(load_documents("---\n" + TEMPLATE + "\n---\n")) == 2

    def test_missing_kind(self) -> None:
        with pytest.raises(ManifestError):
            load_documents("apiVersion: v1\nmetadata:\n  name: x\n")

    def test_missing_name(self) -> None:
        with pytest.raises(ManifestError):
            load_documents("apiVersion: v1\nkind: ConfigMap\n")

    def test_invalid_yaml(self) -> None:
        with pytest.raises(ManifestError):
            load_documents("kind: [")


class TestComplianceCheck:
    def test_valid(self) -> None:
        docs = compliance_check(EDITED, TEMPLATE, "demo")
        assert [d["kind"] for d in docs] == ["ConfigMap", "Deployment"]

    def test_wrong_namespace(self) -> None:
        with pytest.raises(ManifestError, match="same namespace"):
            compliance_check(EDITED, TEMPLATE, "other")

    def test_document_count_mismatch(self) -> None:
        single = EDITED.split("---")[0]
        with pytest.raises(ManifestError, match="documents"):
            compliance_check(single, TEMPLATE, "demo")

    def test_kind_mismatch(self) -> None:
        swapped = EDITED.replace("kind: Deployment", "kind: StatefulSet")
        with pytest.raises(ManifestError, match="does not match"):
            compliance_check(swapped, TEMPLATE, "demo")


def _record_cm(refs: list[ResourceRef]) -> MagicMock:
    cm = MagicMock()
    cm.data = {RECORD_KEY: json.dumps([r.to_dict() for r in refs])}
    return cm


@pytest.fixture
def installer() -> ManifestInstaller:
    inst = ManifestInstaller(MagicMock(), MagicMock(), "demo")
    inst._core_v1 = MagicMock()
    return inst


REFS = [
    ResourceRef("v1", "ConfigMap", "settings", "demo"),
    ResourceRef("apps/v1", "Deployment", "web", "demo"),
]


class TestManifestInstaller:
    async def test_get_without_record(self, installer: ManifestInstaller) -> None:
        installer._core_v1.read_namespaced_config_map.side_effect = ApiException(status=404)
        with pytest.raises(ReleaseNotFoundError):
            await installer.get("web")

    async def test_get_deployed_when_all_exist(self, installer: ManifestInstaller) -> None:
        installer._core_v1.read_namespaced_config_map.return_value = _record_cm(REFS)
        with patch("appstore.executor.manifest.fetch", return_value={"kind": "x"}):
            info = await installer.get("web")
        assert info.status == HELM_DEPLOYED

    async def test_get_pending_when_missing(self, installer: ManifestInstaller) -> None:
        installer._core_v1.read_namespaced_config_map.return_value = _record_cm(REFS)
        with patch("appstore.executor.manifest.fetch", side_effect=[{"kind": "x"}, None]):
            info = await installer.get("web")
        assert info.status == HELM_PENDING_INSTALL

    async def test_install_applies_and_records(self, installer: ManifestInstaller) -> None:
        installer._core_v1.read_namespaced_config_map.side_effect = ApiException(status=404)
        documents = [ManifestDocument(ref, {"metadata": {"name": ref.name}}) for ref in REFS]
        with patch("appstore.executor.manifest.decode_manifest", return_value=documents):
            job = await installer.install("web", TEMPLATE.encode(), b"")

        assert job == ""
        assert installer._dyn.server_side_apply.call_count == 2
        assert installer._dyn.server_side_apply.call_args.kwargs["_request_timeout"] == DEFAULT_REQUEST_TIMEOUT
        body = installer._core_v1.create_namespaced_config_map.call_args.kwargs["body"]
        assert body.metadata.name == "appstore-manifest-web"
        assert [r["name"] for r in json.loads(body.data[RECORD_KEY])] == ["settings", "web"]

    async def test_install_rejects_noncompliant_values(self, installer: ManifestInstaller) -> None:
        with pytest.raises(ManifestError):
            await installer.install("web", TEMPLATE.encode(), EDITED.replace("demo", "x").encode())
        installer._dyn.server_side_apply.assert_not_called()

    async def test_record_replaced_on_conflict(self, installer: ManifestInstaller) -> None:
        installer._core_v1.create_namespaced_config_map.side_effect = ApiException(status=409)
        await installer._write_record("web", REFS)
        installer._core_v1.replace_namespaced_config_map.assert_called_once()

    async def test_upgrade_prunes_stale(self, installer: ManifestInstaller) -> None:
        stale = ResourceRef("v1", "Service", "old", "demo")
        installer._core_v1.read_namespaced_config_map.return_value = _record_cm([*REFS, stale])
        documents = [ManifestDocument(ref, {}) for ref in REFS]
        with patch("appstore.executor.manifest.decode_manifest", return_value=documents):
            await installer.upgrade("web", TEMPLATE.encode(), b"")

        deleted = installer._dyn.resources.get.return_value.delete.call_args_list
        assert [c.kwargs["name"] for c in deleted] == ["old"]
        written = [
            [r["name"] for r in json.loads(c.kwargs["body"].data[RECORD_KEY])]
            for c in installer._core_v1.create_namespaced_config_map.call_args_list
        ]
        assert written == [["settings", "web", "old"], ["settings", "web"]]

    async def test_partial_apply_is_uninstalled(self, installer: ManifestInstaller) -> None:
        refs = [*REFS, ResourceRef("v1", "Service", "web", "demo")]
        documents = [ManifestDocument(ref, {}) for ref in refs]
        installer._core_v1.read_namespaced_config_map.side_effect = ApiException(status=404)
        installer._dyn.server_side_apply.side_effect = [
            None,
            DynamicApiError(ApiException(status=422, reason="Invalid")),
        ]
        with patch("appstore.executor.manifest.decode_manifest", return_value=documents):
            with pytest.raises(ExecutorError, match="Invalid"):
                await installer.install("web", TEMPLATE.encode(), b"")
        assert installer._dyn.server_side_apply.call_count == 2

        record = installer._core_v1.create_namespaced_config_map.call_args.kwargs["body"]
        installer._core_v1.read_namespaced_config_map.side_effect = None
        installer._core_v1.read_namespaced_config_map.return_value = record
        await installer.uninstall("web")

        deleted = installer._dyn.resources.get.return_value.delete.call_args_list
        assert [c.kwargs["name"] for c in deleted] == ["web", "web", "settings"]
        installer._core_v1.delete_namespaced_config_map.assert_called_once()

    async def test_uninstall_without_record(self, installer: ManifestInstaller) -> None:
        installer._core_v1.read_namespaced_config_map.side_effect = ApiException(status=404)
        assert await installer.uninstall("web") == ""
        installer._core_v1.delete_namespaced_config_map.assert_not_called()

    async def test_uninstall_deletes_in_reverse(self, installer: ManifestInstaller) -> None:
        installer._core_v1.read_namespaced_config_map.return_value = _record_cm(REFS)
        assert await installer.uninstall("web") == ""

        deleted = installer._dyn.resources.get.return_value.delete.call_args_list
        assert [c.kwargs["name"] for c in deleted] == ["web", "settings"]
        installer._core_v1.delete_namespaced_config_map.assert_called_once()
