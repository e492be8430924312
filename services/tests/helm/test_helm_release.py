"""
Tests for helm release storage decoding and status updates.
"""

import base64
import json
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException

from appstore.executor.protocol import ExecutorError, ReleaseNotFoundError
from appstore.helm.release import (
    decode_release,
    encode_release,
    get_latest_release,
    is_deadline_exceeded,
    mark_deployed,
    release_from_record,
)


def _record(version: int, status: str = "deployed", description: str = "Install complete") -> dict:
    return {
        "name": "web",
        "namespace": "demo",
        "version": version,
        "info": {"status": status, "description": description},
        "manifest": "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: web\n",
        "hooks": [{"manifest": "apiVersion: batch/v1\nkind: Job\nmetadata:\n  name: web-init\n"}],
    }


def _secret(name: str, record: dict) -> MagicMock:
    secret = MagicMock()
    secret.metadata.name = name
    secret.metadata.labels = {"owner": "helm", "name": "web", "status": record["info"]["status"]}
    secret.data = {"release": encode_release(record)}
    return secret


class TestDecode:
    def test_gzipped_payload(self) -> None:
        record = _record(3)
        assert decode_release(encode_release(record)) == record

    def test_plain_json_payload(self) -> None:
        payload = base64.b64encode(base64.b64encode(json.dumps({"name": "x"}).encode())).decode()
        assert decode_release(payload) == {"name": "x"}

    def test_release_from_record(self) -> None:
        info = release_from_record(_record(2, "failed", "timed out"), "sh.helm.release.v1.web.v2")
        assert info.version == 2
        assert info.status == "failed"
        assert info.description == "timed out"
        assert info.hooks == ["apiVersion: batch/v1\nkind: Job\nmetadata:\n  name: web-init\n"]
        assert info.secret_name == "sh.helm.release.v1.web.v2"


class TestDeadlineExceeded:
    def test_match(self) -> None:
        assert is_deadline_exceeded("Release \"web\" failed: context deadline exceeded")

    def test_no_match(self) -> None:
        assert not is_deadline_exceeded("Release \"web\" failed: image pull backoff")


class TestGetLatestRelease:
    async def test_picks_highest_revision(self) -> None:
        core = MagicMock()
        core.list_namespaced_secret.return_value.items = [
            _secret("v1", _record(1, "superseded")),
            _secret("v3", _record(3, "deployed")),
            _secret("v2", _record(2, "superseded")),
        ]
        with patch("appstore.helm.release.client.CoreV1Api", return_value=core):
            info = await get_latest_release(MagicMock(), "demo", "web")

        assert info.version == 3
        assert info.secret_name == "v3"
        assert core.list_namespaced_secret.call_args.kwargs["label_selector"] == "owner=helm,name=web"

    async def test_not_found(self) -> None:
        core = MagicMock()
        core.list_namespaced_secret.return_value.items = []
        with patch("appstore.helm.release.client.CoreV1Api", return_value=core):
            with pytest.raises(ReleaseNotFoundError):
                await get_latest_release(MagicMock(), "demo", "web")

    async def test_corrupt_record(self) -> None:
        secret = MagicMock()
        secret.metadata.name = "v1"
        secret.data = {"release": "not-base64!"}
        core = MagicMock()
        core.list_namespaced_secret.return_value.items = [secret]
        with patch("appstore.helm.release.client.CoreV1Api", return_value=core):
            with pytest.raises(ExecutorError, match="corrupt"):
                await get_latest_release(MagicMock(), "demo", "web")


class TestMarkDeployed:
    async def test_rewrites_secret(self) -> None:
        record = _record(1, "failed", "context deadline exceeded")
        secret = _secret("sh.helm.release.v1.web.v1", record)
        core = MagicMock()
        core.read_namespaced_secret.return_value = secret
        release = release_from_record(record, "sh.helm.release.v1.web.v1")

        with patch("appstore.helm.release.client.CoreV1Api", return_value=core):
            await mark_deployed(MagicMock(), release)

        body = core.replace_namespaced_secret.call_args.kwargs["body"]
        assert body.metadata.labels["status"] == "deployed"
        assert decode_release(body.data["release"])["info"]["status"] == "deployed"
        assert release.status == "deployed"
        assert release.description == "Successfully deployed"

    async def test_api_error_propagates(self) -> None:
        core = MagicMock()
        core.read_namespaced_secret.side_effect = ApiException(status=500)
        release = release_from_record(_record(1, "failed"), "v1")
        with patch("appstore.helm.release.client.CoreV1Api", return_value=core):
            with pytest.raises(ApiException):
                await mark_deployed(MagicMock(), release)
        assert release.status == "failed"
