"""
Tests for the Job-based helm executor.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException

from appstore.config import HelmExecutorConfig
from appstore.executor import job_template
from appstore.executor.helm_job import HelmJobExecutor
from appstore.executor.protocol import (
    ExecutorError,
    ReleaseExecutor,
    ReleaseExistsError,
    ReleaseInfo,
    ReleaseNotFoundError,
    ReleaseStateError,
)


def _executor(**kwargs) -> HelmJobExecutor:
    return HelmJobExecutor(
        MagicMock(),
        MagicMock(),
        "demo",
        HelmExecutorConfig(create_namespace=False),
        **kwargs,
    )


def _info(status: str) -> ReleaseInfo:
    return ReleaseInfo(name="web", namespace="demo", status=status)


@pytest.fixture
def jobs():
    with patch("appstore.executor.helm_job.jobs") as mock_jobs:
        mock_jobs.create_job = AsyncMock(return_value="job")
        mock_jobs.create_configmap = AsyncMock()
        mock_jobs.ensure_namespace = AsyncMock()
        mock_jobs.find_running_job = AsyncMock(return_value="")
        yield mock_jobs


def _latest(result=None, error=None):
    return patch(
        "appstore.executor.helm_job.get_latest_release",
        new=AsyncMock(return_value=result, side_effect=error),
    )


def _job_args(jobs) -> list[str]:
    return jobs.create_job.call_args.args[1]["spec"]["template"]["spec"]["containers"][0]["args"]


class TestInstall:
    async def test_starts_job_when_not_installed(self, jobs) -> None:
        with _latest(error=ReleaseNotFoundError("web", "demo")):
            name = await _executor(chart_name="nginx").install("web", b"tgz", b"a: 1")

        assert name.startswith("helm-executor-nginx-")
        configmap = jobs.create_configmap.call_args.args[1]
        assert set(configmap["binaryData"]) == {"nginx.tgz", "values.yaml"}
        job_spec = jobs.create_job.call_args.args[1]
        assert job_spec["metadata"]["name"] == name
        assert _job_args(jobs)[:3] == ["install", "--wait", "web"]

    async def test_job_labelled_with_inputs(self, jobs) -> None:
        with _latest(error=ReleaseNotFoundError("web", "demo")):
            await _executor().install("web", b"tgz", b"a: 1")

        digest = job_template.content_digest(b"tgz", b"a: 1")
        labels = jobs.create_job.call_args.args[1]["metadata"]["labels"]
        assert labels[job_template.RELEASE_LABEL] == "web"
        assert labels[job_template.DIGEST_LABEL] == digest
        assert jobs.find_running_job.call_args.args[2] == {
            job_template.RELEASE_LABEL: "web",
            job_template.ACTION_LABEL: "install",
            job_template.DIGEST_LABEL: digest,
        }

    async def test_already_deployed(self, jobs) -> None:
        with _latest(_info("deployed")):
            assert await _executor().install("web", b"tgz", b"") == ""
        jobs.create_job.assert_not_called()

    async def test_pending_release_resumes_running_job(self, jobs) -> None:
        jobs.find_running_job.return_value = "helm-executor-web-abc123"
        with _latest(_info("pending-install")):
            assert await _executor().install("web", b"tgz", b"") == "helm-executor-web-abc123"
        jobs.create_job.assert_not_called()

    async def test_not_yet_recorded_resumes_running_job(self, jobs) -> None:
        jobs.find_running_job.return_value = "helm-executor-web-abc123"
        with _latest(error=ReleaseNotFoundError("web", "demo")):
            assert await _executor().install("web", b"tgz", b"") == "helm-executor-web-abc123"
        jobs.create_job.assert_not_called()

    async def test_pending_without_job(self, jobs) -> None:
        with _latest(_info("pending-install")):
            with pytest.raises(ReleaseExistsError):
                await _executor().install("web", b"tgz", b"")

    async def test_exists_in_other_state(self, jobs) -> None:
        with _latest(_info("failed")):
            with pytest.raises(ReleaseExistsError):
                await _executor().install("web", b"tgz", b"")
        jobs.find_running_job.assert_not_called()

    async def test_ensures_namespace(self, jobs) -> None:
        executor = HelmJobExecutor(MagicMock(), MagicMock(), "demo", HelmExecutorConfig())
        with _latest(error=ReleaseNotFoundError("web", "demo")):
            await executor.install("web", b"tgz", b"")
        jobs.ensure_namespace.assert_awaited_once()

    async def test_post_render_with_labels(self, jobs) -> None:
        with _latest(error=ReleaseNotFoundError("web", "demo")):
            await _executor(labels={"team": "a"}).install("web", b"tgz", b"")
        configmap = jobs.create_configmap.call_args.args[1]
        assert "kustomization.yaml" in configmap["binaryData"]

    async def test_api_error_wrapped(self, jobs) -> None:
        jobs.create_job.side_effect = ApiException(status=403, reason="Forbidden")
        with _latest(error=ReleaseNotFoundError("web", "demo")):
            with pytest.raises(ExecutorError, match="Forbidden"):
                await _executor().install("web", b"tgz", b"")

    async def test_job_listing_error_wrapped(self, jobs) -> None:
        jobs.find_running_job.side_effect = ApiException(status=500, reason="Internal")
        with _latest(error=ReleaseNotFoundError("web", "demo")):
            with pytest.raises(ExecutorError, match="Internal"):
                await _executor().install("web", b"tgz", b"")


class TestUpgrade:
    async def test_starts_upgrade_job(self, jobs) -> None:
        with _latest(_info("deployed")):
            await _executor().upgrade("web", b"tgz", b"")
        assert _job_args(jobs)[:4] == ["upgrade", "--install", "--wait", "web"]

    async def test_failed_release_upgraded(self, jobs) -> None:
        with _latest(_info("failed")):
            name = await _executor().upgrade("web", b"tgz", b"a: 2")
        assert name.startswith("helm-executor-")
        assert _job_args(jobs)[:2] == ["upgrade", "--install"]

    async def test_missing_release_installed(self, jobs) -> None:
        with _latest(error=ReleaseNotFoundError("web", "demo")):
            await _executor().upgrade("web", b"tgz", b"")
        assert _job_args(jobs)[:2] == ["upgrade", "--install"]

    async def test_pending_release_resumes_running_job(self, jobs) -> None:
        jobs.find_running_job.return_value = "helm-executor-web-abc123"
        with _latest(_info("pending-upgrade")):
            assert await _executor().upgrade("web", b"tgz", b"") == "helm-executor-web-abc123"
        jobs.create_job.assert_not_called()
        assert jobs.find_running_job.call_args.args[2][job_template.ACTION_LABEL] == "upgrade"

    async def test_pending_without_job(self, jobs) -> None:
        with _latest(_info("pending-install")):
            with pytest.raises(ReleaseStateError):
                await _executor().upgrade("web", b"tgz", b"")

    async def test_uninstalling_release(self, jobs) -> None:
        with _latest(_info("uninstalling")):
            with pytest.raises(ReleaseStateError, match="current state is uninstalling"):
                await _executor().upgrade("web", b"tgz", b"")
        jobs.create_job.assert_not_called()


class TestUninstall:
    async def test_not_installed(self, jobs) -> None:
        with _latest(error=ReleaseNotFoundError("web", "demo")):
            assert await _executor().uninstall("web") == ""
        jobs.create_job.assert_not_called()

    async def test_without_kubeconfig_has_no_source(self, jobs) -> None:
        with _latest(_info("deployed")):
            await _executor().uninstall("web")
        jobs.create_configmap.assert_not_called()
        assert _job_args(jobs) == ["uninstall", "web", "--namespace", "demo"]

    async def test_with_kubeconfig(self, jobs) -> None:
        with _latest(_info("deployed")):
            await _executor(kubeconfig=b"kc").uninstall("web")
        configmap = jobs.create_configmap.call_args.args[1]
        assert set(configmap["binaryData"]) == {"kube.config"}


class TestReadiness:
    async def test_timeout_passed_to_check(self) -> None:
        with patch("appstore.executor.helm_job.release_ready", new=AsyncMock(return_value=False)) as ready:
            assert await _executor().check_ready(_info("failed"), 0.01) is False
        assert ready.await_args.args[2] == 0.01

    async def test_ready(self) -> None:
        with patch("appstore.executor.helm_job.release_ready", new=AsyncMock(return_value=True)):
            assert await _executor().check_ready(_info("failed"), 1) is True

    async def test_needs_dynamic_client(self) -> None:
        executor = HelmJobExecutor(MagicMock(), None, "demo", HelmExecutorConfig())
        with pytest.raises(ExecutorError):
            await executor.check_ready(_info("failed"), 1)


def test_satisfies_protocol() -> None:
    assert isinstance(_executor(), ReleaseExecutor)
