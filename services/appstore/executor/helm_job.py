"""
Helm executor that runs helm inside a Job in the target cluster.

The controller never shells out to helm itself: it reads release state
from helm's storage Secrets and delegates install, upgrade and uninstall to
a short-lived Job whose name the release controller polls.
"""

from kubernetes import client, dynamic
from kubernetes.client.rest import ApiException

from appstore.config import HelmExecutorConfig
from appstore.executor import job_template
from appstore.executor.protocol import (
    HELM_DEPLOYED,
    HELM_FAILED,
    HELM_PENDING_INSTALL,
    HELM_PENDING_UPGRADE,
    ExecutorError,
    ReleaseExistsError,
    ReleaseInfo,
    ReleaseNotFoundError,
    ReleaseStateError,
)
from appstore.helm.readiness import release_ready
from appstore.helm.release import get_latest_release, mark_deployed
from appstore.kube import jobs
from appstore.logging_config import get_logger

logger = get_logger(__name__)

# Statuses helm holds while a Job of ours may still be running
_IN_PROGRESS = (HELM_PENDING_INSTALL, HELM_PENDING_UPGRADE)


class HelmJobExecutor:
    """ReleaseExecutor for helm charts in one namespace of one cluster."""

    def __init__(
        self,
        api_client: client.ApiClient,
        dyn_client: dynamic.DynamicClient | None,
        namespace: str,
        executor_config: HelmExecutorConfig,
        kubeconfig: bytes = b"",
        chart_name: str = "",
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
    ) -> None:
        self._api_client = api_client
        self._dyn_client = dyn_client
        self._namespace = namespace
        self._config = executor_config
        self._kubeconfig = kubeconfig
        self._chart_name = chart_name
        self._labels = labels or {}
        self._annotations = annotations or {}

    async def get(self, release_name: str) -> ReleaseInfo:
        return await get_latest_release(self._api_client, self._namespace, release_name)

    async def install(self, release_name: str, package: bytes, values: bytes) -> str:
        digest = job_template.content_digest(package, values)
        try:
            current = await self.get(release_name)
        except ReleaseNotFoundError:
            running = await self._running_job(release_name, "install", digest)
            return running or await self._run_install_job(release_name, "install", package, values, digest)

        if current.status == HELM_DEPLOYED:
            logger.info("Release already deployed", release=release_name, namespace=self._namespace)
            return ""
        if current.status in _IN_PROGRESS:
            running = await self._running_job(release_name, "install", digest)
            if running:
                return running
        raise ReleaseExistsError(release_name, current.status)

    async def upgrade(self, release_name: str, package: bytes, values: bytes) -> str:
        """Run `helm upgrade --install`.

        A release that is missing or failed is installed over, so a spec
        change recovers it.
        """
        digest = job_template.content_digest(package, values)
        try:
            status = (await self.get(release_name)).status
        except ReleaseNotFoundError:
            status = ""

        upgradable = status in ("", HELM_DEPLOYED, HELM_FAILED)
        if upgradable or status in _IN_PROGRESS:
            running = await self._running_job(release_name, "upgrade", digest)
            if running:
                return running
        if not upgradable:
            raise ReleaseStateError(
                f"cannot upgrade release {self._namespace}/{release_name}, current state is {status}"
            )
        return await self._run_install_job(release_name, "upgrade", package, values, digest)

    async def uninstall(self, release_name: str) -> str:
        try:
            await self.get(release_name)
        except ReleaseNotFoundError:
            logger.info("Release already uninstalled", release=release_name, namespace=self._namespace)
            return ""

        name = job_template.generate_name(release_name)
        has_kubeconfig = bool(self._kubeconfig)
        args = job_template.build_helm_args(
            "uninstall", release_name, self._namespace, has_kubeconfig=has_kubeconfig
        )
        files = {job_template.KUBECONFIG_FILE: self._kubeconfig} if has_kubeconfig else {}
        return await self._launch(name, release_name, "uninstall", args, files)

    async def wait_for_ready(self, release_name: str, timeout: float) -> bool:
        release = await self.get(release_name)
        return await self.check_ready(release, timeout)

    async def check_ready(self, release: ReleaseInfo, timeout: float) -> bool:
        if self._dyn_client is None:
            raise ExecutorError("readiness checks need a dynamic client")
        return await release_ready(self._dyn_client, release, timeout)

    async def mark_deployed(self, release: ReleaseInfo) -> None:
        await mark_deployed(self._api_client, release)

    async def _running_job(self, release_name: str, action: str, digest: str) -> str:
        """Name of a Job already started for these inputs, or ""."""
        labels = {
            job_template.RELEASE_LABEL: release_name,
            job_template.ACTION_LABEL: action,
            job_template.DIGEST_LABEL: digest,
        }
        try:
            name = await jobs.find_running_job(self._api_client, self._namespace, labels)
        except ApiException as e:
            raise ExecutorError(f"failed to list helm {action} jobs: {e.reason or e}") from e
        if name:
            logger.info(
                "Helm job already running",
                release=release_name,
                namespace=self._namespace,
                action=action,
                job=name,
            )
        return name

    async def _run_install_job(
        self, release_name: str, action: str, package: bytes, values: bytes, digest: str
    ) -> str:
        if self._config.create_namespace:
            await jobs.ensure_namespace(self._api_client, self._namespace)

        chart_name = self._chart_name or release_name
        post_render = bool(self._labels or self._annotations)
        args = job_template.build_helm_args(
            action,
            release_name,
            self._namespace,
            chart_name=chart_name,
            has_values=bool(values),
            has_kubeconfig=bool(self._kubeconfig),
            post_render=post_render,
            wait_timeout_seconds=self._config.wait_timeout_seconds,
        )
        files = job_template.build_install_files(
            chart_name, package, values, self._kubeconfig, self._labels, self._annotations
        )
        name = job_template.generate_name(chart_name)
        return await self._launch(name, release_name, action, args, files, digest)

    async def _launch(
        self,
        name: str,
        release_name: str,
        action: str,
        args: list[str],
        files: dict[str, bytes],
        digest: str = "",
    ) -> str:
        """Create the source ConfigMap (if any files) and the Job. Returns the Job name."""
        try:
            if files:
                configmap = job_template.build_source_configmap(
                    name, self._namespace, release_name, action, files, digest=digest
                )
                await jobs.create_configmap(self._api_client, configmap, self._namespace)
            job_spec = job_template.build_job_spec(
                name,
                self._namespace,
                release_name,
                action,
                args,
                self._config,
                with_source=bool(files),
                digest=digest,
            )
            await jobs.create_job(self._api_client, job_spec, self._namespace)
        except ApiException as e:
            raise ExecutorError(f"failed to start helm {action} job: {e.reason or e}") from e

        logger.info(
            "Helm job started",
            release=release_name,
            namespace=self._namespace,
            action=action,
            job=name,
        )
        return name
