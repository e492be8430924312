"""
Release controller.

Drives each ApplicationRelease from its declared spec to a deployed
release in its target cluster and namespace, and tears it down again when
deletion is requested. One reconcile pass performs at most one step of the
lifecycle and returns a Result saying when to look again:

    ""  -> creating -> created -> active
                           \\-> timeout -> active | failed
    any -> upgrading -> upgraded -> active
    any -> deleting -> (row removed)

Status transitions are validated against VALID_TRANSITIONS, and a pass
that observes nothing new leaves the row untouched.
"""

import asyncio
from collections.abc import Callable

from kubernetes import client, dynamic
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appstore.clusters import ClusterInfo, ClusterNotFoundError, ClusterResolver, get_helm_kubeconfig
from appstore.config import HelmExecutorConfig
from appstore.controllers.workqueue import Result
from appstore.db.models import (
    APP_TYPE_HELM,
    STATUS_ACTIVE,
    STATUS_CLUSTER_DELETED,
    STATUS_CREATED,
    STATUS_CREATING,
    STATUS_DELETING,
    STATUS_DEPLOY_FAILED,
    STATUS_FAILED,
    STATUS_TIMEOUT,
    STATUS_UPGRADED,
    STATUS_UPGRADING,
    ApplicationRelease,
    as_utc,
    utc_now,
)
from appstore.executor.helm_job import HelmJobExecutor
from appstore.executor.manifest import ManifestInstaller
from appstore.executor.protocol import (
    HELM_DEPLOYED,
    HELM_FAILED,
    ExecutorError,
    ReleaseExecutor,
    ReleaseInfo,
    ReleaseNotFoundError,
)
from appstore.helm.pull import DEFAULT_PULL_TIMEOUT
from appstore.helm.release import is_deadline_exceeded
from appstore.kube import jobs
from appstore.logging_config import get_logger
from appstore.services.package_service import load_release_package
from appstore.storage.keys import release_package_key
from appstore.storage.protocol import ObjectNotFoundError, ObjectStore, ObjectStoreError

logger = get_logger(__name__)

RELEASE_FINALIZER = "appstore.io/release-cleanup"

# Seconds between polls of a running job or release
VERIFICATION_AGAIN = 5
# Seconds between readiness rechecks of a timed-out install
TIMEOUT_VERIFICATION_AGAIN = 600
TIMEOUT_MAX_RECHECK = 4

DEFAULT_READY_TIMEOUT = 30.0

# Transitions out of each state. Upgrading, deleting and clusterdeleted
# are reachable from every state except deleting (see ALWAYS_REACHABLE).
VALID_TRANSITIONS: dict[str, set[str]] = {
    "": {STATUS_CREATING},
    STATUS_CREATING: {STATUS_CREATED, STATUS_FAILED},
    STATUS_UPGRADING: {STATUS_UPGRADED, STATUS_FAILED},
    STATUS_CREATED: {STATUS_ACTIVE, STATUS_TIMEOUT, STATUS_FAILED, STATUS_DEPLOY_FAILED},
    STATUS_UPGRADED: {STATUS_ACTIVE, STATUS_TIMEOUT, STATUS_FAILED, STATUS_DEPLOY_FAILED},
    STATUS_TIMEOUT: {STATUS_ACTIVE, STATUS_FAILED, STATUS_DEPLOY_FAILED},
    STATUS_ACTIVE: set(),
    STATUS_FAILED: set(),
    STATUS_DEPLOY_FAILED: set(),
    STATUS_CLUSTER_DELETED: set(),
    STATUS_DELETING: set(),
}

ALWAYS_REACHABLE = {STATUS_UPGRADING, STATUS_DELETING, STATUS_CLUSTER_DELETED}


class InvalidTransitionError(ValueError):
    """Raised when a release would move to a state not reachable from its current one."""

    def __init__(self, name: str, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition for release {name}: {current or '<empty>'} -> {target}")


def can_transition(current: str, target: str) -> bool:
    if current == STATUS_DELETING:
        return False
    if target in ALWAYS_REACHABLE:
        return True
    return target in VALID_TRANSITIONS.get(current, set())


ExecutorFactory = Callable[
    [ApplicationRelease, bytes, client.ApiClient, dynamic.DynamicClient],
    ReleaseExecutor,
]


def default_executor_factory(helm_config: HelmExecutorConfig) -> ExecutorFactory:
    """Helm releases run through Jobs; yaml and edge bundles are applied directly."""

    def build(
        release: ApplicationRelease,
        kubeconfig: bytes,
        api_client: client.ApiClient,
        dyn_client: dynamic.DynamicClient,
    ) -> ReleaseExecutor:
        if release.app_type == APP_TYPE_HELM:
            return HelmJobExecutor(
                api_client,
                dyn_client,
                release.namespace,
                helm_config,
                kubeconfig=kubeconfig,
                chart_name=release.app_name or release.name,
                labels=helm_config.extra_labels,
                annotations=helm_config.extra_annotations,
            )
        return ManifestInstaller(api_client, dyn_client, release.namespace)

    return build


class ReleaseReconciler:
    """Reconciles one ApplicationRelease per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clusters: ClusterResolver,
        store: ObjectStore,
        helm_config: HelmExecutorConfig,
        executor_factory: ExecutorFactory | None = None,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
    ) -> None:
        self._session_factory = session_factory
        self._clusters = clusters
        self._store = store
        self._executor_factory = executor_factory or default_executor_factory(helm_config)
        self._ready_timeout = ready_timeout
        self._pull_timeout = float(helm_config.pull_timeout_seconds or DEFAULT_PULL_TIMEOUT)

    async def reconcile(self, name: str) -> Result:
        async with self._session_factory() as db:
            release = await db.get(ApplicationRelease, name)
            if release is None:
                logger.debug("Release not found, nothing to do", release=name)
                return Result()

            result = await self._reconcile(db, release)
            await db.commit()
            return result

    async def _reconcile(self, db: AsyncSession, release: ApplicationRelease) -> Result:
        cluster = await self._resolve_cluster(release.cluster)
        if cluster is None or cluster.deleting:
            return await self._cluster_gone(db, release)

        if RELEASE_FINALIZER not in release.finalizers and not release.is_deleting:
            release.finalizers = [*release.finalizers, RELEASE_FINALIZER]
            return Result(requeue=True)

        api_client = await self._clusters.get_runtime_client(release.cluster)
        kubeconfig = await get_helm_kubeconfig(cluster, api_client)
        dyn_client = await self._clusters.get_dynamic_client(release.cluster, impersonate=release.creator)
        executor = self._executor_factory(release, kubeconfig, api_client, dyn_client)

        if release.is_deleting:
            return await self._delete(db, release, executor, api_client)

        if release.state == "":
            release.spec_hash = release.hash_spec()
            self._set_state(release, STATUS_CREATING)
            return Result(requeue=True)

        spec_hash = release.hash_spec()
        if release.spec_hash != spec_hash:
            logger.info("Release spec changed, upgrading", release=release.name)
            release.spec_hash = spec_hash
            release.timeout_recheck = 0
            self._set_state(release, STATUS_UPGRADING)
            return Result(requeue=True)

        if release.state in (STATUS_CREATED, STATUS_UPGRADED, STATUS_TIMEOUT):
            return await self._observe(release, executor, api_client)

        if release.state in (STATUS_CREATING, STATUS_UPGRADING):
            return await self._deploy(db, release, executor, api_client)

        return Result()

    async def _resolve_cluster(self, name: str) -> ClusterInfo | None:
        try:
            return await self._clusters.get(name)
        except ClusterNotFoundError:
            return None

    def _set_state(self, release: ApplicationRelease, state: str, message: str = "") -> None:
        if release.state != state and not can_transition(release.state, state):
            raise InvalidTransitionError(release.name, release.state, state)
        logger.info(
            "Release state changed",
            release=release.name,
            from_state=release.state or "<empty>",
            to_state=state,
            message=message,
        )
        release.state = state
        release.message = message
        release.last_update = utc_now()

    def _remove_finalizer(self, release: ApplicationRelease) -> None:
        if RELEASE_FINALIZER in release.finalizers:
            release.finalizers = [f for f in release.finalizers if f != RELEASE_FINALIZER]

    async def _cluster_gone(self, db: AsyncSession, release: ApplicationRelease) -> Result:
        if release.is_deleting:
            logger.info("Cluster gone, removing release record", release=release.name, cluster=release.cluster)
            self._remove_finalizer(release)
            await db.delete(release)
            return Result()

        if release.state != STATUS_CLUSTER_DELETED:
            self._set_state(release, STATUS_CLUSTER_DELETED, f"cluster {release.cluster} has been deleted")
        return Result()

    # --- deletion ---

    async def _delete(
        self,
        db: AsyncSession,
        release: ApplicationRelease,
        executor: ReleaseExecutor,
        api_client: client.ApiClient,
    ) -> Result:
        if release.state != STATUS_DELETING:
            self._set_state(release, STATUS_DELETING, "Uninstalling")
            release.uninstall_job_name = await executor.uninstall(release.name)
            await self._clean_store(release)

        if release.uninstall_job_name:
            job = await jobs.get_job(api_client, release.uninstall_job_name, release.namespace)
            if job is not None:
                state = jobs.job_state(job)
                if not state.finished:
                    logger.debug("Uninstall job running", release=release.name, job=release.uninstall_job_name)
                    return Result(requeue_after=VERIFICATION_AGAIN)
                if state.exhausted:
                    logger.warning(
                        "Uninstall job failed, removing release anyway",
                        release=release.name,
                        job=release.uninstall_job_name,
                        failed=state.failed,
                    )

        await self._clean_jobs(release, api_client)
        self._remove_finalizer(release)
        await db.delete(release)
        logger.info("Release removed", release=release.name, namespace=release.namespace)
        return Result()

    async def _clean_store(self, release: ApplicationRelease) -> None:
        """Drop a package uploaded with the release. Best effort."""
        if release.app_version_id:
            return
        try:
            await self._store.delete([release_package_key(release.name)])
        except ObjectStoreError as e:
            logger.warning("Failed to delete release package", release=release.name, error=str(e))

    async def _clean_jobs(self, release: ApplicationRelease, api_client: client.ApiClient) -> None:
        for name in (release.install_job_name, release.uninstall_job_name):
            if not name:
                continue
            await jobs.delete_job(api_client, name, release.namespace)
            await jobs.delete_configmap(api_client, name, release.namespace)

    # --- install / upgrade ---

    async def _deploy(
        self,
        db: AsyncSession,
        release: ApplicationRelease,
        executor: ReleaseExecutor,
        api_client: client.ApiClient,
    ) -> Result:
        try:
            package = await load_release_package(db, self._store, release, self._pull_timeout)
        except ObjectNotFoundError as e:
            self._set_state(release, STATUS_FAILED, f"package not found: {e}")
            return Result()

        values = release.values.encode()
        try:
            if release.state == STATUS_CREATING:
                job_name = await executor.install(release.name, package, values)
                target = STATUS_CREATED
            else:
                job_name = await executor.upgrade(release.name, package, values)
                target = STATUS_UPGRADED
        except ExecutorError as e:
            logger.warning("Release deploy failed", release=release.name, error=str(e))
            self._set_state(release, STATUS_FAILED, str(e))
            return Result()

        previous = release.install_job_name
        if previous and previous != job_name:
            await jobs.delete_job(api_client, previous, release.namespace)
            await jobs.delete_configmap(api_client, previous, release.namespace)
        release.install_job_name = job_name
        self._set_state(release, target)
        return Result(requeue=True)

    # --- observation ---

    async def _observe(
        self, release: ApplicationRelease, executor: ReleaseExecutor, api_client: client.ApiClient
    ) -> Result:
        try:
            info = await executor.get(release.name)
        except ReleaseNotFoundError:
            result, _ = await self._check_job(release, api_client, None)
            return result
        except ExecutorError as e:
            self._set_state(release, STATUS_FAILED, f"{release.name} helm create job failed err: {e}")
            return Result()

        if release.state == STATUS_UPGRADED and release.install_job_name:
            result, proceed = await self._check_job(release, api_client, info)
            if not proceed:
                return result

        if info.status == HELM_FAILED:
            if is_deadline_exceeded(info.description) and release.timeout_recheck < TIMEOUT_MAX_RECHECK:
                return await self._recheck_timeout(release, executor, info)
            self._set_state(release, STATUS_FAILED, info.description)
            return Result()

        if info.status == HELM_DEPLOYED:
            self._set_state(release, STATUS_ACTIVE, info.description)
            return Result()

        return Result(requeue_after=VERIFICATION_AGAIN)

    async def _recheck_timeout(
        self, release: ApplicationRelease, executor: ReleaseExecutor, info: ReleaseInfo
    ) -> Result:
        if release.state != STATUS_TIMEOUT:
            self._set_state(release, STATUS_TIMEOUT, "Installation timeout")
            return Result(requeue_after=TIMEOUT_VERIFICATION_AGAIN)

        wait = self._recheck_wait(release)
        if wait > 0:
            logger.debug("Timed-out release recheck not due", release=release.name, wait=round(wait, 1))
            return Result(requeue_after=wait)

        ready = await executor.wait_for_ready(release.name, self._ready_timeout)
        release.timeout_recheck += 1
        release.last_update = utc_now()
        logger.info(
            "Timed-out release rechecked",
            release=release.name,
            ready=ready,
            recheck=release.timeout_recheck,
        )
        if ready:
            await executor.mark_deployed(info)
            self._set_state(release, STATUS_ACTIVE, info.description)
            return Result()
        return Result(requeue_after=TIMEOUT_VERIFICATION_AGAIN)

    def _recheck_wait(self, release: ApplicationRelease) -> float:
        """Seconds until a timed-out release is due for its next readiness recheck."""
        if release.last_update is None:
            return 0.0
        elapsed = (utc_now() - as_utc(release.last_update)).total_seconds()
        return max(0.0, TIMEOUT_VERIFICATION_AGAIN - elapsed)

    async def _check_job(
        self, release: ApplicationRelease, api_client: client.ApiClient, info: ReleaseInfo | None
    ) -> tuple[Result, bool]:
        """Inspect the install/upgrade job.

        Returns the Result to use and whether observation of the release
        itself should continue.
        """
        job = None
        if release.install_job_name:
            job = await jobs.get_job(api_client, release.install_job_name, release.namespace)
        if job is None:
            self._set_state(release, STATUS_DEPLOY_FAILED, "deploy failed, job not found")
            return Result(), False

        state = jobs.job_state(job)
        if release.state == STATUS_UPGRADED and state.succeeded > 0:
            self._set_state(release, STATUS_ACTIVE, "Upgrade successful")
            return Result(), False

        if state.failed:
            logger.info(
                "Install job failing",
                release=release.name,
                job=release.install_job_name,
                failed=state.failed,
                backoff_limit=state.backoff_limit,
            )
        if state.exhausted:
            if release.state != STATUS_UPGRADED or (info is not None and info.status == HELM_DEPLOYED):
                self._set_state(
                    release,
                    STATUS_DEPLOY_FAILED,
                    f"deploy failed, job {release.install_job_name} has failed {state.failed} times",
                )
                return Result(), False
            return Result(requeue_after=VERIFICATION_AGAIN), True

        return Result(requeue_after=VERIFICATION_AGAIN), False


async def list_release_names(session_factory: async_sessionmaker[AsyncSession]) -> list[str]:
    async with session_factory() as db:
        result = await db.execute(select(ApplicationRelease.name).order_by(ApplicationRelease.name))
        return list(result.scalars().all())


async def releases_for_cluster(db: AsyncSession, cluster: str) -> list[str]:
    """Names of the releases targeting a cluster, for re-enqueueing on cluster events."""
    result = await db.execute(
        select(ApplicationRelease.name)
        .where(ApplicationRelease.cluster == cluster)
        .order_by(ApplicationRelease.name)
    )
    return list(result.scalars().all())


class ClusterWatch:
    """Enqueues every release of a cluster once it is deleted or stops resolving.

    A cluster is reported once per disappearance, and again if it comes
    back and disappears a second time.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clusters: ClusterResolver,
        enqueue: Callable[[str], None],
        period: float = 60.0,
    ) -> None:
        self._session_factory = session_factory
        self._clusters = clusters
        self._enqueue = enqueue
        self._period = period
        self._gone: set[str] = set()

    async def check(self) -> list[str]:
        """Check each cluster that has releases. Returns the release names enqueued."""
        enqueued: list[str] = []
        async with self._session_factory() as db:
            result = await db.execute(select(ApplicationRelease.cluster).distinct())
            for cluster in result.scalars().all():
                if await self._resolve_cluster(cluster):
                    self._gone.discard(cluster)
                    continue
                if cluster in self._gone:
                    continue
                self._gone.add(cluster)
                names = await releases_for_cluster(db, cluster)
                logger.info("Cluster removed, enqueueing its releases", cluster=cluster, releases=len(names))
                for name in names:
                    self._enqueue(name)
                enqueued.extend(names)
        return enqueued

    async def _resolve_cluster(self, cluster: str) -> bool:
        try:
            return not (await self._clusters.get(cluster)).deleting
        except ClusterNotFoundError:
            return False

    async def run(self, stop: asyncio.Event) -> None:
        """Check every period seconds until stop is set."""
        while not stop.is_set():
            try:
                await self.check()
            except Exception as e:
                logger.error("Cluster check failed", error=str(e), exc_info=e)

            try:
                await asyncio.wait_for(stop.wait(), self._period)
            except TimeoutError:
                pass
