"""
Repo controller.

Mirrors a chart repository's index into the catalog: one Application per
chart and one ApplicationVersion per chart version. Versions whose digest
is unchanged are left alone, so a sync of an unchanged index writes
nothing to the catalog.
"""

from collections.abc import Awaitable, Callable
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appstore.controllers.workqueue import Result
from appstore.db.models import (
    APP_TYPE_HELM,
    REPO_CREATED,
    REPO_MANUAL_TRIGGER,
    REPO_SUCCESSFUL,
    REPO_SYNCING,
    Application,
    ApplicationVersion,
    Repo,
    as_utc,
    utc_now,
)
from appstore.helm.index import ChartVersion, IndexFile, filter_versions, load_repo_index
from appstore.helm.pull import DEFAULT_PULL_TIMEOUT, RepoCredential
from appstore.logging_config import get_logger
from appstore.services.catalog_service import (
    AppRequest,
    app_id,
    create_or_update_app,
    delete_application,
    delete_application_version,
    delete_repo_catalog,
    resolve_pull_url,
    version_id,
)
from appstore.storage.protocol import ObjectStore

logger = get_logger(__name__)

WorkspaceExists = Callable[[str], Awaitable[bool]]
IndexLoader = Callable[[str, RepoCredential, float], Awaitable[IndexFile]]


def skip_sync(repo: Repo) -> bool:
    """Whether the repo was synced recently enough to leave alone."""
    if repo.state in (REPO_MANUAL_TRIGGER, REPO_SYNCING):
        return False
    if repo.sync_period == 0:
        return True
    if repo.state == REPO_SUCCESSFUL and repo.last_update_time is not None:
        elapsed = utc_now() - as_utc(repo.last_update_time)
        return elapsed < timedelta(seconds=repo.sync_period)
    return False


def build_request(repo: Repo, chart: str, version: ChartVersion) -> AppRequest:
    app_name = app_id(repo.name, chart)
    return AppRequest(
        repo_name=repo.name,
        app_name=app_name,
        version_name=version.version,
        alias_name=chart,
        original_name=chart,
        app_home=version.home,
        icon=version.icon,
        digest=version.digest,
        description=version.description,
        abstraction=version.description,
        maintainers=list(version.maintainers),
        app_type=APP_TYPE_HELM,
        workspace=repo.workspace,
        pull_url=resolve_pull_url(repo.url, version.urls[0]) if version.urls else "",
        from_repo=True,
    )


class RepoReconciler:
    """Reconciles one Repo per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: ObjectStore,
        workspace_exists: WorkspaceExists | None = None,
        http_timeout: float = DEFAULT_PULL_TIMEOUT,
        index_loader: IndexLoader = load_repo_index,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._workspace_exists = workspace_exists
        self._http_timeout = http_timeout
        self._load_index = index_loader

    async def reconcile(self, name: str) -> Result:
        async with self._session_factory() as db:
            repo = await db.get(Repo, name)
            if repo is None:
                logger.debug("Repo not found, nothing to do", repo=name)
                return Result()

            result = await self._reconcile(db, repo)
            await db.commit()
            return result

    def _requeue(self, repo: Repo) -> Result:
        if repo.sync_period > 0:
            return Result(requeue_after=float(repo.sync_period))
        return Result()

    def _set_state(self, repo: Repo, state: str) -> None:
        repo.state = state
        repo.last_update_time = utc_now()

    async def _reconcile(self, db: AsyncSession, repo: Repo) -> Result:
        if repo.state == "":
            self._set_state(repo, REPO_CREATED)

        if repo.workspace and self._workspace_exists is not None:
            if not await self._workspace_exists(repo.workspace):
                removed = await delete_repo_catalog(db, repo.name, self._store)
                await db.delete(repo)
                logger.info(
                    "Workspace deleted, repo removed",
                    repo=repo.name,
                    workspace=repo.workspace,
                    applications=removed,
                )
                return Result()

        if skip_sync(repo):
            logger.debug("Repo sync skipped", repo=repo.name, state=repo.state)
            return self._requeue(repo)

        self._set_state(repo, REPO_SYNCING)
        # Make syncing visible while the index is fetched
        await db.commit()

        cred = RepoCredential.model_validate(repo.credential or {})
        index = await self._load_index(repo.url, cred, self._http_timeout)
        await self._sync(db, repo, index)

        self._set_state(repo, REPO_SUCCESSFUL)
        logger.info("Synced", repo=repo.name, charts=len(index.entries))
        return self._requeue(repo)

    async def _sync(self, db: AsyncSession, repo: Repo, index: IndexFile) -> None:
        wanted = {app_id(repo.name, chart) for chart in index.entries}

        result = await db.execute(select(Application).where(Application.repo_name == repo.name))
        existing_apps: set[str] = set()
        for app in result.scalars().all():
            if app.name in wanted:
                existing_apps.add(app.name)
            else:
                logger.info("Chart removed from repo", repo=repo.name, app=app.name)
                await delete_application(db, app, self._store)

        for chart, versions in index.entries.items():
            requests = await self._version_requests(db, repo, chart, filter_versions(versions), existing_apps)
            if requests:
                await create_or_update_app(db, requests, self._store)

    async def _version_requests(
        self,
        db: AsyncSession,
        repo: Repo,
        chart: str,
        versions: list[ChartVersion],
        existing_apps: set[str],
    ) -> list[AppRequest]:
        """Requests for the versions that are new or whose digest changed."""
        app_name = app_id(repo.name, chart)
        wanted = {version_id(app_name, v.version) for v in versions}

        result = await db.execute(
            select(ApplicationVersion).where(
                ApplicationVersion.repo_name == repo.name,
                ApplicationVersion.app_name == app_name,
            )
        )
        digests: dict[str, str] = {}
        for stored in result.scalars().all():
            if stored.name in wanted:
                digests[stored.name] = stored.digest
            else:
                await delete_application_version(db, stored, self._store)

        requests = []
        for version in versions:
            key = version_id(app_name, version.version)
            if key in digests and digests[key] == version.digest:
                continue
            requests.append(build_request(repo, chart, version))

        if not requests and versions and app_name not in existing_apps:
            requests.append(build_request(repo, chart, versions[0]))
        return requests


async def list_repo_names(session_factory: async_sessionmaker[AsyncSession]) -> list[str]:
    async with session_factory() as db:
        result = await db.execute(select(Repo.name).order_by(Repo.name))
        return list(result.scalars().all())
