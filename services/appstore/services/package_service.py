"""Resolve the package bytes a release installs."""

from sqlalchemy.ext.asyncio import AsyncSession

from appstore.db.models import ApplicationRelease, ApplicationVersion, Repo
from appstore.helm.pull import DEFAULT_PULL_TIMEOUT, RepoCredential, pull_chart
from appstore.logging_config import get_logger
from appstore.storage.keys import release_package_key, version_package_key
from appstore.storage.protocol import ObjectNotFoundError, ObjectStore

logger = get_logger(__name__)


async def load_version_package(
    db: AsyncSession,
    store: ObjectStore,
    version: ApplicationVersion,
    timeout: float = DEFAULT_PULL_TIMEOUT,
) -> bytes:
    """Package of a catalog version.

    Repo-sourced versions are pulled from their origin with the repo's
    credentials; uploaded versions are read from the store.
    """
    if version.from_repo and version.pull_url:
        repo = await db.get(Repo, version.repo_name) if version.repo_name else None
        cred = RepoCredential.model_validate(repo.credential if repo else {})
        logger.debug("Pulling package from origin", version=version.name, url=version.pull_url)
        return await pull_chart(version.pull_url, cred, timeout)
    return await store.get(version_package_key(version.name))


async def load_release_package(
    db: AsyncSession,
    store: ObjectStore,
    release: ApplicationRelease,
    timeout: float = DEFAULT_PULL_TIMEOUT,
) -> bytes:
    """Package for a release: its catalog version's, or the one uploaded with it."""
    if not release.app_version_id:
        return await store.get(release_package_key(release.name))

    version = await db.get(ApplicationVersion, release.app_version_id)
    if version is None:
        raise ObjectNotFoundError(release.app_version_id)
    return await load_version_package(db, store, version, timeout)


async def upload_release_package(store: ObjectStore, release_name: str, data: bytes) -> None:
    """Store a package uploaded directly with a release."""
    await store.put(release_package_key(release_name), data)
    logger.info("Release package uploaded", release=release_name, size_bytes=len(data))
