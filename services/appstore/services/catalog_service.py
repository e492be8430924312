"""Application catalog: create/update/delete of applications and their versions."""

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from appstore.db.models import (
    APP_TYPE_HELM,
    REVIEW_ACTIVE,
    REVIEW_DRAFT,
    REVIEW_SUSPENDED,
    UNCATEGORIZED,
    Application,
    ApplicationVersion,
    utc_now,
)
from appstore.helm.index import parse_semver
from appstore.logging_config import get_logger
from appstore.storage.keys import version_package_key
from appstore.storage.protocol import ObjectStore, ObjectStoreError

logger = get_logger(__name__)

SHORT_NAME_MAX = 14
SHORT_NAME_HASH_LEN = 10
ABSOLUTE_URL_PREFIXES = ("https://", "http://", "s3://", "oci://")

_DNS1123_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_INVALID_VERSION_CHARS = re.compile(r"[^a-z0-9-.]")

# action -> (states it applies to, resulting state)
APP_ACTIONS: dict[str, tuple[set[str], str]] = {
    "activate": ({REVIEW_DRAFT, REVIEW_SUSPENDED}, REVIEW_ACTIVE),
    "suspend": ({REVIEW_ACTIVE}, REVIEW_SUSPENDED),
    "draft": ({REVIEW_ACTIVE, REVIEW_SUSPENDED}, REVIEW_DRAFT),
}


class InvalidActionError(ValueError):
    """Raised for an unknown action or one not allowed in the current state."""


def is_dns1123_subdomain(value: str) -> bool:
    return len(value) <= 253 and bool(_DNS1123_SUBDOMAIN.match(value))


def short_name(chart_name: str) -> str:
    """Stable DNS-safe id for a chart name.

    Short valid names are used as-is; anything else becomes the first ten
    hex chars of its md5.
    """
    name = chart_name.lower()
    if len(name) <= SHORT_NAME_MAX and is_dns1123_subdomain(name):
        return name
    return hashlib.md5(name.encode()).hexdigest()[:SHORT_NAME_HASH_LEN]  # noqa: S324


def format_version(version: str) -> str:
    """Make a version string usable inside object names."""
    if is_dns1123_subdomain(version):
        return version
    logger.warning("Version is not DNS-safe, replacing invalid characters", version=version)
    return _INVALID_VERSION_CHARS.sub("-", version)


def resolve_pull_url(repo_url: str, url: str) -> str:
    """Resolve an index URL against the repo URL unless it is already absolute."""
    if url.startswith(ABSOLUTE_URL_PREFIXES):
        return url
    return f"{repo_url.rstrip('/')}/{url}"


def app_id(repo_name: str, chart_name: str) -> str:
    return f"{repo_name}-{short_name(chart_name)}"


def version_id(app_name: str, version: str) -> str:
    return f"{app_name}-{format_version(version)}"


@dataclass
class AppRequest:
    """Desired state of one application version, from a repo index or an upload."""

    app_name: str
    version_name: str
    repo_name: str = ""
    original_name: str = ""
    alias_name: str = ""
    app_type: str = APP_TYPE_HELM
    app_home: str = ""
    icon: str = ""
    digest: str = ""
    description: str = ""
    abstraction: str = ""
    category: str = ""
    workspace: str = ""
    pull_url: str = ""
    package: bytes = b""
    maintainers: list[dict[str, Any]] = field(default_factory=list)
    attachments: list[str] = field(default_factory=list)
    from_repo: bool = False


def _assign(obj: Any, **values: Any) -> bool:
    """Set attributes that differ. Returns True if anything changed."""
    changed = False
    for key, value in values.items():
        if getattr(obj, key) != value:
            setattr(obj, key, value)
            changed = True
    return changed


async def create_or_update_app(
    db: AsyncSession,
    requests: list[AppRequest],
    store: ObjectStore,
) -> Application:
    """Upsert an application from its first request, then every version."""
    if not requests:
        raise ValueError("version request is empty")
    request = requests[0]

    app = await db.get(Application, request.app_name)
    created = app is None
    if app is None:
        app = Application(
            name=request.app_name,
            state=REVIEW_ACTIVE if request.from_repo else REVIEW_DRAFT,
        )
        db.add(app)

    changed = _assign(
        app,
        repo_name=request.repo_name,
        app_type=request.app_type,
        category=request.category or UNCATEGORIZED,
        workspace=request.workspace,
        icon=request.icon,
        app_home=request.app_home,
        abstraction=request.abstraction,
        attachments=list(request.attachments),
        display_name=request.alias_name,
        description=request.description,
        original_name=request.original_name,
        maintainer=request.maintainers[0].get("name", "") if request.maintainers else "",
    )
    if changed or created:
        app.update_time = utc_now()
        await db.flush()
        logger.info("Application created" if created else "Application updated", app=app.name)

    for vrequest in requests:
        await create_or_update_app_version(db, app, vrequest, store)

    await update_latest_app_version(db, app)
    return app


async def create_or_update_app_version(
    db: AsyncSession,
    app: Application,
    request: AppRequest,
    store: ObjectStore,
) -> ApplicationVersion:
    """Upsert one version. Uploaded packages go to the store under the version name."""
    name = version_id(app.name, request.version_name)

    version = await db.get(ApplicationVersion, name)
    created = version is None
    if created:
        version = ApplicationVersion(name=name, app_name=app.name)
        db.add(version)

    changed = _assign(
        version,
        repo_name=request.repo_name,
        version_name=request.version_name,
        digest=request.digest,
        pull_url=request.pull_url,
        app_type=request.app_type,
        icon=request.icon,
        app_home=request.app_home,
        description=request.description,
        maintainers=list(request.maintainers),
        workspace=request.workspace,
        from_repo=request.from_repo,
        state=REVIEW_ACTIVE if request.from_repo else REVIEW_DRAFT,
    )

    if not request.from_repo and (created or changed):
        await store.put(version_package_key(name), request.package)

    if changed:
        version.updated = utc_now()
        await db.flush()
        logger.info("Application version stored", version=name, digest=request.digest)
    return version


async def update_latest_app_version(db: AsyncSession, app: Application) -> str:
    """Record the highest semver among the app's versions.

    Unparsable versions are skipped; the first listed version is the
    fallback.
    """
    result = await db.execute(
        select(ApplicationVersion.version_name)
        .where(ApplicationVersion.app_name == app.name)
        .order_by(ApplicationVersion.name)
    )
    names = list(result.scalars().all())
    if not names:
        return app.latest_version

    latest = names[0]
    latest_parsed = parse_semver(latest)
    for name in names[1:]:
        parsed = parse_semver(name)
        if parsed is None:
            logger.warning("Unparsable version, skipping", app=app.name, version=name)
            continue
        if latest_parsed is None or parsed > latest_parsed:
            latest, latest_parsed = name, parsed

    if app.latest_version != latest:
        app.latest_version = latest
        await db.flush()
    return latest


async def delete_application_version(
    db: AsyncSession, version: ApplicationVersion, store: ObjectStore
) -> None:
    """Delete a version. Its uploaded package is removed on a best-effort basis."""
    await db.delete(version)
    await db.flush()
    logger.info("Application version deleted", version=version.name)

    if version.from_repo:
        return
    try:
        await store.delete([version_package_key(version.name)])
    except ObjectStoreError as e:
        logger.warning("Failed to delete version package", version=version.name, error=str(e))


async def delete_application(db: AsyncSession, app: Application, store: ObjectStore) -> None:
    """Delete an application and all of its versions."""
    result = await db.execute(
        select(ApplicationVersion).where(ApplicationVersion.app_name == app.name)
    )
    for version in result.scalars().all():
        await delete_application_version(db, version, store)
    await db.delete(app)
    await db.flush()
    logger.info("Application deleted", app=app.name)


async def delete_repo_catalog(db: AsyncSession, repo_name: str, store: ObjectStore) -> int:
    """Delete every application that originated from a repo. Returns the count."""
    result = await db.execute(select(Application).where(Application.repo_name == repo_name))
    apps = list(result.scalars().all())
    for app in apps:
        await delete_application(db, app, store)
    return len(apps)


async def set_application_state(db: AsyncSession, name: str, action: str) -> Application:
    """Apply a review action (activate, suspend, draft) to an application."""
    app = await db.get(Application, name)
    if app is None:
        raise LookupError(f"application {name} not found")
    if action not in APP_ACTIONS:
        raise InvalidActionError(f"unknown action: {action}")

    allowed_from, target = APP_ACTIONS[action]
    if app.state not in allowed_from:
        raise InvalidActionError(f"cannot {action} application in state {app.state}")

    app.state = target
    app.update_time = utc_now()
    await db.flush()
    logger.info("Application state changed", app=name, action=action, state=target)
    return app
