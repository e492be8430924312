"""
Controller manager entry point.

Runs the release and repo controllers in one process until SIGTERM or
SIGINT, then drains the workers and closes database, storage and cluster
clients.
"""

import asyncio
import signal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appstore.clusters import StaticClusterResolver
from appstore.config import Settings, settings
from appstore.controllers.release import ClusterWatch, ReleaseReconciler, list_release_names
from appstore.controllers.repo import RepoReconciler, list_repo_names
from appstore.controllers.workqueue import Controller
from appstore.db.models import DEFAULT_CLUSTER, Application, ApplicationRelease, Repo
from appstore.db.session import close_db, get_db_session, init_db
from appstore.kube.timeouts import configure_request_timeout
from appstore.logging_config import configure_logging, get_logger
from appstore.storage import close_storage, get_storage, init_storage
from appstore.storage.protocol import ObjectStore

logger = get_logger(__name__)

_shutdown = asyncio.Event()


async def catalog_summary() -> dict[str, int]:
    """Row counts per catalog table, logged at startup."""
    counts = {}
    async with get_db_session() as db:
        for label, model in (("repos", Repo), ("applications", Application), ("releases", ApplicationRelease)):
            counts[label] = (await db.execute(select(func.count()).select_from(model))).scalar_one()
    return counts


def build_controllers(
    cfg: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    clusters: StaticClusterResolver,
    store: ObjectStore,
) -> list[Controller]:
    releases = ReleaseReconciler(session_factory, clusters, store, cfg.helm_executor)
    repos = RepoReconciler(
        session_factory,
        store,
        http_timeout=float(cfg.helm_executor.pull_timeout_seconds),
    )
    return [
        Controller(
            "release",
            releases.reconcile,
            lambda: list_release_names(session_factory),
            workers=cfg.controller.release_workers,
            resync_period=cfg.controller.resync_period_seconds,
            max_retry_backoff=cfg.controller.max_retry_backoff_seconds,
        ),
        Controller(
            "repo",
            repos.reconcile,
            lambda: list_repo_names(session_factory),
            workers=cfg.controller.repo_workers,
            resync_period=cfg.controller.resync_period_seconds,
            max_retry_backoff=cfg.controller.max_retry_backoff_seconds,
        ),
    ]


def build_cluster_watch(
    cfg: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    clusters: StaticClusterResolver,
    controllers: list[Controller],
) -> ClusterWatch:
    """Watch that feeds releases of removed clusters to the release controller."""
    release_controller = next(c for c in controllers if c.name == "release")
    return ClusterWatch(
        session_factory,
        clusters,
        release_controller.queue.add,
        period=cfg.controller.cluster_check_period_seconds,
    )


async def run(cfg: Settings) -> None:
    pool_size = cfg.controller.release_workers + cfg.controller.repo_workers + 2
    session_factory = await init_db(str(cfg.database_url), echo=cfg.debug, pool_size=pool_size)
    logger.info("Catalog loaded", **await catalog_summary())
    configure_request_timeout(cfg.controller.kube_request_timeout_seconds)
    clusters = StaticClusterResolver(cfg.clusters)
    host_client = await clusters.get_runtime_client(DEFAULT_CLUSTER)
    await init_storage(cfg.storage, host_client)

    controllers = build_controllers(cfg, session_factory, clusters, get_storage())
    watch = build_cluster_watch(cfg, session_factory, clusters, controllers)
    tasks = [asyncio.create_task(c.run()) for c in controllers]
    tasks.append(asyncio.create_task(watch.run(_shutdown)))
    try:
        await _shutdown.wait()
        logger.info("Shutdown signal received, draining controllers...")
    finally:
        _shutdown.set()
        for c in controllers:
            c.shutdown()
        await asyncio.gather(*tasks, return_exceptions=True)
        await close_storage()
        clusters.close()
        await close_db()


def _handle_signals() -> None:
    """Register signal handlers for graceful shutdown."""
    loop = asyncio.get_event_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _shutdown.set())


def main() -> None:
    """Main entry point for the controller manager."""
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    logger.info("Starting appstore controller manager", clusters=[c.name for c in settings.clusters])

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    _handle_signals()

    try:
        loop.run_until_complete(run(settings))
    except KeyboardInterrupt:
        _shutdown.set()
    finally:
        loop.close()
        logger.info("Controller manager stopped")


if __name__ == "__main__":
    main()
