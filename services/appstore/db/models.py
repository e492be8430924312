"""
SQLAlchemy database models for the application catalog and releases.

All models use:
- Natural string primary keys (the object name, DNS-1123 safe)
- An integer resource_version for optimistic concurrency (version_id_col)
- snake_case column names and plural table names
- TIMESTAMPTZ with UTC for all timestamps
"""

import hashlib
import json
from datetime import UTC, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests)
JSONType = sa.JSON().with_variant(JSONB(), "postgresql")

# --- Application types and review states ---

APP_TYPE_HELM = "helm"
APP_TYPE_YAML = "yaml"
APP_TYPE_EDGE = "edge"

REVIEW_DRAFT = "draft"
REVIEW_ACTIVE = "active"
REVIEW_SUSPENDED = "suspended"

UNCATEGORIZED = "kubesphere-app-uncategorized"

# --- Release states ---

STATUS_CREATING = "creating"
STATUS_CREATED = "created"
STATUS_UPGRADING = "upgrading"
STATUS_UPGRADED = "upgraded"
STATUS_TIMEOUT = "timeout"
STATUS_ACTIVE = "active"
STATUS_FAILED = "failed"
STATUS_DEPLOY_FAILED = "deployfailed"
STATUS_DELETING = "deleting"
STATUS_CLUSTER_DELETED = "clusterdeleted"

# --- Repo sync states ---

REPO_CREATED = "created"
REPO_SYNCING = "syncing"
REPO_SUCCESSFUL = "successful"
REPO_MANUAL_TRIGGER = "manual-trigger"

DEFAULT_CLUSTER = "host"
DEFAULT_NAMESPACE = "default"


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
    }


class Repo(Base):
    """A registered chart repository (HTTP index.yaml or OCI registry)."""

    __tablename__ = "repos"

    name: Mapped[str] = mapped_column(String(63), primary_key=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    credential: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    sync_period: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )  # seconds, 0 = never re-sync
    workspace: Mapped[str] = mapped_column(String(63), default="", nullable=False)

    state: Mapped[str] = mapped_column(String(20), default="", nullable=False)
    last_update_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    resource_version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __mapper_args__ = {"version_id_col": resource_version}


class Application(Base):
    """A catalog application, one per origin chart or manifest bundle.

    The name is derived from the origin ({repo}-{shortChartId} for repo
    charts) and never changes once created.
    """

    __tablename__ = "applications"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    repo_name: Mapped[str] = mapped_column(String(63), default="", nullable=False)
    app_type: Mapped[str] = mapped_column(String(20), default=APP_TYPE_HELM, nullable=False)
    category: Mapped[str] = mapped_column(String(63), default=UNCATEGORIZED, nullable=False)
    workspace: Mapped[str] = mapped_column(String(63), default="", nullable=False)

    icon: Mapped[str] = mapped_column(Text, default="", nullable=False)
    app_home: Mapped[str] = mapped_column(Text, default="", nullable=False)
    abstraction: Mapped[str] = mapped_column(Text, default="", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    original_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    maintainer: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    attachments: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    latest_version: Mapped[str] = mapped_column(String(128), default="", nullable=False)

    state: Mapped[str] = mapped_column(String(20), default=REVIEW_DRAFT, nullable=False)
    update_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    resource_version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __mapper_args__ = {"version_id_col": resource_version}

    __table_args__ = (Index("ix_applications_repo_name", "repo_name"),)


class ApplicationVersion(Base):
    """One immutable version of an Application.

    Repo-sourced versions carry a pull_url; uploaded versions keep their
    package in the artifact store under the version name.
    """

    __tablename__ = "application_versions"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    app_name: Mapped[str] = mapped_column(
        String(128), ForeignKey("applications.name", ondelete="CASCADE"), nullable=False
    )
    repo_name: Mapped[str] = mapped_column(String(63), default="", nullable=False)
    version_name: Mapped[str] = mapped_column(String(128), nullable=False)
    digest: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    pull_url: Mapped[str] = mapped_column(Text, default="", nullable=False)
    app_type: Mapped[str] = mapped_column(String(20), default=APP_TYPE_HELM, nullable=False)
    icon: Mapped[str] = mapped_column(Text, default="", nullable=False)
    app_home: Mapped[str] = mapped_column(Text, default="", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    maintainers: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, default=list, nullable=False
    )
    workspace: Mapped[str] = mapped_column(String(63), default="", nullable=False)
    from_repo: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    state: Mapped[str] = mapped_column(String(20), default=REVIEW_DRAFT, nullable=False)
    message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    resource_version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __mapper_args__ = {"version_id_col": resource_version}

    __table_args__ = (
        Index("ix_application_versions_app_name", "app_name"),
        Index("ix_application_versions_repo_name", "repo_name"),
    )


class ApplicationRelease(Base):
    """A deployed instance of one ApplicationVersion in one (cluster, namespace).

    The name doubles as the helm release name in the target namespace.
    Deletion is two-phase: the API sets deletion_requested_at, the release
    controller uninstalls and only then drops its finalizer and the row.
    """

    __tablename__ = "application_releases"

    name: Mapped[str] = mapped_column(String(53), primary_key=True)

    # Spec
    app_name: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    app_version_id: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    app_type: Mapped[str] = mapped_column(String(20), default=APP_TYPE_HELM, nullable=False)
    values: Mapped[str] = mapped_column(Text, default="", nullable=False)
    cluster: Mapped[str] = mapped_column(String(63), default=DEFAULT_CLUSTER, nullable=False)
    namespace: Mapped[str] = mapped_column(
        String(63), default=DEFAULT_NAMESPACE, nullable=False
    )
    creator: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    # Lifecycle bookkeeping
    finalizers: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    deletion_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Status
    state: Mapped[str] = mapped_column(String(20), default="", nullable=False)
    message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    spec_hash: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    install_job_name: Mapped[str] = mapped_column(String(63), default="", nullable=False)
    uninstall_job_name: Mapped[str] = mapped_column(String(63), default="", nullable=False)
    timeout_recheck: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    resource_version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __mapper_args__ = {"version_id_col": resource_version}

    __table_args__ = (
        Index("ix_application_releases_cluster", "cluster"),
        Index("ix_application_releases_app_version_id", "app_version_id"),
    )

    def spec_dict(self) -> dict[str, str]:
        return {
            "appID": self.app_name,
            "appVersionID": self.app_version_id,
            "values": self.values,
            "appType": self.app_type,
        }

    def hash_spec(self) -> str:
        """md5 of the canonical JSON encoding of the desired spec."""
        spec_json = json.dumps(self.spec_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.md5(spec_json.encode()).hexdigest()  # noqa: S324

    @property
    def is_deleting(self) -> bool:
        return self.deletion_requested_at is not None
