"""Initial catalog models: repos, applications, application_versions, application_releases.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def _text(name: str) -> sa.Column:
    return sa.Column(name, sa.Text(), nullable=False, server_default="")


def upgrade() -> None:
    op.create_table(
        "repos",
        sa.Column("name", sa.String(63), primary_key=True),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column(
            "credential",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _text("description"),
        sa.Column("sync_period", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("workspace", sa.String(63), nullable=False, server_default=""),
        sa.Column("state", sa.String(20), nullable=False, server_default=""),
        sa.Column("last_update_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resource_version", sa.Integer(), nullable=False, server_default="1"),
        _created_at(),
    )

    op.create_table(
        "applications",
        sa.Column("name", sa.String(128), primary_key=True),
        sa.Column("repo_name", sa.String(63), nullable=False, server_default=""),
        sa.Column("app_type", sa.String(20), nullable=False, server_default="helm"),
        sa.Column(
            "category",
            sa.String(63),
            nullable=False,
            server_default="kubesphere-app-uncategorized",
        ),
        sa.Column("workspace", sa.String(63), nullable=False, server_default=""),
        _text("icon"),
        _text("app_home"),
        _text("abstraction"),
        _text("description"),
        sa.Column("display_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("original_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("maintainer", sa.String(255), nullable=False, server_default=""),
        sa.Column(
            "attachments",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("latest_version", sa.String(128), nullable=False, server_default=""),
        sa.Column("state", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("update_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resource_version", sa.Integer(), nullable=False, server_default="1"),
        _created_at(),
    )
    op.create_index("ix_applications_repo_name", "applications", ["repo_name"])

    op.create_table(
        "application_versions",
        sa.Column("name", sa.String(255), primary_key=True),
        sa.Column(
            "app_name",
            sa.String(128),
            sa.ForeignKey("applications.name", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("repo_name", sa.String(63), nullable=False, server_default=""),
        sa.Column("version_name", sa.String(128), nullable=False),
        sa.Column("digest", sa.String(128), nullable=False, server_default=""),
        _text("pull_url"),
        sa.Column("app_type", sa.String(20), nullable=False, server_default="helm"),
        _text("icon"),
        _text("app_home"),
        _text("description"),
        sa.Column(
            "maintainers",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("workspace", sa.String(63), nullable=False, server_default=""),
        sa.Column("from_repo", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("state", sa.String(20), nullable=False, server_default="draft"),
        _text("message"),
        sa.Column("updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resource_version", sa.Integer(), nullable=False, server_default="1"),
        _created_at(),
    )
    op.create_index("ix_application_versions_app_name", "application_versions", ["app_name"])
    op.create_index("ix_application_versions_repo_name", "application_versions", ["repo_name"])

    op.create_table(
        "application_releases",
        sa.Column("name", sa.String(53), primary_key=True),
        sa.Column("app_name", sa.String(128), nullable=False, server_default=""),
        sa.Column("app_version_id", sa.String(255), nullable=False, server_default=""),
        sa.Column("app_type", sa.String(20), nullable=False, server_default="helm"),
        _text("values"),
        sa.Column("cluster", sa.String(63), nullable=False, server_default="host"),
        sa.Column("namespace", sa.String(63), nullable=False, server_default="default"),
        sa.Column("creator", sa.String(255), nullable=False, server_default=""),
        sa.Column(
            "finalizers",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("deletion_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("state", sa.String(20), nullable=False, server_default=""),
        _text("message"),
        sa.Column("spec_hash", sa.String(32), nullable=False, server_default=""),
        sa.Column("install_job_name", sa.String(63), nullable=False, server_default=""),
        sa.Column("uninstall_job_name", sa.String(63), nullable=False, server_default=""),
        sa.Column("timeout_recheck", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resource_version", sa.Integer(), nullable=False, server_default="1"),
        _created_at(),
    )
    op.create_index("ix_application_releases_cluster", "application_releases", ["cluster"])
    op.create_index(
        "ix_application_releases_app_version_id", "application_releases", ["app_version_id"]
    )


def downgrade() -> None:
    op.drop_table("application_releases")
    op.drop_table("application_versions")
    op.drop_table("applications")
    op.drop_table("repos")
