"""
Release executor contract.

An executor deploys one release into one namespace of a target cluster.
Helm releases run through short-lived Jobs (HelmJobExecutor); manifest
bundles are applied synchronously through the dynamic client
(ManifestInstaller). The release controller only depends on this protocol.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

# Helm release statuses as written by helm into its storage Secrets
HELM_DEPLOYED = "deployed"
HELM_FAILED = "failed"
HELM_PENDING_INSTALL = "pending-install"
HELM_PENDING_UPGRADE = "pending-upgrade"
HELM_PENDING_ROLLBACK = "pending-rollback"
HELM_UNINSTALLING = "uninstalling"
HELM_SUPERSEDED = "superseded"
HELM_UNINSTALLED = "uninstalled"
HELM_UNKNOWN = "unknown"


class ExecutorError(Exception):
    """Base exception for executor operations."""


class ReleaseNotFoundError(ExecutorError):
    """Raised when the release has not been installed (yet) in the target namespace."""

    def __init__(self, name: str, namespace: str = "") -> None:
        self.name = name
        self.namespace = namespace
        super().__init__(f"release: not found ({namespace}/{name})")


class ReleaseExistsError(ExecutorError):
    """Raised when installing over a release that exists but is not deployed."""

    def __init__(self, name: str, status: str) -> None:
        self.name = name
        self.status = status
        super().__init__(f"release exists: {name} is {status}")


class ReleaseStateError(ExecutorError):
    """Raised when the release is in a state that does not permit the operation."""


@dataclass
class ReleaseInfo:
    """Observed state of a deployed release."""

    name: str
    namespace: str
    version: int = 0
    status: str = HELM_UNKNOWN
    description: str = ""
    manifest: str = ""
    hooks: list[str] = field(default_factory=list)
    # Decoded helm release record, kept so it can be written back
    raw: dict[str, Any] = field(default_factory=dict, repr=False)
    secret_name: str = ""


@runtime_checkable
class ReleaseExecutor(Protocol):
    """Installs, upgrades and removes one release in a target cluster."""

    async def get(self, release_name: str) -> ReleaseInfo:
        """Return the release's current state. Raises ReleaseNotFoundError."""
        ...

    async def install(self, release_name: str, package: bytes, values: bytes) -> str:
        """Start an install. Returns the job name, or "" when no job was needed."""
        ...

    async def upgrade(self, release_name: str, package: bytes, values: bytes) -> str:
        """Start an upgrade of a deployed release. Returns the job name."""
        ...

    async def uninstall(self, release_name: str) -> str:
        """Start an uninstall. Returns the job name, or "" when already gone."""
        ...

    async def wait_for_ready(self, release_name: str, timeout: float) -> bool:
        """Report whether every resource of the release is ready."""
        ...

    async def mark_deployed(self, release: ReleaseInfo) -> None:
        """Record a release that turned ready after a timeout as deployed."""
        ...
