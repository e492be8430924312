"""Cluster client resolution for member clusters.

The controllers only consume the ClusterResolver contract: a cluster name
resolves to its connection info, a typed API client and a dynamic client.
StaticClusterResolver serves it from the kubeconfig files listed in
configuration.
"""

import asyncio
import base64
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from kubernetes import client, config, dynamic
from kubernetes.client.rest import ApiException

from appstore.config import ClusterEntry
from appstore.kube.timeouts import request_timeout
from appstore.logging_config import get_logger

logger = get_logger(__name__)

CONNECTION_DIRECT = "direct"
CONNECTION_PROXY = "proxy"

# Where proxy clusters keep the admin kubeconfig used by helm Jobs
ADMIN_KUBECONFIG_NAMESPACE = "kubesphere-system"
ADMIN_KUBECONFIG_SECRET = "kubeconfig-admin"


class ClusterNotFoundError(Exception):
    """Raised when a cluster name does not resolve to a known cluster."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Cluster not found: {name}")


@dataclass(frozen=True)
class ClusterInfo:
    """Connection facts about a member cluster."""

    name: str
    kubeconfig: bytes = b""
    connection_type: str = CONNECTION_DIRECT
    deleting: bool = False


@runtime_checkable
class ClusterResolver(Protocol):
    """Resolves a cluster name to clients for that cluster."""

    async def get(self, cluster: str) -> ClusterInfo:
        """Return connection info. Raises ClusterNotFoundError."""
        ...

    async def get_runtime_client(self, cluster: str) -> client.ApiClient:
        """Return a typed API client for the cluster."""
        ...

    async def get_dynamic_client(
        self, cluster: str, impersonate: str = ""
    ) -> dynamic.DynamicClient:
        """Return a discovery-backed dynamic client, optionally impersonating a user."""
        ...


class StaticClusterResolver:
    """ClusterResolver over a fixed list of clusters from configuration."""

    def __init__(self, clusters: list[ClusterEntry]) -> None:
        self._entries = {c.name: c for c in clusters}
        self._clients: dict[str, client.ApiClient] = {}
        self._dynamic: dict[tuple[str, str], dynamic.DynamicClient] = {}
        # ApiClients owned by the dynamic clients, closed with them
        self._dynamic_api_clients: list[client.ApiClient] = []

    def _entry(self, cluster: str) -> ClusterEntry:
        entry = self._entries.get(cluster)
        if entry is None:
            raise ClusterNotFoundError(cluster)
        return entry

    async def get(self, cluster: str) -> ClusterInfo:
        entry = self._entry(cluster)
        kubeconfig = b""
        if entry.kubeconfig_path:
            loop = asyncio.get_event_loop()
            kubeconfig = await loop.run_in_executor(None, Path(entry.kubeconfig_path).read_bytes)
        return ClusterInfo(
            name=entry.name,
            kubeconfig=kubeconfig,
            connection_type=entry.connection_type,
        )

    def _configuration(self, entry: ClusterEntry) -> client.Configuration:
        cfg = client.Configuration()
        if entry.kubeconfig_path:
            config.load_kube_config(
                config_file=entry.kubeconfig_path, client_configuration=cfg
            )
        else:
            config.load_incluster_config(client_configuration=cfg)
        return cfg

    async def get_runtime_client(self, cluster: str) -> client.ApiClient:
        entry = self._entry(cluster)
        if cluster not in self._clients:
            cfg = self._configuration(entry)
            self._clients[cluster] = client.ApiClient(cfg)
            logger.info("Cluster client initialized", cluster=cluster)
        return self._clients[cluster]

    async def get_dynamic_client(
        self, cluster: str, impersonate: str = ""
    ) -> dynamic.DynamicClient:
        key = (cluster, impersonate)
        if key not in self._dynamic:
            entry = self._entry(cluster)
            api_client = client.ApiClient(self._configuration(entry))
            self._dynamic_api_clients.append(api_client)
            if impersonate:
                api_client.set_default_header("Impersonate-User", impersonate)
            loop = asyncio.get_event_loop()
            # DynamicClient runs API discovery on construction
            self._dynamic[key] = await loop.run_in_executor(
                None, lambda: dynamic.DynamicClient(api_client)
            )
            logger.debug("Dynamic client initialized", cluster=cluster, impersonate=impersonate)
        return self._dynamic[key]

    def close(self) -> None:
        for api_client in [*self._clients.values(), *self._dynamic_api_clients]:
            api_client.close()
        self._clients.clear()
        self._dynamic.clear()
        self._dynamic_api_clients.clear()


async def get_helm_kubeconfig(cluster: ClusterInfo, api_client: client.ApiClient) -> bytes:
    """Return the kubeconfig a helm Job in the cluster should use.

    Proxy-connected clusters are not reachable with the host's kubeconfig,
    so the Job uses the admin kubeconfig stored inside the member cluster.
    """
    if cluster.connection_type != CONNECTION_PROXY:
        return cluster.kubeconfig

    logger.info("Cluster is proxy-connected, using admin kubeconfig", cluster=cluster.name)
    core_v1 = client.CoreV1Api(api_client)
    loop = asyncio.get_event_loop()
    try:
        secret = await loop.run_in_executor(
            None,
            lambda: core_v1.read_namespaced_secret(
                name=ADMIN_KUBECONFIG_SECRET,
                namespace=ADMIN_KUBECONFIG_NAMESPACE,
                _request_timeout=request_timeout(),
            ),
        )
    except ApiException as e:
        logger.error(
            "Failed to read admin kubeconfig secret", cluster=cluster.name, error=str(e)
        )
        raise

    return base64.b64decode((secret.data or {}).get("config", ""))
