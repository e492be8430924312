"""
Chart downloads from HTTP(S) chart repositories and OCI registries.

Repository credentials follow helm's getter options: basic auth, client
certificate, custom CA, and TLS verification that is skipped unless the
repo explicitly asks for it.
"""

import re
import ssl

import httpx
from pydantic import BaseModel

from appstore.logging_config import get_logger

logger = get_logger(__name__)

OCI_SCHEME = "oci://"
OCI_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
HELM_CHART_LAYER_MEDIA_TYPE = "application/vnd.cncf.helm.chart.content.v1.tar+gzip"

DEFAULT_PULL_TIMEOUT = 300.0

_BEARER_PARAM = re.compile(r'(\w+)="([^"]*)"')


class ChartPullError(Exception):
    """Raised when a chart or repo index cannot be downloaded."""


class RepoCredential(BaseModel):
    """Credentials and TLS options for a chart repository."""

    username: str = ""
    password: str = ""
    cert_file: str = ""
    key_file: str = ""
    ca_file: str = ""
    insecure_skip_tls_verify: bool | None = None

    @property
    def skip_tls_verify(self) -> bool:
        # helm's getter only verifies when told to
        return self.insecure_skip_tls_verify is not False

    @property
    def basic_auth(self) -> tuple[str, str] | None:
        if self.username or self.password:
            return (self.username, self.password)
        return None


def is_oci(url: str) -> bool:
    return url.startswith(OCI_SCHEME)


def _verify(cred: RepoCredential) -> ssl.SSLContext | bool:
    if cred.skip_tls_verify and not cred.cert_file:
        return False
    ctx = ssl.create_default_context(cafile=cred.ca_file or None)
    if cred.skip_tls_verify:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    if cred.cert_file:
        ctx.load_cert_chain(cred.cert_file, cred.key_file or None)
    return ctx


def build_client(cred: RepoCredential, timeout: float = DEFAULT_PULL_TIMEOUT) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        verify=_verify(cred),
        auth=cred.basic_auth,
        follow_redirects=True,
        timeout=timeout,
    )


async def http_get(url: str, cred: RepoCredential, timeout: float = DEFAULT_PULL_TIMEOUT) -> bytes:
    """GET a URL with repo credentials. Raises ChartPullError."""
    try:
        async with build_client(cred, timeout) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.content
    except httpx.HTTPError as e:
        logger.error("Chart repository request failed", url=url, error=str(e))
        raise ChartPullError(f"failed to fetch {url}: {e}") from e


# --- OCI registries ---


def parse_oci_reference(url: str) -> tuple[str, str, str]:
    """Split oci://registry/repo/path[:tag] into (registry, repository, tag)."""
    ref = url.removeprefix(OCI_SCHEME)
    registry, _, repository = ref.partition("/")
    if not registry or not repository:
        raise ChartPullError(f"invalid OCI reference: {url}")
    tag = ""
    last = repository.rsplit("/", 1)[-1]
    if ":" in last:
        repository, _, tag = repository.rpartition(":")
    return registry, repository, tag


class OCIRegistryClient:
    """Minimal OCI distribution client: tags, manifests and blobs.

    Handles the registry token handshake (401 + WWW-Authenticate: Bearer)
    with the repo's basic credentials.
    """

    def __init__(self, registry: str, cred: RepoCredential, timeout: float = DEFAULT_PULL_TIMEOUT) -> None:
        self._base = f"https://{registry}/v2"
        self._cred = cred
        self._client = httpx.AsyncClient(
            verify=_verify(cred), follow_redirects=True, timeout=timeout
        )
        self._token = ""

    async def __aenter__(self) -> "OCIRegistryClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self._client.aclose()

    async def _fetch_token(self, challenge: str) -> str:
        params = dict(_BEARER_PARAM.findall(challenge))
        realm = params.pop("realm", "")
        if not realm:
            raise ChartPullError(f"unsupported registry auth challenge: {challenge}")
        resp = await self._client.get(realm, params=params, auth=self._cred.basic_auth)
        resp.raise_for_status()
        body = resp.json()
        return body.get("token") or body.get("access_token", "")

    async def _request(
        self, method: str, path: str, headers: dict[str, str] | None = None, retry: bool = True
    ) -> httpx.Response:
        sent = dict(headers or {})
        if self._token:
            sent["Authorization"] = f"Bearer {self._token}"
        resp = await self._client.request(method, f"{self._base}{path}", headers=sent)
        if resp.status_code == 401 and retry:
            challenge = resp.headers.get("WWW-Authenticate", "")
            if challenge.lower().startswith("bearer"):
                self._token = await self._fetch_token(challenge)
            elif self._cred.basic_auth:
                self._client.auth = self._cred.basic_auth
            return await self._request(method, path, headers, retry=False)
        resp.raise_for_status()
        return resp

    async def list_tags(self, repository: str) -> list[str]:
        resp = await self._request("GET", f"/{repository}/tags/list")
        return resp.json().get("tags") or []

    async def manifest(self, repository: str, tag: str) -> tuple[dict, str]:
        """Return the image manifest and its content digest."""
        resp = await self._request(
            "GET", f"/{repository}/manifests/{tag}", {"Accept": OCI_MANIFEST_MEDIA_TYPE}
        )
        return resp.json(), resp.headers.get("Docker-Content-Digest", "")

    async def blob(self, repository: str, digest: str) -> bytes:
        resp = await self._request("GET", f"/{repository}/blobs/{digest}")
        return resp.content


async def oci_pull_chart(url: str, cred: RepoCredential, timeout: float = DEFAULT_PULL_TIMEOUT) -> bytes:
    """Download the chart layer of oci://registry/repo:tag."""
    registry, repository, tag = parse_oci_reference(url)
    if not tag:
        raise ChartPullError(f"OCI reference without tag: {url}")
    try:
        async with OCIRegistryClient(registry, cred, timeout) as oci:
            manifest, _ = await oci.manifest(repository, tag)
            layer = next(
                (
                    layer
                    for layer in manifest.get("layers") or []
                    if layer.get("mediaType") == HELM_CHART_LAYER_MEDIA_TYPE
                ),
                None,
            )
            if layer is None:
                raise ChartPullError(f"{url} is not a helm chart artifact")
            return await oci.blob(repository, layer["digest"])
    except httpx.HTTPError as e:
        logger.error("OCI chart pull failed", url=url, error=str(e))
        raise ChartPullError(f"failed to pull {url}: {e}") from e


async def pull_chart(url: str, cred: RepoCredential, timeout: float = DEFAULT_PULL_TIMEOUT) -> bytes:
    """Download a chart package from its pull URL."""
    if is_oci(url):
        data = await oci_pull_chart(url, cred, timeout)
    else:
        data = await http_get(url, cred, timeout)
    logger.info("Chart pulled", url=url, size_bytes=len(data))
    return data
