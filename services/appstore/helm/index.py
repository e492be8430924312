"""
Chart repository indexes.

An HTTP(S) repository publishes index.yaml listing every chart and its
versions; an OCI repository is indexed by listing the tags of the chart
repository the URL points at.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
import semver
import yaml

from appstore.db.models import as_utc
from appstore.helm.pull import (
    DEFAULT_PULL_TIMEOUT,
    ChartPullError,
    OCIRegistryClient,
    RepoCredential,
    http_get,
    is_oci,
    parse_oci_reference,
)
from appstore.logging_config import get_logger

logger = get_logger(__name__)

_FRACTION = re.compile(r"\.(\d{6})\d+")


class RepoIndexError(Exception):
    """Raised when a repository index cannot be fetched or parsed."""


@dataclass
class ChartVersion:
    """One entry of a repository index."""

    name: str
    version: str
    digest: str = ""
    urls: list[str] = field(default_factory=list)
    created: datetime | None = None
    home: str = ""
    icon: str = ""
    description: str = ""
    app_version: str = ""
    maintainers: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChartVersion":
        return cls(
            name=str(data.get("name", "")),
            version=str(data.get("version", "")),
            digest=str(data.get("digest", "")),
            urls=list(data.get("urls") or []),
            created=parse_created(data.get("created")),
            home=data.get("home") or "",
            icon=data.get("icon") or "",
            description=data.get("description") or "",
            app_version=str(data.get("appVersion") or ""),
            maintainers=[
                {k: m.get(k, "") for k in ("name", "email", "url")}
                for m in data.get("maintainers") or []
            ],
        )


@dataclass
class IndexFile:
    entries: dict[str, list[ChartVersion]] = field(default_factory=dict)


def parse_created(value: Any) -> datetime | None:
    """Parse an index `created` timestamp (RFC 3339, possibly with nanoseconds)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = _FRACTION.sub(r".\1", str(value)).replace("Z", "+00:00")
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        logger.warning("Unparsable chart timestamp", created=str(value))
        return None


def parse_semver(version: str) -> semver.Version | None:
    try:
        return semver.Version.parse(version.removeprefix("v"))
    except ValueError:
        return None


def _semver_sort_key(v: ChartVersion) -> tuple[int, Any]:
    parsed = parse_semver(v.version)
    return (1, parsed) if parsed is not None else (0, v.version)


def parse_index(data: bytes | str) -> IndexFile:
    """Parse index.yaml. Entries are sorted newest semver first."""
    try:
        doc = yaml.safe_load(data) or {}
    except yaml.YAMLError as e:
        raise RepoIndexError(f"invalid repository index: {e}") from e
    if not isinstance(doc, dict):
        raise RepoIndexError("invalid repository index: not a mapping")

    index = IndexFile()
    for chart, versions in (doc.get("entries") or {}).items():
        parsed = [ChartVersion.from_dict(v) for v in versions or []]
        parsed.sort(key=_semver_sort_key, reverse=True)
        index.entries[chart] = parsed
    return index


def filter_versions(versions: list[ChartVersion]) -> list[ChartVersion]:
    """Drop duplicate version strings, keeping the most recently created,
    and order the result newest first."""
    by_version: dict[str, ChartVersion] = {}
    for v in versions:
        existing = by_version.get(v.version)
        if existing is None or _created_key(v) > _created_key(existing):
            by_version[v.version] = v
    return sorted(by_version.values(), key=_created_key, reverse=True)


def _created_key(v: ChartVersion) -> float:
    return v.created.timestamp() if v.created else float("-inf")


def index_url(repo_url: str) -> str:
    if repo_url.endswith("/"):
        return f"{repo_url}index.yaml"
    return f"{repo_url}/index.yaml"


async def load_oci_index(
    url: str, cred: RepoCredential, timeout: float = DEFAULT_PULL_TIMEOUT
) -> IndexFile:
    """Index an OCI chart repository: one version per tag."""
    registry, repository, _ = parse_oci_reference(url)
    chart = repository.rsplit("/", 1)[-1]
    base = url.rstrip("/")

    versions = []
    async with OCIRegistryClient(registry, cred, timeout) as oci:
        for tag in await oci.list_tags(repository):
            _, digest = await oci.manifest(repository, tag)
            versions.append(
                ChartVersion(name=chart, version=tag, digest=digest, urls=[f"{base}:{tag}"])
            )
    versions.sort(key=_semver_sort_key, reverse=True)
    return IndexFile(entries={chart: versions} if versions else {})


async def load_repo_index(
    url: str, cred: RepoCredential, timeout: float = DEFAULT_PULL_TIMEOUT
) -> IndexFile:
    """Fetch and parse a repository index. Raises RepoIndexError."""
    try:
        if is_oci(url):
            return await load_oci_index(url, cred, timeout)
        data = await http_get(index_url(url), cred, timeout)
    except (ChartPullError, httpx.HTTPError) as e:
        raise RepoIndexError(str(e)) from e
    return parse_index(data)
