"""
Tests for release package resolution.
"""

from unittest.mock import AsyncMock, patch

import pytest

from appstore.db.models import ApplicationRelease, ApplicationVersion, Repo
from appstore.services.package_service import (
    load_release_package,
    load_version_package,
    upload_release_package,
)
from appstore.storage.protocol import ObjectNotFoundError


class TestLoadReleasePackage:
    async def test_uploaded_with_release(self, session_factory, memory_store) -> None:
        await upload_release_package(memory_store, "web", b"tgz")
        release = ApplicationRelease(name="web", app_version_id="")
        async with session_factory() as db:
            assert await load_release_package(db, memory_store, release) == b"tgz"

    async def test_missing_version(self, session_factory, memory_store) -> None:
        release = ApplicationRelease(name="web", app_version_id="bitnami-nginx-1.0.0")
        async with session_factory() as db:
            with pytest.raises(ObjectNotFoundError):
                await load_release_package(db, memory_store, release)

    async def test_uploaded_version_from_store(self, session_factory, memory_store) -> None:
        memory_store.objects["local-app-1.0.0"] = b"stored"
        async with session_factory() as db:
            db.add(
                ApplicationVersion(
                    name="local-app-1.0.0", app_name="local-app", version_name="1.0.0"
                )
            )
            await db.commit()

        release = ApplicationRelease(name="web", app_version_id="local-app-1.0.0")
        async with session_factory() as db:
            assert await load_release_package(db, memory_store, release) == b"stored"


class TestLoadVersionPackage:
    async def test_repo_version_pulled_with_credentials(self, session_factory, memory_store) -> None:
        async with session_factory() as db:
            db.add(
                Repo(
                    name="bitnami",
                    url="https://charts.example.com",
                    credential={"username": "u", "password": "p"},
                )
            )
            await db.commit()

        version = ApplicationVersion(
            name="bitnami-nginx-1.0.0",
            app_name="bitnami-nginx",
            repo_name="bitnami",
            version_name="1.0.0",
            from_repo=True,
            pull_url="https://charts.example.com/nginx-1.0.0.tgz",
        )
        with patch(
            "appstore.services.package_service.pull_chart", new=AsyncMock(return_value=b"pulled")
        ) as pull:
            async with session_factory() as db:
                data = await load_version_package(db, memory_store, version, timeout=5)

        assert data == b"pulled"
        url, cred, timeout = pull.call_args.args
        assert url == "https://charts.example.com/nginx-1.0.0.tgz"
        assert cred.basic_auth == ("u", "p")
        assert timeout == 5
