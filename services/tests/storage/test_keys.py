"""
Tests for storage key helpers.
"""

from appstore.storage.keys import attachment_key, release_package_key, version_package_key


class TestKeyHelpers:
    def test_version_package_key(self) -> None:
        assert version_package_key("bitnami-nginx-1.0.0") == "bitnami-nginx-1.0.0"

    def test_release_package_key(self) -> None:
        assert release_package_key("my-release") == "my-release"

    def test_attachment_key(self) -> None:
        key = attachment_key("att-")
        assert key.startswith("att-")
        assert len(key) == len("att-") + 5
        assert key[4:].isalnum()
        assert key[4:] == key[4:].lower()

    def test_attachment_keys_differ(self) -> None:
        assert len({attachment_key("att-") for _ in range(20)}) > 1
