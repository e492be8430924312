"""
Key helpers for the artifact store.

Catalog versions reuse their own name as the blob key; attachments get a
short generated id behind a caller-supplied tag.
"""

import secrets

_ALPHABET36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def version_package_key(version_name: str) -> str:
    """Key for an uploaded application version package."""
    return version_name


def release_package_key(release_name: str) -> str:
    """Key for a package uploaded directly with a release (no catalog version)."""
    return release_name


def attachment_key(tag: str) -> str:
    """Key for an application attachment (icon, screenshot, readme)."""
    return tag + "".join(secrets.choice(_ALPHABET36) for _ in range(5))
