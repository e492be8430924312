"""
Object storage protocol and types for the artifact store.

Defines the ObjectStore Protocol that every backend (and the tiered
failover facade) satisfies, along with shared exceptions.
"""

from typing import Protocol, runtime_checkable

# --- Exceptions ---


class ObjectStoreError(Exception):
    """Base exception for object store operations."""


class ObjectNotFoundError(ObjectStoreError):
    """Raised when a requested object does not exist."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Object not found: {key}")


class ObjectStorePermissionError(ObjectStoreError):
    """Raised when the caller lacks permission for the operation."""


class ObjectTooLargeError(ObjectStoreError):
    """Raised when a payload exceeds what the backend can hold."""

    def __init__(self, key: str, size: int, limit: int) -> None:
        self.key = key
        self.size = size
        self.limit = limit
        super().__init__(f"Object {key} is {size} bytes, backend limit is {limit}")


# --- Protocol ---


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol defining the artifact storage interface.

    Objects are immutable once written and keyed by a caller-chosen id.
    All methods are async. Implementations satisfy this interface
    structurally (duck typing), no inheritance required.
    """

    async def put(self, key: str, data: bytes) -> None:
        """Store an object.

        Idempotent: writing a key that already exists succeeds without
        replacing the stored content.

        Args:
            key: Object key.
            data: Object content.
        """
        ...

    async def get(self, key: str) -> bytes:
        """Retrieve an object's content.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """
        ...

    async def delete(self, keys: list[str]) -> None:
        """Delete objects.

        Idempotent: keys that do not exist are skipped.
        """
        ...

    async def exists(self, key: str) -> bool:
        """Check if an object exists."""
        ...

    async def close(self) -> None:
        """Release any resources held by the backend."""
        ...
