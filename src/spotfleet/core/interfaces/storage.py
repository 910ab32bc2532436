"""Durable blob storage interface for checkpoints and results."""

from abc import ABC, abstractmethod


class BlobStore(ABC):
    """Interface for checkpoint/result objects.

    Implementations: S3BlobStore
    """

    @abstractmethod
    async def get_text(self, key: str) -> str:
        """Fetch object body. A missing object yields "" (not an error)."""
        ...

    @abstractmethod
    async def put_text(self, key: str, body: str) -> None:
        ...

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> list[str]:
        ...
