"""
Store interfaces used by the reconciler.

Implementations must give atomic per-key reads and writes and be safe to call
concurrently for different keys. The PostgreSQL implementation lives in db.py.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from models import ImageRepository, ImageRepositoryStatus, NamespacedName, Secret


class RecordStore(ABC):
    """Read ImageRepository records and write their status."""

    @abstractmethod
    async def get_image_repository(
        self, key: NamespacedName
    ) -> Optional[ImageRepository]:
        """Return the record, or None if it does not exist."""
        pass

    @abstractmethod
    async def update_image_repository_status(
        self, key: NamespacedName, status: ImageRepositoryStatus
    ) -> None:
        """Replace the record's status block."""
        pass

    @abstractmethod
    async def list_image_repository_keys(self) -> List[NamespacedName]:
        """Keys of every record, for periodic resync."""
        pass


class SecretStore(ABC):
    """Look up secrets by namespace and name."""

    @abstractmethod
    async def get_secret(self, namespace: str, name: str) -> Optional[Secret]:
        pass


class TagStore(ABC):
    """Tags last seen for each canonical repository name."""

    @abstractmethod
    async def set_tags(self, canonical_name: str, tags: List[str]) -> None:
        pass

    @abstractmethod
    async def get_tags(self, canonical_name: str) -> List[str]:
        """Stored tags; empty if the repository is unknown."""
        pass
