"""
Registry client interface consumed by the migration core.

Implementations own their retry policy: every method either succeeds or raises
a ``RegistryError`` once retries are exhausted.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional


class MultiArch(Enum):
    """Which images of a multi-platform index to copy."""

    NONE = None  # single-architecture copy, the tool's default
    ALL = "all"


def image_url(host: str, repository: str, tag: Optional[str] = None) -> str:
    """Build a skopeo transport reference, e.g. ``docker://host/org/image:tag``."""
    return f"docker://{host}/{repository}{':' + tag if tag else ''}"


class RegistryClient(ABC):
    """Operations the migrator needs from a registry."""

    @abstractmethod
    def list_tags(self, host: str, repository: str) -> List[str]:
        """List all tags of ``host/repository``.

        Raises:
            ManifestNotFoundError: the repository does not exist
            RegistryUnavailableError: anything else
        """

    @abstractmethod
    def inspect_manifest(self, host: str, repository: str, tag: str) -> str:
        """Return the raw manifest document stored at ``host/repository:tag``.

        Raises:
            ManifestNotFoundError: no manifest at that reference
            RateLimitedError: the registry throttled the request
            RegistryUnavailableError: anything else
        """

    @abstractmethod
    def copy_image(
        self,
        src_ref: str,
        dest_ref: str,
        preserve_digests: bool = True,
        multi_arch: MultiArch = MultiArch.NONE,
    ) -> bool:
        """Copy an image between two references. Returns True on success.

        Raises:
            RateLimitedError: the registry throttled the copy
            RegistryError: the copy failed after retries
        """
