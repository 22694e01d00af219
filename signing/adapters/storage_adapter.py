"""Artifact store abstraction.

The engine treats stored PDFs, signature images and certificates as opaque
byte blobs addressed by a reference. Implementations must be durable and
reference-stable: the same reference always returns the same bytes.
"""

from __future__ import annotations
from abc import ABC, abstractmethod


class ArtifactStore(ABC):
    """Abstract byte store for document artifacts."""

    @abstractmethod
    def put_artifact(self, data: bytes) -> str:
        """
        Persist bytes.

        Args:
            data: Artifact content

        Returns:
            Reference to pass to :meth:`get_artifact`

        Raises:
            StoreUnavailable: the backend could not be written
        """
        raise NotImplementedError

    @abstractmethod
    def get_artifact(self, ref: str) -> bytes:
        """
        Load bytes previously stored.

        Raises:
            ArtifactNotFound: unknown reference
            StoreUnavailable: the backend could not be read
        """
        raise NotImplementedError

    @abstractmethod
    def exists(self, ref: str) -> bool:
        """Check whether ``ref`` resolves to stored bytes."""
        raise NotImplementedError
