"""Artifact signer abstraction.

Extension point for certificate-based (e.g. PKCS#12) signing of the final
PDF. The default path is visual overlay signing plus the audit certificate,
so the shipped implementation passes bytes through unchanged.
"""
from __future__ import annotations

from abc import ABC, abstractmethod


class ArtifactSigner(ABC):
    """Signs the composed PDF before it is fingerprinted and stored."""

    @abstractmethod
    def sign(self, *, doc_id: str, payload: bytes) -> bytes:
        """Return the signed artifact bytes. Must be deterministic."""
        raise NotImplementedError


class PassthroughSigner(ArtifactSigner):
    def sign(self, *, doc_id: str, payload: bytes) -> bytes:
        return payload
