"""Filesystem implementation of ArtifactStore.

Content-addressed: the reference is ``sha256:<hex digest>`` and blobs live
under ``<root>/<aa>/<bb>/<digest>``. Writing identical bytes twice yields the
same reference, so composition retries are idempotent at the store.
"""

from __future__ import annotations
from pathlib import Path
import hashlib
import logging
import os
import tempfile

from signing.adapters.storage_adapter import ArtifactStore
from signing.exceptions.errors import ArtifactNotFound, StoreUnavailable

logger = logging.getLogger(__name__)

REF_PREFIX = "sha256:"
_HEX = frozenset("0123456789abcdef")


def fingerprint(data: bytes) -> str:
    """SHA-256 hex digest used for references and audit fingerprints."""
    return hashlib.sha256(data).hexdigest()


class FilesystemArtifactStore(ArtifactStore):
    """Local filesystem implementation of ArtifactStore."""

    def __init__(self, root_path: str | Path):
        """
        Args:
            root_path: Root directory for artifact storage
        """
        self._root = Path(root_path)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, ref: str) -> Path:
        if not isinstance(ref, str) or not ref.startswith(REF_PREFIX):
            raise ArtifactNotFound(str(ref))
        digest = ref[len(REF_PREFIX):]
        if len(digest) != 64 or not set(digest) <= _HEX:
            raise ArtifactNotFound(ref)
        return self._root / digest[:2] / digest[2:4] / digest

    def put_artifact(self, data: bytes) -> str:
        ref = REF_PREFIX + fingerprint(data)
        dest = self._path_for(ref)
        if dest.is_file():
            return ref
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, dest)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as ex:
            logger.warning("Artifact write failed under %s: %s", self._root, ex)
            raise StoreUnavailable(f"Could not write artifact: {ex}") from ex
        return ref

    def get_artifact(self, ref: str) -> bytes:
        path = self._path_for(ref)
        try:
            return path.read_bytes()
        except FileNotFoundError as ex:
            raise ArtifactNotFound(ref) from ex
        except OSError as ex:
            logger.warning("Artifact read failed for %s: %s", ref, ex)
            raise StoreUnavailable(f"Could not read artifact {ref}: {ex}") from ex

    def exists(self, ref: str) -> bool:
        try:
            return self._path_for(ref).is_file()
        except ArtifactNotFound:
            return False
