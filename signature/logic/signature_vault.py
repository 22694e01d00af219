# signature/logic/signature_vault.py
"""
Encrypted storage for drawn signature and initial images.

Images are validated with Pillow, encrypted with Fernet and written to the
artifact store. The key ring is read from the key file: the first line is
the current key (used to encrypt), further lines are legacy keys that are
only used to decrypt.
"""
from __future__ import annotations

import logging
import os
from io import BytesIO
from pathlib import Path
from typing import List, Protocol

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

ALLOWED_FORMATS = frozenset({"PNG", "JPEG"})
MAX_IMAGE_BYTES = 5 * 1024 * 1024
MAX_IMAGE_SIDE = 4000


class InvalidSignatureImage(ValueError):
    pass


class BlobStore(Protocol):
    def put_artifact(self, data: bytes) -> str: ...

    def get_artifact(self, ref: str) -> bytes: ...


def load_keyring(key_file: Path) -> List[bytes]:
    """Read the key ring, creating a fresh key file on first use."""
    key_file = Path(key_file)
    if not key_file.exists():
        key_file.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(key + b"\n")
        logger.info("Generated signature key file %s", key_file)
        return [key]
    keys = [line.strip() for line in key_file.read_bytes().splitlines() if line.strip()]
    if not keys:
        raise ValueError(f"Key file {key_file} is empty")
    return keys


def validate_image(data: bytes) -> None:
    if len(data) > MAX_IMAGE_BYTES:
        raise InvalidSignatureImage(f"Image larger than {MAX_IMAGE_BYTES} bytes")
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
            width, height = img.size
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as ex:
        raise InvalidSignatureImage(f"Not a readable image: {ex}") from ex
    if fmt not in ALLOWED_FORMATS:
        raise InvalidSignatureImage(f"Image format {fmt} not allowed (PNG or JPEG)")
    if not (0 < width <= MAX_IMAGE_SIDE and 0 < height <= MAX_IMAGE_SIDE):
        raise InvalidSignatureImage(f"Image size {width}x{height} out of bounds")


class SignatureVault:
    def __init__(self, store: BlobStore, keys: List[bytes]) -> None:
        if not keys:
            raise ValueError("At least one Fernet key is required")
        self._store = store
        self._fernet = MultiFernet([Fernet(k) for k in keys])

    def store_image(self, data: bytes) -> str:
        """Validate, encrypt and store; returns the artifact reference."""
        validate_image(data)
        return self._store.put_artifact(self._fernet.encrypt(data))

    def load_image(self, ref: str) -> bytes:
        token = self._store.get_artifact(ref)
        try:
            return self._fernet.decrypt(token)
        except InvalidToken:
            logger.error("Signature image %s cannot be decrypted with the configured keys", ref)
            raise
