# src/ourdm_sync/services/crypto.py
"""Symmetric encryption applied where content crosses to and from the relay."""

from __future__ import annotations

import base64
import binascii
import logging
import secrets
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ourdm_sync.core.settings import Settings, settings as default_settings
from ourdm_sync.services.errors import DecryptionError, EncryptionError

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from ourdm_sync.repositories.setting_repo import MetadataBackend

logger = logging.getLogger(__name__)

KEY_LENGTH_BYTES = 32
IV_LENGTH_BYTES = 12
ENCRYPTION_KEY_SETTING = "encryption_key"
# Previous key value preserved when it could not be decoded.
UNREADABLE_KEY_SETTING = "encryption_key.unreadable"


def decode_key(encoded: str) -> bytes:
    """Decode a URL-safe base64 key, accepting omitted padding."""
    cleaned = encoded.strip()
    padding = "=" * (-len(cleaned) % 4)
    try:
        key = base64.urlsafe_b64decode(cleaned + padding)
    except (binascii.Error, ValueError) as err:
        raise ValueError(f"Invalid base64 key encoding: {err}") from err
    if len(key) != KEY_LENGTH_BYTES:
        raise ValueError("AES-256 keys must be 32 bytes")
    return key


def encode_key(key: bytes) -> str:
    """Encode a raw key as unpadded URL-safe base64."""
    return base64.urlsafe_b64encode(key).decode().rstrip("=")


class EncryptionBoundary:
    """AES-256-GCM seal/open pair for relay-bound content.

    The local store always keeps plaintext, so this runs exactly once per
    crossing: on the way out in `seal`, on the way in in `open`.
    """

    def __init__(self, key: bytes | None = None) -> None:
        if key is not None and len(key) != KEY_LENGTH_BYTES:
            raise ValueError("AES-256 keys must be 32 bytes")
        self._key = key
        self._aead = AESGCM(key) if key is not None else None

    @property
    def has_key(self) -> bool:
        return self._aead is not None

    @staticmethod
    def generate_key() -> bytes:
        """Return a fresh random 256-bit key."""
        return AESGCM.generate_key(bit_length=KEY_LENGTH_BYTES * 8)

    def export_key(self) -> str:
        """Return the loaded key for backup.

        Raises:
            EncryptionError: If no key is loaded.
        """
        if self._key is None:
            raise EncryptionError("No encryption key loaded")
        return encode_key(self._key)

    def seal(self, plaintext: str) -> tuple[str, str]:
        """Encrypt plaintext content.

        Returns:
            Tuple of (ciphertext_base64, iv_base64)

        Raises:
            EncryptionError: If no key is loaded.
        """
        if self._aead is None:
            raise EncryptionError("No encryption key loaded")
        iv = secrets.token_bytes(IV_LENGTH_BYTES)
        ciphertext = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return base64.b64encode(ciphertext).decode(), base64.b64encode(iv).decode()

    def open(self, ciphertext: str, iv: str) -> str:
        """Decrypt content sealed by `seal`.

        Raises:
            DecryptionError: If the key is missing or the payload is corrupt.
        """
        if self._aead is None:
            raise DecryptionError("No encryption key loaded")
        try:
            raw = base64.b64decode(ciphertext, validate=True)
            nonce = base64.b64decode(iv, validate=True)
        except (binascii.Error, ValueError, TypeError) as err:
            raise DecryptionError(f"Malformed payload encoding: {err}") from err
        if len(nonce) != IV_LENGTH_BYTES:
            raise DecryptionError("Invalid IV length")
        try:
            plaintext = self._aead.decrypt(nonce, raw, None)
        except InvalidTag as err:
            raise DecryptionError("Authentication tag mismatch") from err
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as err:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from err


def load_boundary(
    backend: MetadataBackend,
    config: Settings | None = None,
    *,
    create: bool = True,
) -> EncryptionBoundary:
    """Return a boundary keyed from settings, the device store, or a new key.

    A configured key wins. Otherwise the key persisted in the device store is
    used, and when none exists one is generated and persisted if `create`.
    """
    config = config or default_settings
    if config.encryption_key:
        return EncryptionBoundary(decode_key(config.encryption_key))

    stored = backend.get(ENCRYPTION_KEY_SETTING)
    if stored:
        try:
            return EncryptionBoundary(decode_key(stored))
        except ValueError:
            backend.set(UNREADABLE_KEY_SETTING, stored)
            logger.error(
                "Stored encryption key is unreadable; kept under %r, generating a new one",
                UNREADABLE_KEY_SETTING,
                exc_info=True,
            )

    if not create:
        return EncryptionBoundary()

    key = EncryptionBoundary.generate_key()
    backend.set(ENCRYPTION_KEY_SETTING, encode_key(key))
    logger.info("Generated new device encryption key")
    return EncryptionBoundary(key)


def import_key(backend: MetadataBackend, encoded: str) -> EncryptionBoundary:
    """Validate and persist a key restored from backup."""
    key = decode_key(encoded)
    backend.set(ENCRYPTION_KEY_SETTING, encode_key(key))
    return EncryptionBoundary(key)
