"""Encryption at rest for stored CardDAV passwords.

Ciphertext tokens have the form ``iv_hex:tag_hex:ciphertext_hex`` produced by
AES-256-GCM with a 16-byte random IV and a key derived as SHA-256 of the
configured secret.  The sync path never handles plaintext passwords except
when building a transport client.
"""

from __future__ import annotations

import hashlib
import logging
import os
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cardsync.errors import SecretDecryptionError

logger = logging.getLogger(__name__)

_IV_LENGTH = 16
_TAG_LENGTH = 16


class SecretStore(Protocol):
    """Symmetric encrypt/decrypt contract for stored credentials."""

    def encrypt(self, plaintext: str) -> str:
        """Return an opaque token for ``plaintext``."""
        ...

    def decrypt(self, token: str) -> str:
        """Return the plaintext behind ``token``."""
        ...


class AesGcmSecretStore:
    """AES-256-GCM secret store keyed from an application secret."""

    def __init__(self, secret: str) -> None:
        if not secret or not secret.strip():
            raise ValueError("Encryption secret must be a non-empty string")
        self._aead = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    def __repr__(self) -> str:
        return "AesGcmSecretStore(secret=<redacted>)"

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(_IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        parts = token.split(":")
        if len(parts) != 3:
            raise SecretDecryptionError("Invalid encrypted credential format")
        try:
            iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as exc:
            raise SecretDecryptionError("Invalid encrypted credential encoding") from exc
        if len(iv) != _IV_LENGTH or len(tag) != _TAG_LENGTH:
            raise SecretDecryptionError("Invalid encrypted credential format")
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise SecretDecryptionError("Stored credential could not be decrypted") from exc
        return plaintext.decode("utf-8")
