"""Helpers for encrypting and decrypting stored credentials at rest.

Ciphertexts use the ``salt:iv:tag:data`` layout (each part base64) produced by
AES-256-GCM with a scrypt-derived key, so rows written before the move to
Python stay readable.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

__all__ = [
    "SecretError",
    "encrypt",
    "decrypt",
    "is_encrypted",
    "decrypt_or_passthrough",
]

log = logging.getLogger("shield.secrets")

_SALT_BYTES = 16
_IV_BYTES = 12
_TAG_BYTES = 16
_KEY_BYTES = 32


class SecretError(ValueError):
    """Raised when a value cannot be encrypted or decrypted."""


def _derive_key(password: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=_KEY_BYTES, n=2**14, r=8, p=1)
    return kdf.derive(password.encode("utf-8"))


def encrypt(plaintext: Optional[str], encryption_key: str) -> Optional[str]:
    if not plaintext:
        return plaintext
    if not encryption_key:
        raise SecretError("Encryption key is required")

    salt = os.urandom(_SALT_BYTES)
    iv = os.urandom(_IV_BYTES)
    sealed = AESGCM(_derive_key(encryption_key, salt)).encrypt(iv, plaintext.encode("utf-8"), None)
    data, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
    parts = (salt, iv, tag, data)
    return ":".join(base64.b64encode(part).decode("ascii") for part in parts)


def is_encrypted(value: Optional[str]) -> bool:
    if not value:
        return False
    return len(value.split(":")) == 4


def decrypt(ciphertext: Optional[str], encryption_key: str) -> Optional[str]:
    if not ciphertext:
        return ciphertext
    if not encryption_key:
        raise SecretError("Encryption key is required")
    if not is_encrypted(ciphertext):
        raise SecretError("Value is not in the encrypted format")

    try:
        salt, iv, tag, data = (base64.b64decode(part, validate=True) for part in ciphertext.split(":"))
    except (binascii.Error, ValueError) as exc:
        raise SecretError("Encrypted value is not valid base64") from exc

    try:
        plain = AESGCM(_derive_key(encryption_key, salt)).decrypt(iv, data + tag, None)
    except (InvalidTag, ValueError) as exc:
        raise SecretError("Unable to decrypt secret; invalid key or corrupted data") from exc
    return plain.decode("utf-8")


def decrypt_or_passthrough(
    value: Optional[str], encryption_key: Optional[str], *, field: str = "secret"
) -> Optional[str]:
    """Decrypt ``value`` when possible, otherwise return it unchanged.

    Values stored before encryption was introduced are plaintext; a failed
    decrypt is logged and the stored value is used as-is.
    """

    if not value:
        return value
    if not encryption_key:
        if is_encrypted(value):
            log.warning("encrypted %s found but ENCRYPTION_KEY is unset; using stored value", field)
        return value
    if not is_encrypted(value):
        log.warning("stored %s is not encrypted; using plaintext value", field)
        return value
    try:
        return decrypt(value, encryption_key)
    except SecretError as exc:
        log.warning("decrypt failed for %s; using stored value • reason=%s", field, exc)
        return value
