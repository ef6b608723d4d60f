from __future__ import annotations

import base64
import binascii
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

KEY_BYTES = 32
SALT_BYTES = 16
NONCE_BYTES = 12
TAG_BYTES = 16

# scrypt cost parameters (N, r, p). Changing them breaks existing backups.
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode()


def b64d(data: str) -> bytes:
    """Strict standard base64 decode; raises ValueError on anything else."""
    if not isinstance(data, str):
        raise ValueError("expected base64 text")
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError("invalid base64") from exc


def random_bytes(n: int) -> bytes:
    return os.urandom(n)


def derive_key_scrypt(passphrase: str, salt: bytes) -> bytes:
    """Derive a 32-byte key from a passphrase with scrypt."""
    kdf = Scrypt(salt=salt, length=KEY_BYTES, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(passphrase.encode("utf-8"))


def seal(key: bytes, nonce: bytes, plaintext: bytes, *, aad: bytes | None = None) -> tuple[bytes, bytes]:
    """AES-256-GCM encrypt. Returns (ciphertext, tag)."""
    if len(key) != KEY_BYTES:
        raise ValueError("key must be 32 bytes")
    sealed = AESGCM(key).encrypt(nonce, plaintext, aad)
    return sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]


def open_sealed(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes, *, aad: bytes | None = None) -> bytes:
    """AES-256-GCM decrypt and verify. Raises InvalidTag on any mismatch."""
    if len(key) != KEY_BYTES:
        raise ValueError("key must be 32 bytes")
    return AESGCM(key).decrypt(nonce, ciphertext + tag, aad)

