"""Encrypted backup envelope (``.ccbk``).

An envelope is a single UTF-8 JSON document::

    {"version": 2, "algorithm": "aes-256-gcm+scrypt+gzip", "createdAt": "...",
     "saltB64": "...", "ivB64": "...", "tagB64": "...", "ciphertextB64": "..."}

The payload is gzip-compressed, then sealed with AES-256-GCM under a key derived
from the passphrase with scrypt. From version 2 on, the header fields are
authenticated as associated data. Version 1 envelopes, written by the older
server, carry no associated data and are still accepted by ``decode``.
Nothing here touches the filesystem.
"""

from __future__ import annotations

import gzip
import json
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone

from cryptography.exceptions import InvalidTag

from chitchat.errors import AuthenticationError, FormatError, ValidationError
from chitchat.services.crypto import (
    NONCE_BYTES,
    SALT_BYTES,
    TAG_BYTES,
    b64d,
    b64e,
    derive_key_scrypt,
    open_sealed,
    random_bytes,
    seal,
)

BACKUP_VERSION = 2
LEGACY_VERSION = 1
SUPPORTED_VERSIONS = (LEGACY_VERSION, BACKUP_VERSION)
BACKUP_ALGORITHM = "aes-256-gcm+scrypt+gzip"
BACKUP_EXTENSION = ".ccbk"
MIN_PASSPHRASE_LENGTH = 12
SQLITE_SIGNATURE = b"SQLite format 3\x00"


@dataclass(frozen=True)
class EnvelopeHeader:
    version: int
    algorithm: str
    created_at: str

    def associated_data(self) -> bytes | None:
        if self.version == LEGACY_VERSION:
            return None
        return json.dumps(
            {"version": self.version, "algorithm": self.algorithm, "createdAt": self.created_at},
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")


def require_passphrase(passphrase: str) -> None:
    if not isinstance(passphrase, str) or len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise ValidationError(f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters")


def format_created_at(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def encode(passphrase: str, raw: bytes, *, created_at: datetime | None = None) -> bytes:
    require_passphrase(passphrase)

    compressed = gzip.compress(raw, compresslevel=9)
    salt = random_bytes(SALT_BYTES)
    nonce = random_bytes(NONCE_BYTES)
    header = EnvelopeHeader(
        version=BACKUP_VERSION,
        algorithm=BACKUP_ALGORITHM,
        created_at=format_created_at(created_at),
    )
    key = derive_key_scrypt(passphrase, salt)
    ciphertext, tag = seal(key, nonce, compressed, aad=header.associated_data())

    envelope = {
        "version": header.version,
        "algorithm": header.algorithm,
        "createdAt": header.created_at,
        "saltB64": b64e(salt),
        "ivB64": b64e(nonce),
        "tagB64": b64e(tag),
        "ciphertextB64": b64e(ciphertext),
    }
    return json.dumps(envelope).encode("utf-8")


def _load_document(payload: bytes) -> dict:
    try:
        doc = json.loads(payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload)
    except (UnicodeDecodeError, ValueError, TypeError, RecursionError) as exc:
        raise ValidationError("Invalid backup payload: not a JSON document") from exc
    if not isinstance(doc, dict):
        raise ValidationError("Invalid backup payload: not a JSON object")
    return doc


def _parse_header(doc: dict) -> EnvelopeHeader:
    version = doc.get("version")
    # bool is an int subclass and 1.0 == 1; neither is a valid version.
    if type(version) is not int or version not in SUPPORTED_VERSIONS:
        raise ValidationError("Invalid backup payload: unsupported version")
    if doc.get("algorithm") != BACKUP_ALGORITHM:
        raise ValidationError("Invalid backup payload: unsupported algorithm")
    created_at = doc.get("createdAt")
    if not isinstance(created_at, str) or not created_at:
        raise ValidationError("Invalid backup payload: missing createdAt")
    return EnvelopeHeader(version=version, algorithm=BACKUP_ALGORITHM, created_at=created_at)


def _binary_field(doc: dict, name: str, *, length: int | None = None) -> bytes:
    value = doc.get(name)
    if not value:
        raise ValidationError(f"Invalid backup payload: missing {name}")
    try:
        decoded = b64d(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid backup payload: {name} is not base64") from exc
    if not decoded or (length is not None and len(decoded) != length):
        raise ValidationError(f"Invalid backup payload: {name} has the wrong length")
    return decoded


def read_envelope_header(payload: bytes) -> EnvelopeHeader:
    """Validate the envelope structure and return its header. Needs no passphrase."""
    doc = _load_document(payload)
    header = _parse_header(doc)
    for name in ("saltB64", "ivB64", "tagB64", "ciphertextB64"):
        _binary_field(doc, name)
    return header


def decode(passphrase: str, payload: bytes) -> bytes:
    require_passphrase(passphrase)

    doc = _load_document(payload)
    header = _parse_header(doc)
    salt = _binary_field(doc, "saltB64")
    nonce = _binary_field(doc, "ivB64", length=NONCE_BYTES)
    tag = _binary_field(doc, "tagB64", length=TAG_BYTES)
    ciphertext = _binary_field(doc, "ciphertextB64")

    key = derive_key_scrypt(passphrase, salt)
    try:
        compressed = open_sealed(key, nonce, ciphertext, tag, aad=header.associated_data())
    except InvalidTag:
        # One message for both causes; the caller must not learn which.
        raise AuthenticationError() from None

    try:
        raw = gzip.decompress(compressed)
    except (OSError, EOFError, zlib.error) as exc:
        raise FormatError("Backup payload is not a compressed database image") from exc
    if raw[: len(SQLITE_SIGNATURE)] != SQLITE_SIGNATURE:
        raise FormatError("Backup did not decode into a valid SQLite database")
    return raw


def suggested_file_name(created_at: str) -> str:
    return f"chitchat-backup-{created_at.replace(':', '-')}{BACKUP_EXTENSION}"
