"""Error taxonomy for the data lifecycle core.

Callers can catch ``ChitChatDataError`` to handle every failure raised here,
or the specific subclasses to tell a retryable input problem apart from a
store that must not be served.
"""

from __future__ import annotations

from dataclasses import dataclass


class ChitChatDataError(Exception):
    """Base class for all data lifecycle errors."""


class ValidationError(ChitChatDataError):
    """Input rejected before any destructive action (bad passphrase, malformed envelope)."""


class AuthenticationError(ChitChatDataError):
    """AEAD tag mismatch. Deliberately does not say whether the passphrase or the data is wrong."""

    def __init__(self, message: str = "wrong passphrase or corrupted backup"):
        super().__init__(message)


class FormatError(ChitChatDataError):
    """Backup decrypted correctly but does not hold a SQLite database."""


class FilesystemError(ChitChatDataError):
    """Missing file, permission problem or a storage path escaping its root."""


class FatalStartupError(ChitChatDataError):
    """Schema could not be brought to a known state. The process must not serve traffic."""


class StoreBusyError(ChitChatDataError):
    """The store could not be checkpointed because another connection holds it."""


class MaintenanceBusyError(ChitChatDataError):
    """Another administrative operation already holds the maintenance lock."""


@dataclass(frozen=True)
class CleanupNote:
    """A best-effort side effect that did not happen (stale sidecar, orphan file).

    Logged and returned to the caller, never raised.
    """

    path: str
    error: str
