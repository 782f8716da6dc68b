"""Error taxonomy for key management, encryption and search hashing.

Callers outside this package only ever see these classes; library errors
(cryptography, SQLAlchemy, httpx) are translated at the module that hits
them.
"""

from __future__ import annotations


class PrivacyError(Exception):
    """Base class for all encryption-subsystem errors."""


class ConfigurationError(PrivacyError):
    """Trusted secret missing or too weak. Blocks all key derivation."""


class AuthenticationError(PrivacyError):
    """Key request without a valid credential, or for another user's id."""


class EncryptionError(PrivacyError):
    """Every encryption backend failed. The write must be aborted."""


class DecryptionError(PrivacyError):
    """Envelope corrupted, tampered with, or encrypted under another key."""

    def __init__(self, message: str, record_id: str | None = None) -> None:
        super().__init__(message)
        self.record_id = record_id


class InvalidArgumentError(PrivacyError, ValueError):
    """Caller passed an unusable argument (e.g. empty user id)."""


class BackendUnavailableError(PrivacyError):
    """A cipher backend or the remote key service could not be reached."""


class StorageUnavailableError(PrivacyError):
    """The datastore could not be read. Aborts a migration run."""
