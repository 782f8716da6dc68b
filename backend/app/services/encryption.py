"""Field encryption service.

Encrypts short user text (collection names, dot labels) under the user's
derived key and returns the blind-index hash alongside, so callers store
both columns in one write.

Two independent backends produce tagged envelopes:

- ``primary``: the datastore's ``encrypt_sensitive_data`` /
  ``decrypt_sensitive_data`` SQL functions (pgcrypto on PostgreSQL,
  Fernet registered per connection on SQLite).
- ``fallback-v1``: AES-256-GCM computed in-process with a fresh 96-bit
  nonce; payload is nonce || ciphertext || tag.

Writes try ``primary`` and fall back to ``fallback-v1`` when it is missing
or fails. Reads dispatch on the envelope tag; payloads are never handed to
the other backend. No path ever stores or returns unauthenticated text.
"""

from __future__ import annotations

import binascii
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from cryptography.exceptions import InvalidTag
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.exceptions import (
    BackendUnavailableError,
    DecryptionError,
    EncryptionError,
    InvalidArgumentError,
)
from app.services.keys import KeyManager, KeyType
from app.services.search_hash import SearchHashEngine
from app.utils.crypto import (
    KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    b64decode,
    b64encode,
)

logger = logging.getLogger(__name__)


class EnvelopeFormat(str, Enum):
    PRIMARY = "primary"
    FALLBACK_V1 = "fallback-v1"


# Prefix written by the first client-side implementation of fallback-v1.
_LEGACY_CLIENT_PREFIX = "client:"


@dataclass(frozen=True, slots=True)
class EncryptedValue:
    """Tagged envelope. ``payload`` is opaque to everything but its backend."""

    format: EnvelopeFormat
    payload: bytes

    def to_storage(self) -> str:
        """Serialize for a ``<field>_encrypted`` column."""
        if not self.payload:
            return ""
        if self.format is EnvelopeFormat.FALLBACK_V1:
            body = b64encode(self.payload)
        else:
            body = self.payload.decode("ascii")
        return f"{self.format.value}:{body}"

    @classmethod
    def from_storage(cls, stored: str | None) -> EncryptedValue:
        """Parse a stored column value.

        Untagged values predate envelope tags and were always written by the
        datastore backend; ``client:`` values are early fallback-v1 output.
        """
        if not stored:
            return cls(EnvelopeFormat.PRIMARY, b"")
        fmt = EnvelopeFormat.PRIMARY
        body = stored
        for prefix, tagged in (
            (EnvelopeFormat.FALLBACK_V1.value + ":", EnvelopeFormat.FALLBACK_V1),
            (_LEGACY_CLIENT_PREFIX, EnvelopeFormat.FALLBACK_V1),
            (EnvelopeFormat.PRIMARY.value + ":", EnvelopeFormat.PRIMARY),
        ):
            if stored.startswith(prefix):
                fmt, body = tagged, stored[len(prefix):]
                break
        # to_storage never writes a tag without a body
        if not body:
            raise DecryptionError("Malformed envelope")
        try:
            if fmt is EnvelopeFormat.FALLBACK_V1:
                return cls(fmt, b64decode(body))
            return cls(fmt, body.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise DecryptionError("Malformed envelope") from exc


@dataclass(frozen=True, slots=True)
class EncryptionResult:
    """What a write persists: the envelope and the salted search hash."""

    envelope: EncryptedValue
    search_hash: str

    @property
    def stored(self) -> str:
        return self.envelope.to_storage()


class CipherBackend(Protocol):
    format: EnvelopeFormat

    def encrypt(self, plaintext: str, key: bytes) -> bytes: ...

    def decrypt(self, payload: bytes, key: bytes) -> str: ...


class DatastoreBackend:
    """Primary backend: encryption runs inside the trusted datastore."""

    format = EnvelopeFormat.PRIMARY

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _call(self, sql: str, params: dict) -> str | None:
        try:
            with self._engine.connect() as conn:
                return conn.execute(text(sql), params).scalar_one()
        except SQLAlchemyError as exc:
            raise BackendUnavailableError(
                f"Datastore cipher call failed: {type(exc).__name__}"
            ) from exc

    def encrypt(self, plaintext: str, key: bytes) -> bytes:
        result = self._call(
            "SELECT encrypt_sensitive_data(:data, :user_key)",
            {"data": plaintext, "user_key": key.hex()},
        )
        if not result:
            raise BackendUnavailableError("Datastore encryption returned no result")
        return result.encode("ascii")

    def decrypt(self, payload: bytes, key: bytes) -> str:
        result = self._call(
            "SELECT decrypt_sensitive_data(:encrypted_data, :user_key)",
            {"encrypted_data": payload.decode("ascii"), "user_key": key.hex()},
        )
        return result or ""


class LocalAeadBackend:
    """Fallback backend: AES-256-GCM in-process, no datastore needed."""

    format = EnvelopeFormat.FALLBACK_V1

    def encrypt(self, plaintext: str, key: bytes) -> bytes:
        if len(key) != KEY_SIZE:
            raise BackendUnavailableError(f"AES-256-GCM needs a {KEY_SIZE}-byte key")
        return aes_gcm_encrypt(key, plaintext.encode("utf-8"))

    def decrypt(self, payload: bytes, key: bytes) -> str:
        if len(payload) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("fallback-v1 payload too short")
        try:
            return aes_gcm_decrypt(key, payload).decode("utf-8")
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError("fallback-v1 authentication failed") from exc


@dataclass
class DecryptOutcome:
    """Result of a bulk decrypt: plaintexts by id plus per-record failures."""

    values: dict[str, str] = field(default_factory=dict)
    failures: dict[str, DecryptionError] = field(default_factory=dict)


class EncryptionEngine:
    """Encrypt/decrypt text fields under per-user keys.

    ``primary`` may be None (untrusted context, no datastore access); every
    write then goes straight to the local fallback.
    """

    PROBE_TEXT = "test-encryption-data"

    def __init__(
        self,
        key_manager: KeyManager,
        primary: CipherBackend | None = None,
        fallback: CipherBackend | None = None,
        hasher: SearchHashEngine | None = None,
    ) -> None:
        self._keys = key_manager
        self._primary = primary
        self._fallback = fallback if fallback is not None else LocalAeadBackend()
        self._hasher = hasher if hasher is not None else SearchHashEngine()
        self._backends: dict[EnvelopeFormat, CipherBackend] = {self._fallback.format: self._fallback}
        if primary is not None:
            self._backends[primary.format] = primary

    @property
    def hasher(self) -> SearchHashEngine:
        return self._hasher

    def encrypt(self, plaintext: str, user_id: str) -> EncryptionResult:
        """Encrypt ``plaintext``; raises EncryptionError if no backend succeeds.

        Key errors (ConfigurationError, AuthenticationError) propagate
        unchanged before any backend runs.
        """
        if not user_id:
            raise InvalidArgumentError("user_id is required for encryption")
        search_hash = self._hasher.search_hash(plaintext, user_id)
        if plaintext == "":
            return EncryptionResult(EncryptedValue(EnvelopeFormat.PRIMARY, b""), search_hash)

        key = self._keys.get_user_key(user_id, KeyType.PRIMARY)

        if self._primary is not None:
            try:
                payload = self._primary.encrypt(plaintext, key)
                return EncryptionResult(EncryptedValue(self._primary.format, payload), search_hash)
            except Exception as exc:
                logger.warning(
                    "Primary encryption failed for user %s (%s); using %s",
                    user_id, type(exc).__name__, self._fallback.format.value,
                )

        try:
            payload = self._fallback.encrypt(plaintext, key)
        except Exception as exc:
            logger.error(
                "All encryption backends failed for user %s (%s)", user_id, type(exc).__name__
            )
            raise EncryptionError(
                "All encryption methods failed - refusing to store data unencrypted"
            ) from exc
        return EncryptionResult(EncryptedValue(self._fallback.format, payload), search_hash)

    def decrypt(
        self, envelope: EncryptedValue | str | None, user_id: str, *, record_id: str | None = None
    ) -> str:
        """Decrypt an envelope or its stored text form.

        Raises DecryptionError on any authentication or format failure.
        """
        if not user_id:
            raise InvalidArgumentError("user_id is required for decryption")
        if not isinstance(envelope, EncryptedValue):
            try:
                envelope = EncryptedValue.from_storage(envelope)
            except DecryptionError as exc:
                raise DecryptionError(str(exc), record_id=record_id) from exc
        if not envelope.payload:
            return ""

        backend = self._backends.get(envelope.format)
        if backend is None:
            raise DecryptionError(
                f"No backend available for {envelope.format.value!r} envelopes",
                record_id=record_id,
            )

        if envelope.format is EnvelopeFormat.FALLBACK_V1:
            key = self._keys.get_user_key(user_id, KeyType.PRIMARY)
            try:
                return backend.decrypt(envelope.payload, key)
            except DecryptionError as exc:
                raise DecryptionError(str(exc), record_id=record_id) from exc

        last_error: Exception | None = None
        for key_type in self._keys.decryption_chain():
            key = self._keys.get_user_key(user_id, key_type)
            try:
                plaintext = backend.decrypt(envelope.payload, key)
            except (BackendUnavailableError, DecryptionError) as exc:
                last_error = exc
                continue
            if key_type is not KeyType.PRIMARY:
                logger.info(
                    "Decrypted record %s for user %s with %s key",
                    record_id or "-", user_id, key_type.value,
                )
            return plaintext
        raise DecryptionError(
            "Decryption failed - data may be corrupted or key is invalid",
            record_id=record_id,
        ) from last_error

    def decrypt_many(
        self, items: Iterable[tuple[str, EncryptedValue | str | None]], user_id: str
    ) -> DecryptOutcome:
        """Decrypt ``(record_id, envelope)`` pairs, collecting per-record failures."""
        outcome = DecryptOutcome()
        for record_id, envelope in items:
            try:
                outcome.values[record_id] = self.decrypt(envelope, user_id, record_id=record_id)
            except DecryptionError as exc:
                logger.error(
                    "Failed to decrypt record %s for user %s: %s", record_id, user_id, exc
                )
                outcome.failures[record_id] = exc
        return outcome

    def self_test(self, user_id: str) -> bool:
        """Round-trip a probe string; False on any failure."""
        try:
            result = self.encrypt(self.PROBE_TEXT, user_id)
            return self.decrypt(result.envelope, user_id) == self.PROBE_TEXT
        except Exception:
            logger.exception("Encryption self-test failed for user %s", user_id)
            return False
