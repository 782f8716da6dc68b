"""Per-user key derivation.

Keys are derived with domain-separated HMAC-SHA256 from the trusted
``KEY_MATERIAL`` secret and the user id. In the trusted context the
derivation runs locally (``LocalKeyDeriver``); in an untrusted context the
secret is absent and the key is requested from the key issuance endpoint
(``RemoteKeyClient``). ``KeyManager`` fronts either source with a
``KeyCache``.

Three derivation schemes exist, one per historical format:

- ``primary``: current scheme, used for every new encryption.
- ``fallback``: earlier scheme, tried only when decryption fails.
- ``legacy``: keyed with a fixed, public placeholder. Offers no
  confidentiality; read-only and disabled unless ``LEGACY_KEY_ENABLED``.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Protocol

import httpx

from app.exceptions import (
    AuthenticationError,
    BackendUnavailableError,
    ConfigurationError,
    InvalidArgumentError,
)
from app.key_cache import KeyCache
from app.utils.crypto import KEY_SIZE, hmac_sha256_raw

logger = logging.getLogger(__name__)

MIN_KEY_MATERIAL_LENGTH = 32

# Public value baked into very old clients. Kept so their records stay
# readable; never used for encryption.
# TODO: remove together with KeyType.LEGACY once the hash migration report
# shows zero rows decrypting under the legacy key.
LEGACY_PLACEHOLDER_SECRET = "fixed-app-secret-for-hill-chart-encryption-long-enough-secret"


class KeyType(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"
    LEGACY = "legacy"


_CONTEXT_LABELS: dict[KeyType, str] = {
    KeyType.PRIMARY: "primary-key",
    KeyType.FALLBACK: "fallback-key",
    KeyType.LEGACY: "legacy-key",
}


def validate_key_material(secret: str | None) -> str:
    """Return the secret or raise ConfigurationError if missing/too short."""
    if not secret:
        raise ConfigurationError(
            "KEY_MATERIAL is not configured. Set it to a random string of at "
            f"least {MIN_KEY_MATERIAL_LENGTH} characters."
        )
    if len(secret) < MIN_KEY_MATERIAL_LENGTH:
        raise ConfigurationError(
            f"KEY_MATERIAL must be at least {MIN_KEY_MATERIAL_LENGTH} characters long"
        )
    return secret


def derive_user_key(secret: str, user_id: str, key_type: KeyType = KeyType.PRIMARY) -> bytes:
    """HMAC-SHA256(secret, "<type>-key|" + user_id), 32 bytes.

    ``secret`` is ignored for ``KeyType.LEGACY``, which always uses the
    placeholder.
    """
    if not user_id:
        raise InvalidArgumentError("user_id is required for key derivation")
    key_type = KeyType(key_type)
    if key_type is KeyType.LEGACY:
        logger.warning(
            "Deriving LEGACY key for user %s; placeholder secret, read-only compatibility",
            user_id,
        )
        secret = LEGACY_PLACEHOLDER_SECRET
    else:
        secret = validate_key_material(secret)
    message = f"{_CONTEXT_LABELS[key_type]}|{user_id}".encode("utf-8")
    return hmac_sha256_raw(secret.encode("utf-8"), message)[:KEY_SIZE]


class KeySource(Protocol):
    def fetch(self, user_id: str, key_type: KeyType) -> bytes: ...


class LocalKeyDeriver:
    """Trusted-context source: holds the secret and derives in-process."""

    def __init__(self, secret: str | None) -> None:
        self._secret = secret or ""

    def fetch(self, user_id: str, key_type: KeyType) -> bytes:
        if key_type is not KeyType.LEGACY:
            validate_key_material(self._secret)
        return derive_user_key(self._secret, user_id, key_type)


class RemoteKeyClient:
    """Untrusted-context source: asks the key issuance endpoint.

    Transport errors and 5xx replies are retried up to ``max_attempts``
    with exponential backoff. 401/403 are raised at once as
    AuthenticationError and never retried.
    """

    ENDPOINT = "/api/auth/generate-key"

    def __init__(
        self,
        base_url: str,
        credential: str | None,
        *,
        timeout: float = 10.0,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 5.0,
        transport: httpx.BaseTransport | None = None,
        sleep=time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._base_url = base_url.rstrip("/")
        self._credential = credential
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._transport = transport
        self._sleep = sleep

    def _retry_delay(self, attempt: int) -> float:
        """Exponential backoff: min(base * 2^(attempt-1), max_delay)."""
        return min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)

    def _post(self, user_id: str, key_type: KeyType) -> httpx.Response:
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            return client.post(
                f"{self._base_url}{self.ENDPOINT}",
                json={"userId": user_id, "keyType": key_type.value},
                headers={
                    "Authorization": f"Bearer {self._credential}",
                    "Accept": "application/json",
                },
            )

    def fetch(self, user_id: str, key_type: KeyType) -> bytes:
        if not self._credential:
            raise AuthenticationError("No bearer credential available for key request")

        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                resp = self._post(user_id, key_type)
            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "Key request attempt %d/%d failed: %s",
                    attempt, self._max_attempts, type(exc).__name__,
                )
            else:
                if resp.status_code in (401, 403):
                    raise AuthenticationError(
                        f"Key issuance rejected credential ({resp.status_code})"
                    )
                if resp.status_code >= 500:
                    detail = _error_detail(resp)
                    if "configuration" in detail.lower():
                        raise ConfigurationError(f"Key issuance unavailable: {detail}")
                    last_error = httpx.HTTPStatusError(
                        f"Key issuance returned {resp.status_code}",
                        request=resp.request,
                        response=resp,
                    )
                    logger.warning(
                        "Key request attempt %d/%d got HTTP %d",
                        attempt, self._max_attempts, resp.status_code,
                    )
                elif resp.status_code != 200:
                    raise AuthenticationError(
                        f"Key issuance refused request ({resp.status_code}): {_error_detail(resp)}"
                    )
                else:
                    return _parse_key(resp)
            if attempt < self._max_attempts:
                self._sleep(self._retry_delay(attempt))

        raise BackendUnavailableError(
            f"Key issuance unreachable after {self._max_attempts} attempts"
        ) from last_error


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or "")
    return ""


def _parse_key(resp: httpx.Response) -> bytes:
    try:
        key = bytes.fromhex(resp.json()["encryptionKey"])
    except (ValueError, KeyError, TypeError) as exc:
        raise ConfigurationError("Key issuance returned a malformed key") from exc
    if len(key) != KEY_SIZE:
        raise ConfigurationError(f"Key issuance returned {len(key)} bytes, expected {KEY_SIZE}")
    return key


class KeyManager:
    """Returns per-user keys from a source, caching them per process."""

    def __init__(
        self,
        source: KeySource,
        cache: KeyCache,
        *,
        legacy_enabled: bool = False,
    ) -> None:
        self._source = source
        self._cache = cache
        self._legacy_enabled = legacy_enabled

    @property
    def cache(self) -> KeyCache:
        return self._cache

    def get_user_key(self, user_id: str, key_type: KeyType = KeyType.PRIMARY) -> bytes:
        if not user_id:
            raise InvalidArgumentError("user_id is required")
        key_type = KeyType(key_type)
        if key_type is KeyType.LEGACY and not self._legacy_enabled:
            raise ConfigurationError("Legacy key derivation is disabled")
        return self._cache.get_or_create(
            user_id, key_type.value, lambda: self._source.fetch(user_id, key_type)
        )

    def decryption_chain(self) -> list[KeyType]:
        """Key types to try, in order, when decrypting datastore envelopes."""
        chain = [KeyType.PRIMARY, KeyType.FALLBACK]
        if self._legacy_enabled:
            chain.append(KeyType.LEGACY)
        return chain

    def clear(self, user_id: str) -> None:
        self._cache.clear(user_id)

    def clear_all(self) -> None:
        self._cache.clear_all()
