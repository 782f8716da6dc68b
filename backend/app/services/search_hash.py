"""Blind-index hashing for exact-match search over encrypted text.

The salted scheme is ``sha256(salt(user_id) + normalize(text))`` where
``salt(user_id) = sha256("search_salt_" + user_id)`` in hex. The salt keeps
identical values of different users unlinkable and defeats precomputed
tables. The legacy scheme ``sha256(normalize(text))`` is kept only so
unmigrated rows can still be found and migrated.
"""

from __future__ import annotations

from enum import Enum

from app.exceptions import InvalidArgumentError
from app.utils.crypto import sha256_hash

SALT_LABEL = "search_salt_"


class HashScheme(str, Enum):
    SALTED = "salted"
    LEGACY = "legacy"
    UNKNOWN = "unknown"


class SearchHashEngine:
    """Pure functions; holds no key material and does no I/O."""

    @staticmethod
    def normalize(text: str) -> str:
        return text.strip().lower()

    @staticmethod
    def salt(user_id: str) -> str:
        if not user_id:
            raise InvalidArgumentError("user_id is required to compute a search hash")
        return sha256_hash(f"{SALT_LABEL}{user_id}".encode("utf-8"))

    def search_hash(self, text: str, user_id: str) -> str:
        """Per-user salted hash of the normalized text (64 hex chars)."""
        salt = self.salt(user_id)
        return sha256_hash((salt + self.normalize(text)).encode("utf-8"))

    def legacy_hash(self, text: str) -> str:
        """Unsalted hash. Never written for new data."""
        return sha256_hash(self.normalize(text).encode("utf-8"))

    def classify(self, stored_hash: str, text: str, user_id: str) -> HashScheme:
        """Tell which scheme produced ``stored_hash`` for this plaintext."""
        if stored_hash == self.search_hash(text, user_id):
            return HashScheme.SALTED
        if stored_hash == self.legacy_hash(text):
            return HashScheme.LEGACY
        return HashScheme.UNKNOWN
