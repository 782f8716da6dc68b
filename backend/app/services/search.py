"""Search service: write, exact-match search and bulk read of encrypted text."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.services.encryption import EncryptionEngine
from app.services.records import RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SearchResult:
    """Matching record ids and the hash scheme that found them."""
    ids: list[str]
    scheme: str  # "salted", "legacy" or "none"

    @property
    def needs_migration(self) -> bool:
        return self.scheme == "legacy"


@dataclass
class ReadResult:
    """Decrypted texts by record id; ids that failed to decrypt are listed apart."""
    texts: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)  # record id -> error class


class SearchService:
    """Read/write path over one encrypted column per table.

    Search computes the salted hash of the query; when nothing matches it
    retries with the legacy hash so rows not yet migrated stay findable.
    """

    __slots__ = ("encryption", "store")

    def __init__(self, encryption: EncryptionEngine, store: RecordStore) -> None:
        self.encryption = encryption
        self.store = store

    def store_text(self, table: str, record_id: str, user_id: str, plaintext: str) -> str:
        """Encrypt and persist ciphertext + salted hash together.

        Returns the search hash. Raises EncryptionError (nothing written)
        if encryption fails.
        """
        result = self.encryption.encrypt(plaintext, user_id)
        self.store.put_record(table, record_id, user_id, result.stored, result.search_hash)
        return result.search_hash

    def find_ids(self, table: str, user_id: str, term: str) -> SearchResult:
        hasher = self.encryption.hasher
        ids = self.store.query_by_hash(table, user_id, hasher.search_hash(term, user_id))
        if ids:
            return SearchResult(ids=ids, scheme="salted")

        ids = self.store.query_by_hash(table, user_id, hasher.legacy_hash(term))
        if ids:
            logger.warning(
                "Found %d %s row(s) for user %s by legacy hash; hash migration needed",
                len(ids), table, user_id,
            )
            return SearchResult(ids=ids, scheme="legacy")
        return SearchResult(ids=[], scheme="none")

    def read_text(self, table: str, record_id: str, user_id: str) -> str | None:
        """Decrypt one record; None if it doesn't exist for this user."""
        record = self.store.get_record(table, record_id)
        if record is None or record.user_id != user_id:
            return None
        return self.encryption.decrypt(record.encrypted, user_id, record_id=record_id)

    def read_texts(self, table: str, user_id: str) -> ReadResult:
        """Decrypt all of a user's rows, skipping (and reporting) bad ones."""
        records = self.store.list_for_user(table, user_id)
        outcome = self.encryption.decrypt_many(((r.id, r.encrypted) for r in records), user_id)
        return ReadResult(
            texts=outcome.values,
            failed={record_id: type(exc).__name__ for record_id, exc in outcome.failures.items()},
        )
