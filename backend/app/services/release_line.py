"""Release line settings for a collection.

``color`` and ``text`` are encrypted under the owner's key like any other
user text; ``enabled`` stays in the clear. The encrypted form is kept as
one JSON document in ``collections.release_line_config_encrypted``.
No search hash is written; these values are never searched.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass

from sqlalchemy.engine import Engine
from sqlmodel import Session

from app.exceptions import DecryptionError, InvalidArgumentError
from app.models.collection import Collection
from app.services.encryption import EncryptionEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReleaseLineConfig:
    enabled: bool
    color: str
    text: str


@dataclass(frozen=True)
class EncryptedReleaseLineConfig:
    enabled: bool
    color_encrypted: str
    text_encrypted: str

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> EncryptedReleaseLineConfig:
        try:
            data = json.loads(raw)
            return cls(
                enabled=bool(data["enabled"]),
                color_encrypted=data["color_encrypted"],
                text_encrypted=data["text_encrypted"],
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise DecryptionError("Malformed release line config") from exc


class ReleaseLineService:
    def __init__(self, encryption: EncryptionEngine, engine: Engine) -> None:
        self._encryption = encryption
        self._engine = engine

    def encrypt(self, config: ReleaseLineConfig, user_id: str) -> EncryptedReleaseLineConfig:
        """Raises EncryptionError if either field can't be encrypted."""
        return EncryptedReleaseLineConfig(
            enabled=config.enabled,
            color_encrypted=self._encryption.encrypt(config.color, user_id).stored,
            text_encrypted=self._encryption.encrypt(config.text, user_id).stored,
        )

    def decrypt(self, encrypted: EncryptedReleaseLineConfig, user_id: str) -> ReleaseLineConfig:
        return ReleaseLineConfig(
            enabled=encrypted.enabled,
            color=self._encryption.decrypt(encrypted.color_encrypted, user_id),
            text=self._encryption.decrypt(encrypted.text_encrypted, user_id),
        )

    def _owned_collection(self, session: Session, collection_id: str, user_id: str) -> Collection:
        row = session.get(Collection, collection_id)
        if row is None or row.user_id != user_id:
            raise InvalidArgumentError(f"Collection {collection_id} not found for user")
        return row

    def save(self, collection_id: str, user_id: str, config: ReleaseLineConfig) -> None:
        encrypted = self.encrypt(config, user_id)
        with Session(self._engine) as session:
            row = self._owned_collection(session, collection_id, user_id)
            row.release_line_config_encrypted = encrypted.to_json()
            session.add(row)
            session.commit()
        logger.info("Saved release line config for collection %s", collection_id)

    def load(self, collection_id: str, user_id: str) -> ReleaseLineConfig | None:
        """Decrypted config, or None if the collection has none yet."""
        with Session(self._engine) as session:
            raw = self._owned_collection(session, collection_id, user_id).release_line_config_encrypted
        if not raw:
            return None
        try:
            return self.decrypt(EncryptedReleaseLineConfig.from_json(raw), user_id)
        except DecryptionError as exc:
            raise DecryptionError(str(exc), record_id=collection_id) from exc
