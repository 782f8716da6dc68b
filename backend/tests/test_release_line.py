"""Release line config: encrypted color/text, plaintext enabled flag."""

from __future__ import annotations

import json

import pytest

from app.exceptions import DecryptionError, InvalidArgumentError
from app.services.release_line import (
    EncryptedReleaseLineConfig,
    ReleaseLineConfig,
    ReleaseLineService,
)

TEST_USER = "user-a"
OTHER_USER = "user-b"


@pytest.fixture(name="release_lines")
def release_lines_fixture(encryption, engine) -> ReleaseLineService:
    return ReleaseLineService(encryption, engine)


@pytest.fixture(name="collection")
def collection_fixture(store) -> str:
    store.put_record("collections", "c1", TEST_USER, "", None)
    return "c1"


class TestEncryptDecrypt:
    def test_round_trip(self, release_lines):
        config = ReleaseLineConfig(enabled=True, color="#ff6b35", text="Ship it")
        encrypted = release_lines.encrypt(config, TEST_USER)
        assert encrypted.enabled is True
        assert release_lines.decrypt(encrypted, TEST_USER) == config

    def test_only_flag_in_clear(self, release_lines):
        config = ReleaseLineConfig(enabled=False, color="#ff6b35", text="Ship it")
        raw = release_lines.encrypt(config, TEST_USER).to_json()
        assert json.loads(raw)["enabled"] is False
        assert "#ff6b35" not in raw
        assert "Ship it" not in raw

    def test_empty_color(self, release_lines):
        config = ReleaseLineConfig(enabled=True, color="", text="Line")
        encrypted = release_lines.encrypt(config, TEST_USER)
        assert encrypted.color_encrypted == ""
        assert release_lines.decrypt(encrypted, TEST_USER).color == ""

    def test_other_user_cannot_decrypt(self, release_lines):
        encrypted = release_lines.encrypt(ReleaseLineConfig(True, "red", "x"), TEST_USER)
        with pytest.raises(DecryptionError):
            release_lines.decrypt(encrypted, OTHER_USER)

    @pytest.mark.parametrize("raw", ["not json", "{}", '{"enabled": true}', "[]"])
    def test_malformed_json(self, raw):
        with pytest.raises(DecryptionError, match="Malformed"):
            EncryptedReleaseLineConfig.from_json(raw)


class TestPersistence:
    def test_save_and_load(self, release_lines, collection):
        config = ReleaseLineConfig(enabled=True, color="#00ff00", text="v2 cut")
        release_lines.save(collection, TEST_USER, config)
        assert release_lines.load(collection, TEST_USER) == config

    def test_load_without_config(self, release_lines, collection):
        assert release_lines.load(collection, TEST_USER) is None

    def test_other_users_collection(self, release_lines, collection):
        with pytest.raises(InvalidArgumentError):
            release_lines.save(collection, OTHER_USER, ReleaseLineConfig(True, "red", "x"))
        with pytest.raises(InvalidArgumentError):
            release_lines.load(collection, OTHER_USER)

    def test_missing_collection(self, release_lines):
        with pytest.raises(InvalidArgumentError):
            release_lines.load("nope", TEST_USER)
