"""Tests for blind-index hashing (salted and legacy schemes)."""

from __future__ import annotations

import hashlib

import pytest

from app.exceptions import InvalidArgumentError
from app.services.search_hash import HashScheme, SearchHashEngine


def _sha(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class TestSaltedHash:
    def test_matches_construction(self, hasher):
        salt = _sha("search_salt_user-a")
        assert hasher.search_hash("Project Alpha", "user-a") == _sha(salt + "project alpha")

    def test_normalization(self, hasher):
        a = hasher.search_hash("  Project Alpha ", "user-a")
        b = hasher.search_hash("project alpha", "user-a")
        assert a == b

    def test_unlinkable_across_users(self, hasher):
        assert hasher.search_hash("Project Alpha", "user-a") != hasher.search_hash(
            "Project Alpha", "user-b"
        )

    def test_is_64_hex_chars(self, hasher):
        h = hasher.search_hash("x", "user-a")
        assert len(h) == 64
        int(h, 16)

    def test_empty_text_is_hashable(self, hasher):
        assert hasher.search_hash("", "user-a") == _sha(_sha("search_salt_user-a"))

    def test_empty_user_rejected(self, hasher):
        with pytest.raises(InvalidArgumentError):
            hasher.search_hash("x", "")

    def test_salt_is_deterministic(self):
        assert SearchHashEngine.salt("u") == SearchHashEngine.salt("u") == _sha("search_salt_u")


class TestLegacyHash:
    def test_matches_construction(self, hasher):
        assert hasher.legacy_hash(" Project Alpha ") == _sha("project alpha")

    def test_same_for_every_user(self, hasher):
        # The reason it is being retired: equal values link across users.
        assert hasher.legacy_hash("Secret") == hasher.legacy_hash("secret")

    def test_differs_from_salted(self, hasher):
        assert hasher.legacy_hash("x") != hasher.search_hash("x", "user-a")


class TestClassify:
    def test_salted(self, hasher):
        h = hasher.search_hash("Alpha", "user-a")
        assert hasher.classify(h, "alpha", "user-a") is HashScheme.SALTED

    def test_legacy(self, hasher):
        h = hasher.legacy_hash("Alpha")
        assert hasher.classify(h, "Alpha", "user-a") is HashScheme.LEGACY

    def test_other_users_salt_is_unknown(self, hasher):
        h = hasher.search_hash("Alpha", "user-b")
        assert hasher.classify(h, "Alpha", "user-a") is HashScheme.UNKNOWN

    def test_garbage_is_unknown(self, hasher):
        assert hasher.classify("0" * 64, "Alpha", "user-a") is HashScheme.UNKNOWN
