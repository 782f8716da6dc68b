"""Low-level cryptographic primitives.

Pure functions with no domain knowledge; reusable building blocks.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32


def hmac_sha256_raw(key: bytes, data: bytes) -> bytes:
    """Compute HMAC-SHA256(key, data). Returns the 32-byte digest."""
    return hmac.new(key, data, hashlib.sha256).digest()


def sha256_hash(data: bytes) -> str:
    """Compute SHA-256 hash. Returns hex-encoded digest."""
    return hashlib.sha256(data).hexdigest()


def aes_gcm_encrypt(key: bytes, plaintext: bytes, aad: bytes | None = None) -> bytes:
    """Encrypt plaintext with AES-256-GCM.

    Returns nonce (12 bytes) || ciphertext || tag (16 bytes).
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, aad)
    return nonce + ciphertext


def aes_gcm_decrypt(key: bytes, data: bytes, aad: bytes | None = None) -> bytes:
    """Decrypt data produced by aes_gcm_encrypt.

    Splits data into nonce (first 12 bytes) and ciphertext+tag.
    Raises cryptography.exceptions.InvalidTag on tampered data.
    """
    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(nonce, ciphertext, aad)


def fernet_for_key_hex(key_hex: str) -> Fernet:
    """Build a Fernet cipher from a hex-encoded 32-byte key.

    Used by the SQLite implementation of the datastore encryption
    functions, which receive the user key as hex text like pgcrypto does.
    Raises ValueError for malformed or wrong-length keys.
    """
    raw = bytes.fromhex(key_hex)
    if len(raw) != KEY_SIZE:
        raise ValueError(f"Expected a {KEY_SIZE}-byte key, got {len(raw)} bytes")
    return Fernet(base64.urlsafe_b64encode(raw))


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """Strict base64 decode. Raises binascii.Error on malformed input."""
    return base64.b64decode(text, validate=True)
