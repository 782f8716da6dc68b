from __future__ import annotations

import logging
import sqlite3
from collections.abc import Generator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from app.config import get_settings
from app.utils.crypto import fernet_for_key_hex

logger = logging.getLogger(__name__)


def _sqlite_encrypt_sensitive_data(data: str | None, user_key: str | None) -> str | None:
    if data is None or data == "":
        return None
    if not user_key:
        raise ValueError("User key cannot be null or empty for encryption")
    return fernet_for_key_hex(user_key).encrypt(data.encode("utf-8")).decode("ascii")


def _sqlite_decrypt_sensitive_data(encrypted_data: str | None, user_key: str | None) -> str:
    if encrypted_data is None or encrypted_data == "":
        return ""
    if not user_key:
        raise ValueError("User key cannot be null or empty for decryption")
    # InvalidToken propagates; SQLite reports it as an OperationalError.
    return fernet_for_key_hex(user_key).decrypt(encrypted_data.encode("ascii")).decode("utf-8")


@event.listens_for(Engine, "connect")
def _set_sqlite_pragmas(dbapi_connection, connection_record):
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()
    # SQLite has no pgcrypto: register the datastore encryption functions
    # per connection so the primary backend runs the same SQL everywhere.
    dbapi_connection.create_function("encrypt_sensitive_data", 2, _sqlite_encrypt_sensitive_data)
    dbapi_connection.create_function("decrypt_sensitive_data", 2, _sqlite_decrypt_sensitive_data)


def _connect_args(db_url: str) -> dict:
    if db_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    get_settings().db_url,
    echo=False,
    connect_args=_connect_args(get_settings().db_url),
)


def create_db_and_tables(eng: Engine | None = None) -> None:
    eng = eng or engine
    SQLModel.metadata.create_all(eng)
    _run_migrations(eng)


_PG_ENCRYPT_FUNCTION = """
CREATE OR REPLACE FUNCTION encrypt_sensitive_data(data TEXT, user_key TEXT)
RETURNS TEXT AS $$
BEGIN
    IF data IS NULL OR data = '' THEN
        RETURN NULL;
    END IF;
    IF user_key IS NULL OR user_key = '' THEN
        RAISE EXCEPTION 'User key cannot be null or empty for encryption';
    END IF;
    RETURN encode(pgp_sym_encrypt(data, user_key), 'base64');
END;
$$ LANGUAGE plpgsql SECURITY DEFINER
"""

_PG_DECRYPT_FUNCTION = """
CREATE OR REPLACE FUNCTION decrypt_sensitive_data(encrypted_data TEXT, user_key TEXT)
RETURNS TEXT AS $$
BEGIN
    IF encrypted_data IS NULL OR encrypted_data = '' THEN
        RETURN '';
    END IF;
    IF user_key IS NULL OR user_key = '' THEN
        RAISE EXCEPTION 'User key cannot be null or empty for decryption';
    END IF;
    RETURN pgp_sym_decrypt(decode(encrypted_data, 'base64'), user_key);
END;
$$ LANGUAGE plpgsql SECURITY DEFINER
"""


def _run_migrations(eng: Engine) -> None:
    """Lightweight forward-only migrations for server-side functions."""
    from sqlalchemy import text

    if eng.dialect.name != "postgresql":
        return
    # Decryption errors are raised, never turned into empty strings, so a
    # wrong key can't be mistaken for an empty value.
    with eng.begin() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS pgcrypto"))
        conn.execute(text(_PG_ENCRYPT_FUNCTION))
        conn.execute(text(_PG_DECRYPT_FUNCTION))
    logger.info("Installed pgcrypto encryption functions")


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
