from __future__ import annotations

import os

# Set test environment BEFORE importing app modules.
# app.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any app imports.
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-integration-tests-only")
os.environ.setdefault("KEY_MATERIAL", "test-key-material-that-is-long-enough-0123456789")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from app.config import get_settings
from app.db import create_db_and_tables, get_session
from app.dependencies import get_db_engine
from app.key_cache import KeyCache
from app.main import app as fastapi_app
from app.routers.keys import create_access_token
from app.services.encryption import DatastoreBackend, EncryptionEngine, LocalAeadBackend
from app.services.keys import KeyManager, LocalKeyDeriver
from app.services.records import RecordStore
from app.services.search import SearchService
from app.services.search_hash import SearchHashEngine

TEST_USER = "user-a"


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database
    (and the datastore cipher functions registered on it).
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


# ── Key and encryption fixtures ───────────────────────────────────────


@pytest.fixture(name="key_material")
def key_material_fixture() -> str:
    return get_settings().key_material


@pytest.fixture(name="key_cache")
def key_cache_fixture():
    cache = KeyCache()
    yield cache
    cache.clear_all()


@pytest.fixture(name="key_manager")
def key_manager_fixture(key_material, key_cache) -> KeyManager:
    return KeyManager(LocalKeyDeriver(key_material), key_cache)


@pytest.fixture(name="encryption")
def encryption_fixture(engine, key_manager) -> EncryptionEngine:
    """Trusted-context engine: datastore primary, local AEAD fallback."""
    return EncryptionEngine(
        key_manager, primary=DatastoreBackend(engine), fallback=LocalAeadBackend()
    )


@pytest.fixture(name="hasher")
def hasher_fixture() -> SearchHashEngine:
    return SearchHashEngine()


@pytest.fixture(name="store")
def store_fixture(engine) -> RecordStore:
    return RecordStore(engine)


@pytest.fixture(name="search_service")
def search_service_fixture(encryption, store) -> SearchService:
    return SearchService(encryption=encryption, store=store)


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client")
def client_fixture(engine, session):
    """FastAPI TestClient with overridden DB engine and session."""

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    fastapi_app.dependency_overrides[get_db_engine] = lambda: engine
    with TestClient(fastapi_app) as client:
        yield client
    fastapi_app.dependency_overrides.clear()


@pytest.fixture(name="auth_headers")
def auth_headers_fixture() -> dict[str, str]:
    """Bearer header for TEST_USER."""
    return {"Authorization": f"Bearer {create_access_token(TEST_USER)}"}
