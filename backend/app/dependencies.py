"""FastAPI dependency injection for key management and encryption."""

from __future__ import annotations

import httpx
from fastapi import Depends, HTTPException, Request
from sqlalchemy.engine import Engine

from app.config import Settings, get_settings
from app.db import engine as db_engine
from app.key_cache import KeyCache
from app.routers.keys import get_current_user_id
from app.services.encryption import DatastoreBackend, EncryptionEngine, LocalAeadBackend
from app.services.keys import KeyManager, LocalKeyDeriver, RemoteKeyClient
from app.services.records import RecordStore
from app.services.search import SearchService


def build_encryption_engine(settings: Settings, eng: Engine | None, cache: KeyCache) -> EncryptionEngine:
    """Trusted context: local key derivation, datastore primary backend."""
    key_manager = KeyManager(
        LocalKeyDeriver(settings.key_material),
        cache,
        legacy_enabled=settings.legacy_key_enabled,
    )
    primary = DatastoreBackend(eng) if eng is not None else None
    return EncryptionEngine(key_manager, primary=primary, fallback=LocalAeadBackend())


def build_client_encryption_engine(
    settings: Settings,
    credential: str | None,
    cache: KeyCache,
    transport: httpx.BaseTransport | None = None,
) -> EncryptionEngine:
    """Untrusted context: keys come from the issuance endpoint, local AEAD only."""
    source = RemoteKeyClient(
        settings.key_service_url,
        credential,
        timeout=settings.key_request_timeout_seconds,
        max_attempts=settings.key_request_max_attempts,
        base_delay=settings.key_retry_base_delay_seconds,
        max_delay=settings.key_retry_max_delay_seconds,
        transport=transport,
    )
    key_manager = KeyManager(source, cache, legacy_enabled=settings.legacy_key_enabled)
    return EncryptionEngine(key_manager, primary=None, fallback=LocalAeadBackend())


def get_db_engine() -> Engine:
    return db_engine


def get_key_cache(request: Request) -> KeyCache:
    """Inject the process-wide KeyCache created at startup."""
    cache = getattr(request.app.state, "key_cache", None)
    if cache is None:
        raise HTTPException(status_code=503, detail="Key cache unavailable")
    return cache


def get_encryption_engine(
    cache: KeyCache = Depends(get_key_cache),
    eng: Engine = Depends(get_db_engine),
) -> EncryptionEngine:
    return build_encryption_engine(get_settings(), eng, cache)


def get_search_service(
    encryption: EncryptionEngine = Depends(get_encryption_engine),
    eng: Engine = Depends(get_db_engine),
) -> SearchService:
    """Construct SearchService from its dependencies."""
    return SearchService(encryption=encryption, store=RecordStore(eng))


def require_user(user_id: str = Depends(get_current_user_id)) -> str:
    """Auth guard returning the authenticated user id."""
    return user_id
