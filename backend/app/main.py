from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

# Register SQLModel tables
import app.models  # noqa: F401

from app.config import get_settings
from app.db import create_db_and_tables
from app.key_cache import KeyCache
from app.routers import health, keys, search


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    create_db_and_tables()

    # Derived keys live only in this process; wiped on logout and shutdown
    key_cache = KeyCache(timeout_minutes=settings.key_cache_timeout_minutes)
    app.state.key_cache = key_cache

    if settings.legacy_key_enabled:
        logging.getLogger(__name__).warning(
            "LEGACY_KEY_ENABLED is set; records under the placeholder legacy key "
            "are readable. Disable once hash migration reports no legacy rows."
        )

    # Start periodic sweep of idle cached keys (every 60s)
    async def _key_sweep_loop() -> None:
        while True:
            await asyncio.sleep(60)
            try:
                wiped = key_cache.sweep_expired()
                if wiped:
                    logging.getLogger(__name__).info(
                        "Key sweep: wiped %d idle key(s)", wiped
                    )
            except Exception:
                logging.getLogger(__name__).exception("Key sweep error")

    sweep_task = asyncio.create_task(_key_sweep_loop())

    yield

    # Shutdown: cancel key sweep
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass

    # Shutdown: wipe all in-memory keys
    key_cache.clear_all()


app = FastAPI(
    title="Hill Chart Privacy",
    description="Per-user field encryption, key issuance and blind-index search",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(keys.router)
app.include_router(search.router)
