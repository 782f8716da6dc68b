from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from app.config import get_settings
from app.db import get_session
from app.exceptions import ConfigurationError
from app.services.keys import validate_key_material

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        db_status = f"error: {exc}"

    try:
        validate_key_material(get_settings().key_material)
        key_status = "ok"
    except ConfigurationError:
        key_status = "not_configured"

    cache = getattr(request.app.state, "key_cache", None)

    is_healthy = db_status == "ok" and key_status == "ok"
    return {
        "status": "healthy" if is_healthy else "unhealthy",
        "service": "hillchart-privacy",
        "version": "0.1.0",
        "checks": {
            "database": db_status,
            "key_material": key_status,
            "cached_keys": len(cache) if cache is not None else 0,
        },
    }


@router.get("/health/ready")
async def readiness(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": "hillchart-privacy",
                "error": str(exc),
            },
        )

    return {
        "status": "ready",
        "service": "hillchart-privacy",
    }
