"""Key issuance endpoints: derive a user's key for untrusted clients.

Clients without ``KEY_MATERIAL`` (the browser, remote workers) prove their
identity with a bearer JWT issued by the session system and receive the
derived key for their own user id only.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.config import get_settings
from app.exceptions import ConfigurationError
from app.models.auth import KeyRequest, KeyResponse, KeyStatusResponse
from app.services.keys import KeyType, derive_user_key, validate_key_material

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

JWT_ALGORITHM = "HS256"

_bearer_scheme = HTTPBearer(auto_error=False)


# --- JWT helpers ---


def create_access_token(user_id: str) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_access_token_expire_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def _decode_token(token: str, expected_type: str) -> dict:
    """Decode and validate a JWT. Raises HTTPException 401 on failure."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid access token")
    if payload.get("type") != expected_type:
        raise HTTPException(status_code=401, detail="Invalid token type")
    return payload


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
    """Authenticated user id (JWT ``sub``). 401 if missing or invalid."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Access token is required")
    payload = _decode_token(credentials.credentials, "access")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return user_id


# --- Endpoints ---


@router.post("/generate-key", response_model=KeyResponse)
async def generate_key(
    body: KeyRequest,
    user_id: str = Depends(get_current_user_id),
) -> KeyResponse:
    """Derive the caller's key of the requested type."""
    if body.user_id != user_id:
        logger.warning("Key request for another user's id rejected (caller %s)", user_id)
        raise HTTPException(status_code=403, detail="User ID mismatch")

    try:
        key_type = KeyType(body.key_type)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail="Invalid key type. Must be primary, fallback, or legacy",
        )

    settings = get_settings()
    try:
        validate_key_material(settings.key_material)
    except ConfigurationError:
        logger.error("Key issuance refused: KEY_MATERIAL missing or too short")
        raise HTTPException(
            status_code=500,
            detail="Server configuration error: KEY_MATERIAL not configured or too short",
        )

    if key_type is KeyType.LEGACY and not settings.legacy_key_enabled:
        raise HTTPException(status_code=400, detail="Legacy key type is disabled")

    key = derive_user_key(settings.key_material, user_id, key_type)
    return KeyResponse(encryption_key=key.hex())


@router.post("/logout", status_code=200)
async def logout(request: Request, user_id: str = Depends(get_current_user_id)) -> dict:
    """Drop the caller's cached keys from server memory."""
    cache = getattr(request.app.state, "key_cache", None)
    if cache is not None:
        cache.clear(user_id)
    return {"detail": "Logged out"}


@router.get("/status", response_model=KeyStatusResponse)
async def status(request: Request, user_id: str = Depends(get_current_user_id)) -> KeyStatusResponse:
    cache = getattr(request.app.state, "key_cache", None)
    return KeyStatusResponse(
        authenticated=True,
        user_id=user_id,
        keys_cached=cache is not None and cache.has(user_id),
    )
