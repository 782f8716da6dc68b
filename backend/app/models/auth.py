"""Request/response schemas for the key issuance endpoint.

Field names are camelCase on the wire because the browser client posts
them that way.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class KeyRequest(BaseModel):
    """Ask for the caller's own derived key of a given type."""

    user_id: str = Field(alias="userId", min_length=1)
    key_type: str = Field(default="primary", alias="keyType")

    model_config = {"populate_by_name": True}


class KeyResponse(BaseModel):
    """Hex-encoded 32-byte key."""

    encryption_key: str = Field(alias="encryptionKey")

    model_config = {"populate_by_name": True}


class KeyStatusResponse(BaseModel):
    authenticated: bool
    user_id: str
    keys_cached: bool
