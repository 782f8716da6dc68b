"""Collection and dot models: only the encrypted text columns matter here.

Each protected text field is stored as a ``<field>_encrypted`` /
``<field>_hash`` column pair: the tagged envelope and the salted blind
index (or, before migration, the legacy unsalted hash).
"""
from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlmodel import Field, SQLModel


class Collection(SQLModel, table=True):
    __tablename__ = "collections"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    name_encrypted: str | None = Field(default=None)
    name_hash: str | None = Field(default=None, index=True)
    status: str = Field(default="active")  # "active", "archived", "deleted"
    # JSON: {"enabled": bool, "color_encrypted": str, "text_encrypted": str}
    release_line_config_encrypted: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Dot(SQLModel, table=True):
    __tablename__ = "dots"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    collection_id: str | None = Field(default=None, foreign_key="collections.id", index=True)
    user_id: str = Field(index=True)
    label_encrypted: str | None = Field(default=None)
    label_hash: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
