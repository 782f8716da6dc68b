"""DataMigration model: audit trail for out-of-band data migrations."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel


class DataMigration(SQLModel, table=True):
    __tablename__ = "data_migrations"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="ck_data_migrations_status",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    migration_name: str = Field(unique=True, index=True)
    description: str | None = Field(default=None)
    status: str = Field(default="pending")
    records_processed: int = Field(default=0)
    notes: str | None = Field(default=None)
    executed_at: datetime | None = Field(default=None)
