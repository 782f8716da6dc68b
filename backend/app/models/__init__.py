from __future__ import annotations

from app.models.collection import Collection, Dot  # noqa: F401
from app.models.data_migration import DataMigration  # noqa: F401
