"""Storage access for encrypted text columns.

Thin CRUD layer over the ``<field>_encrypted`` / ``<field>_hash`` column
pairs: single-record get/put, lookup by hash, and offset range scans for
migration batches. Every method opens its own short session so batches
commit independently.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, col, select

from app.exceptions import InvalidArgumentError, StorageUnavailableError
from app.models.collection import Collection, Dot


@dataclass(frozen=True)
class EncryptedColumn:
    """A protected text field: ``<field>_encrypted`` + ``<field>_hash``."""

    model: type[SQLModel]
    field: str
    # Rows outside this status are hidden from search (None: no status column)
    search_status: str | None = None

    @property
    def table(self) -> str:
        return self.model.__tablename__

    @property
    def encrypted_attr(self):
        return getattr(self.model, f"{self.field}_encrypted")

    @property
    def hash_attr(self):
        return getattr(self.model, f"{self.field}_hash")


ENCRYPTED_COLUMNS: dict[str, EncryptedColumn] = {
    "collections": EncryptedColumn(Collection, "name", search_status="active"),
    "dots": EncryptedColumn(Dot, "label"),
}


def resolve_column(table: str) -> EncryptedColumn:
    try:
        return ENCRYPTED_COLUMNS[table]
    except KeyError:
        raise InvalidArgumentError(
            f"Unknown table {table!r}. Known: {sorted(ENCRYPTED_COLUMNS)}"
        ) from None


@dataclass(frozen=True)
class StoredRecord:
    id: str
    user_id: str
    encrypted: str | None
    hash: str | None


@dataclass(frozen=True)
class HashRewrite:
    id: str
    old_hash: str
    new_hash: str


class RecordStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _row(self, column: EncryptedColumn, row) -> StoredRecord:
        return StoredRecord(
            id=row.id,
            user_id=row.user_id,
            encrypted=getattr(row, f"{column.field}_encrypted"),
            hash=getattr(row, f"{column.field}_hash"),
        )

    def get_record(self, table: str, record_id: str) -> StoredRecord | None:
        column = resolve_column(table)
        with Session(self._engine) as session:
            row = session.get(column.model, record_id)
            return self._row(column, row) if row is not None else None

    def put_record(
        self, table: str, record_id: str, user_id: str, encrypted: str, hash_value: str
    ) -> None:
        """Insert or overwrite both columns of one record in one commit."""
        column = resolve_column(table)
        with Session(self._engine) as session:
            row = session.get(column.model, record_id)
            if row is None:
                row = column.model(id=record_id, user_id=user_id)
            elif row.user_id != user_id:
                raise InvalidArgumentError(f"Record {record_id} belongs to another user")
            setattr(row, f"{column.field}_encrypted", encrypted)
            setattr(row, f"{column.field}_hash", hash_value)
            session.add(row)
            session.commit()

    def query_by_hash(self, table: str, user_id: str, hash_value: str) -> list[str]:
        """Ids of the user's rows holding ``hash_value``; inactive collections are skipped."""
        column = resolve_column(table)
        with Session(self._engine) as session:
            stmt = (
                select(column.model.id)
                .where(column.model.user_id == user_id)
                .where(column.hash_attr == hash_value)
                .order_by(column.model.id)
            )
            if column.search_status is not None:
                stmt = stmt.where(column.model.status == column.search_status)
            return list(session.exec(stmt).all())

    def list_for_user(self, table: str, user_id: str) -> list[StoredRecord]:
        column = resolve_column(table)
        with Session(self._engine) as session:
            rows = session.exec(
                select(column.model)
                .where(column.model.user_id == user_id)
                .order_by(column.model.id)
            ).all()
            return [self._row(column, r) for r in rows]

    def scan(self, table: str, offset: int, limit: int) -> list[StoredRecord]:
        """Rows with both columns set, ordered by primary key.

        Raises StorageUnavailableError if the datastore can't be read.
        """
        column = resolve_column(table)
        try:
            with Session(self._engine) as session:
                rows = session.exec(
                    select(column.model)
                    .where(col(column.encrypted_attr).is_not(None))
                    .where(col(column.hash_attr).is_not(None))
                    .order_by(column.model.id)
                    .offset(offset)
                    .limit(limit)
                ).all()
                return [self._row(column, r) for r in rows]
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"Failed to read {table}: {type(exc).__name__}") from exc

    def rewrite_hashes(self, table: str, rewrites: list[HashRewrite]) -> list[str]:
        """Apply hash rewrites in one transaction; returns the ids changed.

        Each update only fires while the row still holds ``old_hash``, so a
        value rewritten by a live write in the meantime is left alone.
        SQLAlchemy errors propagate; the transaction is rolled back.
        """
        if not rewrites:
            return []
        column = resolve_column(table)
        changed: list[str] = []
        with Session(self._engine) as session:
            conn = session.connection()
            for rw in rewrites:
                result = conn.execute(
                    update(column.model)
                    .where(column.model.id == rw.id)
                    .where(column.hash_attr == rw.old_hash)
                    .values({column.hash_attr: rw.new_hash})
                )
                if result.rowcount:
                    changed.append(rw.id)
            session.commit()
        return changed
