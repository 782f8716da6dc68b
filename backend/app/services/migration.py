"""Search-hash migration: legacy unsalted hashes → per-user salted hashes.

Walks a table in fixed-size batches ordered by primary key. For every row
the ciphertext is decrypted, both hash schemes are recomputed, and the
stored hash is rewritten only when it equals the legacy hash and differs
from the salted one. Rows already salted are skipped, so re-running is
always safe; rows whose hash matches neither scheme are logged as
anomalous and left untouched.

Each batch's rewrites commit in one transaction. A stop request is
honoured between batches, never inside one. Per-record decryption or
write failures are collected in the report; only an unreadable datastore
aborts the run.

Progress through one table::

    IDLE -> SCANNING(offset) -> DECIDING(batch) -> SCANNING(offset + n) -> ... -> DONE
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.exceptions import DecryptionError, InvalidArgumentError, StorageUnavailableError
from app.models.data_migration import DataMigration
from app.services.encryption import EncryptionEngine
from app.services.records import HashRewrite, RecordStore, StoredRecord, resolve_column
from app.services.search_hash import HashScheme

logger = logging.getLogger(__name__)


class MigrationMode(str, Enum):
    EXECUTE = "execute"
    DRY_RUN = "dry_run"


class MigrationState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DECIDING = "deciding"
    DONE = "done"


class RecordOutcome(str, Enum):
    MIGRATED = "migrated"                  # rewritten (or would be, in a dry run)
    ALREADY_CURRENT = "already_current"    # stored hash is already salted
    ANOMALOUS = "anomalous"                # matches neither scheme; untouched
    CHANGED_CONCURRENTLY = "changed_concurrently"  # live write got there first
    DECRYPT_FAILED = "decrypt_failed"
    WRITE_FAILED = "write_failed"


_SKIPPED = (
    RecordOutcome.ALREADY_CURRENT,
    RecordOutcome.ANOMALOUS,
    RecordOutcome.CHANGED_CONCURRENTLY,
)


@dataclass
class MigrationRecord:
    """Transient unit of work for one row; never persisted."""
    id: str
    user_id: str
    current_hash: str
    recomputed_hash: str
    migrated: bool = False
    outcome: RecordOutcome | None = None


@dataclass(frozen=True)
class RecordFailure:
    id: str
    outcome: RecordOutcome
    error_class: str
    message: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "outcome": self.outcome.value,
            "error_class": self.error_class,
            "message": self.message,
        }


@dataclass
class MigrationReport:
    table: str
    dry_run: bool = False
    records_scanned: int = 0
    outcomes: dict[str, int] = field(
        default_factory=lambda: {o.value: 0 for o in RecordOutcome}
    )
    failures: list[RecordFailure] = field(default_factory=list)
    batches_committed: int = 0
    batches_failed: int = 0
    stopped: bool = False
    duration_ms: int = 0

    def count(self, outcome: RecordOutcome, n: int = 1) -> None:
        self.outcomes[outcome.value] += n

    def fail(self, record_id: str, outcome: RecordOutcome, exc: BaseException) -> None:
        self.count(outcome)
        self.failures.append(
            RecordFailure(record_id, outcome, type(exc).__name__, str(exc))
        )

    @property
    def records_migrated(self) -> int:
        return self.outcomes[RecordOutcome.MIGRATED.value]

    @property
    def records_skipped(self) -> int:
        return sum(self.outcomes[o.value] for o in _SKIPPED)

    @property
    def ok(self) -> bool:
        return self.batches_failed == 0

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "dry_run": self.dry_run,
            "ok": self.ok,
            "records_scanned": self.records_scanned,
            "records_migrated": self.records_migrated,
            "records_skipped": self.records_skipped,
            "outcomes": dict(self.outcomes),
            "failures": [f.to_dict() for f in self.failures],
            "batches_committed": self.batches_committed,
            "batches_failed": self.batches_failed,
            "stopped": self.stopped,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ValidationReport:
    table: str
    checked: int = 0
    valid: int = 0
    invalid: int = 0
    errors: int = 0
    schemes: dict[str, int] = field(default_factory=lambda: {s.value: 0 for s in HashScheme})
    invalid_ids: list[str] = field(default_factory=list)

    @property
    def mismatch_rate(self) -> float:
        if self.checked == 0:
            return 0.0
        return (self.invalid + self.errors) / self.checked

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "checked": self.checked,
            "valid": self.valid,
            "invalid": self.invalid,
            "errors": self.errors,
            "schemes": dict(self.schemes),
            "mismatch_rate": round(self.mismatch_rate, 4),
            "invalid_ids": list(self.invalid_ids),
        }


@dataclass
class RunReport:
    reports: list[MigrationReport] = field(default_factory=list)
    aborted: str | None = None
    stopped: bool = False

    @property
    def ok(self) -> bool:
        """False if the run aborted, was stopped early or any batch failed."""
        if self.aborted is not None or self.stopped:
            return False
        return all(r.ok and not r.stopped for r in self.reports)

    @property
    def records_migrated(self) -> int:
        return sum(r.records_migrated for r in self.reports)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "aborted": self.aborted,
            "stopped": self.stopped,
            "records_migrated": self.records_migrated,
            "tables": [r.to_dict() for r in self.reports],
        }


class HashMigrationService:
    """One instance per migration run."""

    MIGRATION_NAME = "hash_salting_migration"
    MIGRATION_DESCRIPTION = (
        "Migrate search hashes from unsalted SHA-256 to salted format for improved security"
    )
    DEFAULT_BATCH_SIZE = 100
    DEFAULT_SAMPLE_SIZE = 10

    def __init__(self, engine: Engine, encryption: EncryptionEngine) -> None:
        self._engine = engine
        self._store = RecordStore(engine)
        self._encryption = encryption
        self._hasher = encryption.hasher
        self._stop = threading.Event()
        self.state = MigrationState.IDLE

    def request_stop(self) -> None:
        """Stop before the next batch; the batch in flight completes."""
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    # ── Per-record decision ──────────────────────────────────────────

    def _decide(self, row: StoredRecord, report: MigrationReport) -> MigrationRecord | None:
        """Classify one row. Returns None when it can't be decrypted."""
        try:
            plaintext = self._encryption.decrypt(row.encrypted, row.user_id, record_id=row.id)
            salted = self._hasher.search_hash(plaintext, row.user_id)
        except (DecryptionError, InvalidArgumentError) as exc:
            logger.error(
                "[MIGRATION] Failed to decrypt %s row %s: %s", report.table, row.id, type(exc).__name__
            )
            report.fail(row.id, RecordOutcome.DECRYPT_FAILED, exc)
            return None

        legacy = self._hasher.legacy_hash(plaintext)
        record = MigrationRecord(
            id=row.id, user_id=row.user_id, current_hash=row.hash or "", recomputed_hash=salted
        )
        if record.current_hash == legacy and record.current_hash != salted:
            return record
        if record.current_hash == salted:
            record.outcome = RecordOutcome.ALREADY_CURRENT
        else:
            record.outcome = RecordOutcome.ANOMALOUS
            logger.warning(
                "[MIGRATION] %s row %s hash matches no known scheme; leaving untouched",
                report.table, row.id,
            )
        report.count(record.outcome)
        return record

    # ── Batch loop ───────────────────────────────────────────────────

    def migrate_table(
        self,
        table: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        mode: MigrationMode = MigrationMode.EXECUTE,
    ) -> MigrationReport:
        """Migrate one table. Raises StorageUnavailableError if reads fail."""
        resolve_column(table)
        if batch_size < 1:
            raise InvalidArgumentError(f"batch_size must be >= 1, got {batch_size}")
        mode = MigrationMode(mode)
        dry_run = mode is MigrationMode.DRY_RUN
        report = MigrationReport(table=table, dry_run=dry_run)
        started = time.monotonic()
        offset = 0

        logger.info(
            "[MIGRATION] Starting %s hash migration (batch size %d%s)",
            table, batch_size, ", dry run" if dry_run else "",
        )
        try:
            while True:
                if self._stop.is_set():
                    report.stopped = True
                    logger.info("[MIGRATION] Stop requested; halting %s at offset %d", table, offset)
                    break

                self.state = MigrationState.SCANNING
                batch = self._store.scan(table, offset, batch_size)
                if not batch:
                    break
                logger.info(
                    "[MIGRATION] Processing %s batch: %d-%d", table, offset + 1, offset + len(batch)
                )
                report.records_scanned += len(batch)

                self.state = MigrationState.DECIDING
                decided = [self._decide(row, report) for row in batch]
                pending = [r for r in decided if r is not None and r.outcome is None]
                self._apply(table, pending, report, dry_run)

                if len(batch) < batch_size:
                    break
                offset += batch_size
        finally:
            self.state = MigrationState.DONE
            report.duration_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            "[MIGRATION] %s complete: %d migrated, %d skipped, %d failed, %d batch(es) failed",
            table, report.records_migrated, report.records_skipped,
            len(report.failures), report.batches_failed,
        )
        return report

    def _apply(
        self,
        table: str,
        pending: list[MigrationRecord],
        report: MigrationReport,
        dry_run: bool,
    ) -> None:
        if dry_run:
            for record in pending:
                record.outcome = RecordOutcome.MIGRATED
                logger.info("[MIGRATION] %s row %s would be migrated", table, record.id)
            report.count(RecordOutcome.MIGRATED, len(pending))
            return

        rewrites = [HashRewrite(r.id, r.current_hash, r.recomputed_hash) for r in pending]
        try:
            changed = set(self._store.rewrite_hashes(table, rewrites))
        except SQLAlchemyError as exc:
            logger.error(
                "[MIGRATION] Failed to commit %s batch of %d rewrite(s): %s",
                table, len(rewrites), type(exc).__name__,
            )
            report.batches_failed += 1
            for record in pending:
                record.outcome = RecordOutcome.WRITE_FAILED
                report.fail(record.id, RecordOutcome.WRITE_FAILED, exc)
            return

        report.batches_committed += 1
        for record in pending:
            if record.id in changed:
                record.migrated = True
                record.outcome = RecordOutcome.MIGRATED
                logger.info("[MIGRATION] Updated %s row %s hash", table, record.id)
            else:
                record.outcome = RecordOutcome.CHANGED_CONCURRENTLY
                logger.info(
                    "[MIGRATION] %s row %s changed during migration; left as written", table, record.id
                )
            report.count(record.outcome)

    # ── Validation ───────────────────────────────────────────────────

    def validate(self, table: str, sample_size: int = DEFAULT_SAMPLE_SIZE) -> ValidationReport:
        """Recompute salted hashes for a sample of rows. Writes nothing."""
        resolve_column(table)
        result = ValidationReport(table=table)
        for row in self._store.scan(table, 0, sample_size):
            result.checked += 1
            try:
                plaintext = self._encryption.decrypt(row.encrypted, row.user_id, record_id=row.id)
                scheme = self._hasher.classify(row.hash or "", plaintext, row.user_id)
            except (DecryptionError, InvalidArgumentError) as exc:
                result.errors += 1
                result.invalid_ids.append(row.id)
                logger.error(
                    "[MIGRATION] Validation error for %s row %s: %s", table, row.id, type(exc).__name__
                )
                continue
            result.schemes[scheme.value] += 1
            if scheme is HashScheme.SALTED:
                result.valid += 1
            else:
                result.invalid += 1
                result.invalid_ids.append(row.id)
                logger.warning("[MIGRATION] Invalid hash for %s row %s (%s)", table, row.id, scheme.value)
        logger.info(
            "[MIGRATION] Validation of %s: %d/%d valid", table, result.valid, result.checked
        )
        return result

    # ── Full run with tracking ───────────────────────────────────────

    def run(
        self,
        tables: list[str],
        batch_size: int = DEFAULT_BATCH_SIZE,
        mode: MigrationMode = MigrationMode.EXECUTE,
    ) -> RunReport:
        """Migrate several tables, recording status in ``data_migrations``.

        Dry runs leave the tracking row alone.
        """
        mode = MigrationMode(mode)
        track = mode is MigrationMode.EXECUTE
        run = RunReport()
        if track:
            self._update_tracking("running", 0, "Migration started")
        try:
            for table in tables:
                if self._stop.is_set():
                    break
                run.reports.append(self.migrate_table(table, batch_size, mode))
        except StorageUnavailableError as exc:
            run.aborted = str(exc)
            logger.error("[MIGRATION] Aborted: %s", exc)
        except Exception as exc:
            logger.error("[MIGRATION] Aborted by %s", type(exc).__name__)
            if track:
                self._update_tracking(
                    "failed",
                    run.records_migrated,
                    f"Migration aborted ({type(exc).__name__}: {exc})",
                )
            raise
        run.stopped = self._stop.is_set()

        if track:
            notes = ", ".join(f"{r.table}: {r.records_migrated}" for r in run.reports)
            if run.ok:
                self._update_tracking("completed", run.records_migrated, f"Migrated {notes}")
            else:
                reason = run.aborted or ("stopped" if run.stopped else "batch failures")
                self._update_tracking(
                    "failed", run.records_migrated, f"Migration incomplete ({reason}). {notes}"
                )
        return run

    def _update_tracking(self, status: str, records_processed: int, notes: str) -> None:
        """Best effort: tracking failures are logged, never fatal."""
        try:
            with Session(self._engine) as session:
                row = session.exec(
                    select(DataMigration).where(DataMigration.migration_name == self.MIGRATION_NAME)
                ).first()
                if row is None:
                    row = DataMigration(
                        migration_name=self.MIGRATION_NAME,
                        description=self.MIGRATION_DESCRIPTION,
                    )
                row.status = status
                row.records_processed = records_processed
                row.notes = notes
                if status == "completed":
                    row.executed_at = datetime.now(timezone.utc)
                session.add(row)
                session.commit()
        except SQLAlchemyError:
            logger.warning("[MIGRATION] Failed to update migration tracking", exc_info=True)
