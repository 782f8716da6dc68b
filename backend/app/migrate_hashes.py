"""Hash migration command line.

Usage::

    python scripts/migrate-hashes.py [--dry-run] [--validate] [--batch-size=N]
                                     [--sample-size=N] [--table TABLE]

Progress is logged to stderr; a JSON summary is printed to stdout.
Exit codes: 0 success, 1 a batch failed to commit or the run aborted,
2 configuration error.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys

from app.config import get_settings
from app.exceptions import AuthenticationError, ConfigurationError, StorageUnavailableError
from app.key_cache import KeyCache
from app.services.keys import validate_key_material
from app.services.migration import HashMigrationService, MigrationMode
from app.services.records import ENCRYPTED_COLUMNS

logger = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {n}")
    return n


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Migrate search hashes from unsalted to per-user salted format."
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Decide every record and report counts without writing",
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Check a sample of records against the salted scheme; writes nothing",
    )
    parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=settings.migration_batch_size,
        help=f"Records per batch (default: {settings.migration_batch_size})",
    )
    parser.add_argument(
        "--sample-size",
        type=_positive_int,
        default=settings.migration_sample_size,
        help=f"Records per table checked by --validate (default: {settings.migration_sample_size})",
    )
    parser.add_argument(
        "--table",
        choices=[*sorted(ENCRYPTED_COLUMNS), "all"],
        default="all",
        help="Table to migrate (default: all)",
    )
    return parser


def main(argv: list[str] | None = None, db_engine=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    settings = get_settings()
    try:
        validate_key_material(settings.key_material)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    # Imported late: app.db creates its engine from DB_URL at import time.
    from app.db import create_db_and_tables
    from app.dependencies import build_encryption_engine

    if db_engine is None:
        from app.db import engine

        db_engine = engine
    create_db_and_tables(db_engine)

    cache = KeyCache()
    encryption = build_encryption_engine(settings, db_engine, cache)
    service = HashMigrationService(db_engine, encryption)
    tables = sorted(ENCRYPTED_COLUMNS) if args.table == "all" else [args.table]

    def _handle_stop(signum, frame) -> None:
        logger.warning("Stop requested; finishing the current batch")
        service.request_stop()

    previous = signal.signal(signal.SIGINT, _handle_stop)
    try:
        if args.validate:
            results = [service.validate(t, args.sample_size) for t in tables]
            checked = sum(r.checked for r in results)
            valid = sum(r.valid for r in results)
            summary = {
                "mode": "validate",
                "ok": checked == valid,
                "checked": checked,
                "valid": valid,
                "tables": [r.to_dict() for r in results],
            }
            exit_code = 0
        else:
            mode = MigrationMode.DRY_RUN if args.dry_run else MigrationMode.EXECUTE
            run = service.run(tables, batch_size=args.batch_size, mode=mode)
            summary = {"mode": mode.value, **run.to_dict()}
            exit_code = 0 if run.ok else 1
    except (ConfigurationError, AuthenticationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except StorageUnavailableError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)
        cache.clear_all()

    print(json.dumps(summary, indent=2))
    return exit_code
