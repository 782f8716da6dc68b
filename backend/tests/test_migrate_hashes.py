"""Tests for the hash migration command line."""

from __future__ import annotations

import json

import pytest
from sqlmodel import Session, select

from app.config import get_settings
from app.migrate_hashes import build_parser, main
from app.services.migration import HashMigrationService
from app.models.data_migration import DataMigration

TEST_USER = "user-a"


@pytest.fixture(name="legacy_rows")
def legacy_rows_fixture(store, encryption, hasher):
    for record_id, text in (("c1", "Alpha"), ("c2", "Beta")):
        stored = encryption.encrypt(text, TEST_USER).stored
        store.put_record("collections", record_id, TEST_USER, stored, hasher.legacy_hash(text))
    stored = encryption.encrypt("Dot", TEST_USER).stored
    store.put_record("dots", "d1", TEST_USER, stored, hasher.legacy_hash("Dot"))


def _summary(capsys) -> dict:
    return json.loads(capsys.readouterr().out)


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.dry_run is False
        assert args.validate is False
        assert args.batch_size == 100
        assert args.table == "all"

    def test_rejects_zero_batch_size(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--batch-size=0"])

    def test_rejects_unknown_table(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--table", "users"])


class TestMain:
    def test_execute(self, engine, legacy_rows, store, hasher, capsys):
        assert main(["--batch-size=1"], db_engine=engine) == 0
        summary = _summary(capsys)
        assert summary["mode"] == "execute"
        assert summary["ok"] is True
        assert summary["records_migrated"] == 3
        assert store.get_record("dots", "d1").hash == hasher.search_hash("Dot", TEST_USER)
        with Session(engine) as session:
            assert session.exec(select(DataMigration)).one().status == "completed"

    def test_dry_run(self, engine, legacy_rows, store, hasher, capsys):
        assert main(["--dry-run"], db_engine=engine) == 0
        summary = _summary(capsys)
        assert summary["mode"] == "dry_run"
        assert summary["records_migrated"] == 3
        assert store.get_record("dots", "d1").hash == hasher.legacy_hash("Dot")

    def test_single_table(self, engine, legacy_rows, capsys):
        assert main(["--table", "dots"], db_engine=engine) == 0
        summary = _summary(capsys)
        assert [t["table"] for t in summary["tables"]] == ["dots"]
        assert summary["records_migrated"] == 1

    def test_validate(self, engine, legacy_rows, capsys):
        assert main(["--validate"], db_engine=engine) == 0
        before = _summary(capsys)
        assert before["ok"] is False
        assert before["checked"] == 3
        assert before["valid"] == 0

        main([], db_engine=engine)
        capsys.readouterr()
        main(["--validate", "--sample-size=1"], db_engine=engine)
        after = _summary(capsys)
        assert after["ok"] is True
        assert after["checked"] == 2

    def test_missing_key_material(self, engine, monkeypatch, capsys):
        monkeypatch.setattr(get_settings(), "key_material", "")
        assert main([], db_engine=engine) == 2
        assert "KEY_MATERIAL" in capsys.readouterr().err

    def test_stopped_run_fails(self, engine, legacy_rows, store, hasher, monkeypatch, capsys):
        real_migrate = HashMigrationService.migrate_table

        def migrate_then_stop(self, *args, **kwargs):
            report = real_migrate(self, *args, **kwargs)
            self.request_stop()
            return report

        monkeypatch.setattr(HashMigrationService, "migrate_table", migrate_then_stop)
        assert main([], db_engine=engine) == 1
        summary = _summary(capsys)
        assert summary["ok"] is False
        assert summary["stopped"] is True
        assert [t["table"] for t in summary["tables"]] == ["collections"]
        assert store.get_record("dots", "d1").hash == hasher.legacy_hash("Dot")
        with Session(engine) as session:
            assert session.exec(select(DataMigration)).one().status == "failed"
