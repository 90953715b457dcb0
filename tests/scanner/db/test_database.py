"""Tests for the SQLite engine wrapper."""

from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from cataloger.scanner._internal.db.database import (
    Database,
    is_database_locked_error,
    retry_delay,
)
from cataloger.scanner._internal.db.tables import CodeTypeRow


class TestDatabase:
    """Engine setup."""

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "a" / "b" / "kb.db")
        try:
            db.create_all()
        finally:
            db.dispose()

        assert (tmp_path / "a" / "b" / "kb.db").exists()

    def test_wal_mode(self, db: Database) -> None:
        with db.engine.connect() as conn:
            mode = conn.execute(text("PRAGMA journal_mode")).scalar()

        assert mode == "wal"

    def test_create_all_is_idempotent(self, db: Database) -> None:
        db.create_all()

    def test_unknown_checkpoint_mode(self, db: Database) -> None:
        with pytest.raises(ValueError):
            db.checkpoint("SOMETIMES")


class TestBulkWriter:
    """Upserts."""

    def test_upsert_updates_only_listed_columns(self, db: Database) -> None:
        """A conflicting insert overwrites update columns and keeps the rest."""
        # Given
        row = {"id": "t1", "name": "User", "namespace": "A", "created_at": 1.0, "updated_at": 1.0}
        with db.bulk_writer() as writer:
            writer.upsert_many(CodeTypeRow, [row], ["id"], ["name", "updated_at"])

        # When
        changed = row | {"name": "Account", "namespace": "B", "created_at": 9.0, "updated_at": 9.0}
        with db.bulk_writer() as writer:
            writer.upsert_many(CodeTypeRow, [changed], ["id"], ["name", "updated_at"])

        # Then
        with db.session() as session:
            stored = session.exec(select(CodeTypeRow)).one()
        assert (stored.name, stored.namespace) == ("Account", "A")
        assert (stored.created_at, stored.updated_at) == (1.0, 9.0)

    def test_error_rolls_back_chunk(self, db: Database) -> None:
        row = {"id": "t1", "name": "User"}
        with pytest.raises(RuntimeError), db.bulk_writer() as writer:
            writer.upsert_many(CodeTypeRow, [row], ["id"], ["name"])
            raise RuntimeError("boom")

        with db.session() as session:
            assert session.exec(select(CodeTypeRow)).all() == []

    def test_empty_records(self, db: Database) -> None:
        with db.bulk_writer() as writer:
            assert writer.upsert_many(CodeTypeRow, [], ["id"], ["name"]) == 0


class TestRetryHelpers:
    """Locked-database detection and backoff."""

    @pytest.mark.parametrize(
        ("message", "expected"),
        [("database is locked", True), ("Database is busy", True), ("no such table: x", False)],
    )
    def test_locked_detection(self, message: str, expected: bool) -> None:
        error = OperationalError("SELECT 1", {}, Exception(message))

        assert is_database_locked_error(error) is expected

    def test_backoff_doubles_and_caps(self) -> None:
        assert [retry_delay(n, 0.1) for n in range(3)] == pytest.approx([0.1, 0.2, 0.4])
        assert retry_delay(10, 0.1) == 2.0
