"""SQLite engine for the knowledge base.

Reads go through sqlmodel sessions. Scan output goes through ``BulkWriter``:
one ``INSERT ... ON CONFLICT DO UPDATE`` executemany per chunk, each chunk in
its own transaction. Connections run in WAL mode with a busy timeout so a
reader (the CLI) can query while a scan is writing.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import event, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine

from cataloger.core.errors import StoreError
from cataloger.scanner._internal.db.indexes import create_additional_indexes
from cataloger.scanner._internal.db.tables import ALL_TABLES

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

logger = structlog.get_logger()

DEFAULT_BUSY_TIMEOUT_MS = 30000
MAX_RETRY_DELAY_SEC = 2.0

_CHECKPOINT_MODES = frozenset({"PASSIVE", "FULL", "RESTART", "TRUNCATE"})

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=OFF",
    "PRAGMA cache_size=-32000",
)


def is_database_locked_error(error: Exception) -> bool:
    """SQLite reported the file as locked or busy (retryable)."""
    message = str(error).lower()
    return "database is locked" in message or "database is busy" in message


def retry_delay(attempt: int, base_delay: float, max_delay: float = MAX_RETRY_DELAY_SEC) -> float:
    """Exponential backoff for a zero-based attempt number, capped at ``max_delay``."""
    return min(base_delay * (2**attempt), max_delay)


class Database:
    """Engine owner for one knowledge base file.

    The parent directory is created on construction; tables are created by
    ``create_all()``.

    Raises:
        StoreError: If the parent directory cannot be created.
    """

    def __init__(self, db_path: Path, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError.unavailable(str(db_path), str(e)) from e

        self.engine: Engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
        )
        event.listen(self.engine, "connect", self._on_connect)

    def _on_connect(self, dbapi_conn: Any, _record: Any) -> None:
        cursor = dbapi_conn.cursor()
        try:
            for pragma in _PRAGMAS:
                cursor.execute(pragma)
            cursor.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        finally:
            cursor.close()

    def create_all(self) -> None:
        """Create every knowledge base table and composite index (idempotent).

        Raises:
            StoreError: If the schema cannot be created.
        """
        try:
            SQLModel.metadata.create_all(self.engine, tables=ALL_TABLES)
            create_additional_indexes(self.engine)
        except SQLAlchemyError as e:
            raise StoreError.unavailable(str(self.db_path), str(e)) from e

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    @contextmanager
    def bulk_writer(self) -> Iterator[BulkWriter]:
        """One transaction, committed on clean exit and rolled back on error."""
        with self.engine.begin() as conn:
            yield BulkWriter(conn)

    def checkpoint(self, mode: str = "PASSIVE") -> None:
        """Fold the WAL back into the main database file."""
        mode = mode.upper()
        if mode not in _CHECKPOINT_MODES:
            raise ValueError(f"Unknown checkpoint mode {mode!r}")
        with self.engine.connect() as conn:
            conn.execute(text(f"PRAGMA wal_checkpoint({mode})"))
        logger.debug("wal_checkpoint", mode=mode, path=str(self.db_path))

    def dispose(self) -> None:
        self.engine.dispose()


class BulkWriter:
    """Core-SQL upserts on a connection inside an open transaction."""

    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    def upsert_many(
        self,
        model: type[SQLModel],
        records: Sequence[dict[str, Any]],
        conflict_columns: Sequence[str],
        update_columns: Sequence[str],
    ) -> int:
        """Insert ``records``; rows that hit ``conflict_columns`` get ``update_columns`` overwritten."""
        if not records:
            return 0
        stmt = sqlite_insert(model.__table__)  # type: ignore[attr-defined]
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_={name: stmt.excluded[name] for name in update_columns},
        )
        self.conn.execute(stmt, list(records))
        return len(records)
