"""SQLite persistence for stored suggestions and apply history."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, List, Optional, Sequence
from uuid import uuid4

from .schema import ApplyRecord, ApplyStatus, StoredSuggestion, utc_now

if TYPE_CHECKING:
    from ..config import SafePatchConfig

DEFAULT_DB_PATH = Path(".safepatch/history.sqlite")
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    return datetime.fromisoformat(value)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


class HistoryStore:
    """SQLite-backed suggestion table and apply history sink."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = self._open_connection()
        self._bootstrap()

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "HistoryStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path))
        connection.row_factory = sqlite3.Row
        return connection

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError(f"History store {self.db_path} is closed")
        return self._conn

    @classmethod
    def from_config(cls, config: "SafePatchConfig") -> "HistoryStore":
        return cls(config.db_path)

    def _bootstrap(self) -> None:
        self.connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS suggestions (
                id TEXT PRIMARY KEY,
                diff TEXT NOT NULL,
                file_path TEXT NOT NULL,
                project_path TEXT NOT NULL,
                project_name TEXT NOT NULL,
                title TEXT NOT NULL,
                severity TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS applies (
                id TEXT PRIMARY KEY,
                suggestion_id TEXT NOT NULL,
                files_modified TEXT NOT NULL,
                backup_id TEXT,
                status TEXT NOT NULL,
                error TEXT,
                applied_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_applies_suggestion_id
                ON applies(suggestion_id);
            CREATE INDEX IF NOT EXISTS idx_applies_applied_at
                ON applies(applied_at DESC);
            CREATE INDEX IF NOT EXISTS idx_applies_backup_id
                ON applies(backup_id);
            """
        )
        self.connection.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        connection = self.connection
        try:
            yield connection
            connection.commit()
        except Exception:
            connection.rollback()
            raise

    # Suggestion operations -----------------------------------------------------------
    def save_suggestion(self, suggestion: StoredSuggestion) -> None:
        with self._transaction() as connection:
            connection.execute(
                """
                INSERT INTO suggestions (
                    id, diff, file_path, project_path, project_name, title, severity, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    diff = excluded.diff,
                    file_path = excluded.file_path,
                    project_path = excluded.project_path,
                    project_name = excluded.project_name,
                    title = excluded.title,
                    severity = excluded.severity
                """,
                (
                    suggestion.id,
                    suggestion.diff,
                    suggestion.file_path,
                    suggestion.project_path,
                    suggestion.project_name,
                    suggestion.title,
                    suggestion.severity,
                    _as_iso(suggestion.created_at),
                ),
            )

    def get_suggestion(self, suggestion_id: str) -> Optional[StoredSuggestion]:
        cursor = self.connection.execute("SELECT * FROM suggestions WHERE id = ?", (suggestion_id,))
        row = cursor.fetchone()
        if not row:
            return None
        return StoredSuggestion(
            id=row["id"],
            diff=row["diff"],
            file_path=row["file_path"],
            project_path=row["project_path"],
            project_name=row["project_name"],
            title=row["title"],
            severity=row["severity"],
            created_at=_from_iso(row["created_at"]),
        )

    # Apply history -------------------------------------------------------------------
    def record(
        self,
        suggestion_id: str,
        files_modified: Sequence[str],
        backup_id: Optional[str],
        outcome: ApplyStatus | str,
        *,
        error: Optional[str] = None,
    ) -> ApplyRecord:
        """Persist the outcome of an apply run."""
        record = ApplyRecord(
            id=uuid4().hex,
            suggestion_id=suggestion_id,
            files_modified=list(files_modified),
            backup_id=backup_id,
            status=ApplyStatus(outcome),
            error=error,
            applied_at=utc_now(),
        )
        with self._transaction() as connection:
            connection.execute(
                """
                INSERT INTO applies (id, suggestion_id, files_modified, backup_id, status, error, applied_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.suggestion_id,
                    json.dumps(record.files_modified),
                    record.backup_id,
                    record.status.value,
                    record.error,
                    _as_iso(record.applied_at),
                ),
            )
        LOGGER.debug("Recorded %s apply for suggestion %s", record.status.value, suggestion_id)
        return record

    def list_applies(self, limit: int = 20) -> List[ApplyRecord]:
        cursor = self.connection.execute(
            "SELECT * FROM applies ORDER BY applied_at DESC, rowid DESC LIMIT ?",
            (max(limit, 0),),
        )
        return [
            ApplyRecord(
                id=row["id"],
                suggestion_id=row["suggestion_id"],
                files_modified=_load_json(row["files_modified"], default=[]),
                backup_id=row["backup_id"],
                status=row["status"],
                error=row["error"],
                applied_at=_from_iso(row["applied_at"]),
            )
            for row in cursor.fetchall()
        ]

    def mark_rolled_back(self, backup_id: str) -> int:
        """Flag every apply that produced ``backup_id`` as rolled back."""
        with self._transaction() as connection:
            cursor = connection.execute(
                "UPDATE applies SET status = ? WHERE backup_id = ?",
                (ApplyStatus.ROLLED_BACK.value, backup_id),
            )
        return cursor.rowcount


__all__ = ["DEFAULT_DB_PATH", "HistoryStore"]
