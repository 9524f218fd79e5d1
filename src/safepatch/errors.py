"""Error taxonomy shared by the patch engine, backups and orchestrator."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Mapping


class ErrorKind(str, Enum):
    """Structured failure categories reported alongside human summaries."""

    NOT_FOUND = "not_found"
    PARSE_EMPTY = "parse_empty"
    VALIDATION_FAILED = "validation_failed"
    IO_FAILURE = "io_failure"
    PARTIAL_APPLY_FAILURE = "partial_apply_failure"


class SafePatchError(RuntimeError):
    """Base error carrying an :class:`ErrorKind` and structured details."""

    kind: ErrorKind = ErrorKind.IO_FAILURE

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.details: dict[str, Any] = dict(details or {})


class NotFoundError(SafePatchError):
    """Raised when a suggestion or backup id cannot be resolved."""

    kind = ErrorKind.NOT_FOUND


class BackupNotFoundError(NotFoundError):
    """Raised when a backup id has no metadata on disk."""

    def __init__(self, backup_id: str) -> None:
        super().__init__(f"Backup not found: {backup_id}", details={"backup_id": backup_id})
        self.backup_id = backup_id


class IOFailureError(SafePatchError):
    """Raised when reading, writing or copying ``path`` fails."""

    kind = ErrorKind.IO_FAILURE

    def __init__(self, path: Path | str, cause: BaseException | str) -> None:
        self.path = Path(path)
        self.cause = cause
        super().__init__(
            f"{self.path.as_posix()}: {cause}",
            details={"path": self.path.as_posix(), "cause": str(cause)},
        )


__all__ = [
    "BackupNotFoundError",
    "ErrorKind",
    "IOFailureError",
    "NotFoundError",
    "SafePatchError",
]
