"""Typed records for backups, stored suggestions and apply history."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class ApplyStatus(str, Enum):
    """Lifecycle states recorded for an apply operation."""

    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class BackupMetadata(RecordModel):
    """Metadata persisted next to a backup snapshot; immutable once written."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    timestamp: datetime = Field(default_factory=utc_now)
    files: List[str] = Field(default_factory=list)
    reason: str = "apply"


class BackupInfo(RecordModel):
    """Lightweight listing view of a backup."""

    id: str
    timestamp: datetime
    file_count: int
    reason: str

    @classmethod
    def from_metadata(cls, metadata: BackupMetadata) -> "BackupInfo":
        return cls(
            id=metadata.id,
            timestamp=metadata.timestamp,
            file_count=len(metadata.files),
            reason=metadata.reason,
        )


class StoredSuggestion(RecordModel):
    """Suggestion persisted locally or in the history database."""

    id: str
    diff: str
    file_path: str = ""
    project_path: str = ""
    project_name: str = ""
    title: str = ""
    severity: str = "info"
    created_at: datetime = Field(default_factory=utc_now)


class ApplyRecord(RecordModel):
    """Recorded outcome of an apply run."""

    id: str
    suggestion_id: str
    files_modified: List[str] = Field(default_factory=list)
    backup_id: Optional[str] = None
    status: ApplyStatus = ApplyStatus.SUCCESS
    error: Optional[str] = None
    applied_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "ApplyRecord",
    "ApplyStatus",
    "BackupInfo",
    "BackupMetadata",
    "RecordModel",
    "StoredSuggestion",
    "utc_now",
]
