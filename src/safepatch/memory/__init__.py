"""Persistent records for suggestions, backups and apply history."""

from .schema import ApplyRecord, ApplyStatus, BackupInfo, BackupMetadata, StoredSuggestion
from .store import HistoryStore

__all__ = [
    "ApplyRecord",
    "ApplyStatus",
    "BackupInfo",
    "BackupMetadata",
    "HistoryStore",
    "StoredSuggestion",
]
