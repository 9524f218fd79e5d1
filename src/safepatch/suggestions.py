"""Suggestion lookup strategies and the local JSON suggestion store."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional, Protocol, Sequence

from pydantic import TypeAdapter, ValidationError

from .memory.schema import StoredSuggestion, utc_now
from .memory.store import HistoryStore

LOGGER = logging.getLogger(__name__)

LOCAL_RETENTION = timedelta(days=7)
LOCAL_MAX_PER_PROJECT = 100

_SUGGESTION_LIST = TypeAdapter(List[StoredSuggestion])


class SuggestionSource(Protocol):
    """Anything able to turn a suggestion id into diff text."""

    def lookup(self, suggestion_id: str) -> Optional[str]:
        ...


class LookupStatus(str, Enum):
    FOUND = "found"
    ABSENT = "absent"
    ERROR = "error"


@dataclass(slots=True)
class LookupResult:
    """Outcome of one lookup strategy."""

    status: LookupStatus
    diff: Optional[str] = None
    error: Optional[str] = None
    source: str = ""

    @classmethod
    def found(cls, diff: str, source: str) -> "LookupResult":
        return cls(status=LookupStatus.FOUND, diff=diff, source=source)

    @classmethod
    def absent(cls, source: str) -> "LookupResult":
        return cls(status=LookupStatus.ABSENT, source=source)

    @classmethod
    def failed(cls, error: BaseException | str, source: str) -> "LookupResult":
        return cls(status=LookupStatus.ERROR, error=str(error), source=source)


class LookupStrategy(Protocol):
    name: str

    def find(self, suggestion_id: str) -> LookupResult:
        ...


class SuggestionResolver:
    """Tries lookup strategies in order until one finds the suggestion."""

    def __init__(self, strategies: Sequence[LookupStrategy]) -> None:
        self.strategies = list(strategies)

    def resolve(self, suggestion_id: str) -> LookupResult:
        errors: list[str] = []
        for strategy in self.strategies:
            result = strategy.find(suggestion_id)
            if result.status is LookupStatus.FOUND:
                LOGGER.debug("Loaded suggestion %s from %s", suggestion_id, result.source)
                return result
            if result.status is LookupStatus.ERROR:
                LOGGER.warning("Suggestion lookup via %s failed: %s", result.source, result.error)
                errors.append(f"{result.source}: {result.error}")
        if errors:
            return LookupResult(status=LookupStatus.ABSENT, error="; ".join(errors), source="resolver")
        return LookupResult.absent("resolver")

    def lookup(self, suggestion_id: str) -> Optional[str]:
        return self.resolve(suggestion_id).diff


class DatabaseSuggestionLookup:
    """Reads suggestions from the ``suggestions`` table of a :class:`HistoryStore`."""

    name = "database"

    def __init__(self, store: HistoryStore) -> None:
        self.store = store

    def find(self, suggestion_id: str) -> LookupResult:
        try:
            suggestion = self.store.get_suggestion(suggestion_id)
        except (sqlite3.Error, ValidationError) as error:
            return LookupResult.failed(error, self.name)
        if suggestion is None or not suggestion.diff:
            return LookupResult.absent(self.name)
        return LookupResult.found(suggestion.diff, self.name)


class StaticSuggestionSource:
    """In-memory mapping of suggestion ids to diff text."""

    name = "static"

    def __init__(self, suggestions: Mapping[str, str] | None = None) -> None:
        self.suggestions = dict(suggestions or {})

    def lookup(self, suggestion_id: str) -> Optional[str]:
        return self.suggestions.get(suggestion_id)

    def find(self, suggestion_id: str) -> LookupResult:
        diff = self.lookup(suggestion_id)
        if diff is None:
            return LookupResult.absent(self.name)
        return LookupResult.found(diff, self.name)


class LocalSuggestionStore:
    """JSON file of :class:`StoredSuggestion` records with bounded retention.

    Saving prunes entries older than seven days and keeps at most one hundred
    suggestions per project before appending the new batch.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        clock: Callable[[], datetime] = utc_now,
        retention: timedelta = LOCAL_RETENTION,
        max_per_project: int = LOCAL_MAX_PER_PROJECT,
    ) -> None:
        self.path = Path(path)
        self._clock = clock
        self.retention = retention
        self.max_per_project = max_per_project

    def _load_all(self) -> List[StoredSuggestion]:
        if not self.path.exists():
            return []
        try:
            return _SUGGESTION_LIST.validate_json(self.path.read_bytes())
        except (OSError, ValueError) as error:
            LOGGER.warning("Ignoring unreadable suggestion store %s: %s", self.path, error)
            return []

    def _write_all(self, suggestions: Sequence[StoredSuggestion]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = _SUGGESTION_LIST.dump_python(list(suggestions), mode="json")
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def save(
        self,
        project_path: str,
        project_name: str,
        suggestions: Iterable[Mapping[str, Any]],
    ) -> List[StoredSuggestion]:
        """Store ``suggestions`` for a project and return them with assigned ids."""
        now = self._clock()
        millis = int(time.time() * 1000)
        stored = [
            StoredSuggestion(
                id=f"local-{millis}-{index}",
                diff=str(entry.get("diff", "")),
                file_path=str(entry.get("file_path", "")),
                title=str(entry.get("title", "")),
                severity=str(entry.get("severity", "info")),
                project_path=project_path,
                project_name=project_name,
                created_at=now,
            )
            for index, entry in enumerate(suggestions)
        ]

        cutoff = now - self.retention
        by_project: dict[str, list[StoredSuggestion]] = {}
        for existing in self._load_all():
            if existing.created_at > cutoff:
                by_project.setdefault(existing.project_path, []).append(existing)

        kept: list[StoredSuggestion] = []
        for entries in by_project.values():
            entries.sort(key=lambda item: item.created_at, reverse=True)
            kept.extend(entries[: self.max_per_project])

        self._write_all([*kept, *stored])
        LOGGER.debug("Saved %d suggestion(s) to %s", len(stored), self.path)
        return stored

    def load(self, suggestion_id: str) -> Optional[StoredSuggestion]:
        for suggestion in self._load_all():
            if suggestion.id == suggestion_id:
                return suggestion
        return None

    def load_for_project(self, project_path: str) -> List[StoredSuggestion]:
        return [item for item in self._load_all() if item.project_path == project_path]

    def clear(self) -> None:
        self._write_all([])


class LocalSuggestionLookup:
    """Adapts :class:`LocalSuggestionStore` to the lookup chain."""

    name = "local"

    def __init__(self, store: LocalSuggestionStore) -> None:
        self.store = store

    def find(self, suggestion_id: str) -> LookupResult:
        suggestion = self.store.load(suggestion_id)
        if suggestion is None or not suggestion.diff:
            return LookupResult.absent(self.name)
        return LookupResult.found(suggestion.diff, self.name)


__all__ = [
    "DatabaseSuggestionLookup",
    "LocalSuggestionLookup",
    "LocalSuggestionStore",
    "LookupResult",
    "LookupStatus",
    "LookupStrategy",
    "StaticSuggestionSource",
    "SuggestionResolver",
    "SuggestionSource",
]
