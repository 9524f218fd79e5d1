"""Parse unified diff text into structured per-file change sets."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, List, Optional

_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_OLD_FILE_MARKER = "--- "
_NEW_FILE_MARKER = "+++ "
_NULL_PATH = "/dev/null"


class ChangeType(str, Enum):
    """Kind of line carried by a hunk body."""

    ADD = "add"
    REMOVE = "remove"
    CONTEXT = "context"

    @property
    def marker(self) -> str:
        return _MARKERS[self]


_MARKERS = {ChangeType.ADD: "+", ChangeType.REMOVE: "-", ChangeType.CONTEXT: " "}


@dataclass(slots=True)
class Change:
    """Single line of a hunk with its marker stripped."""

    type: ChangeType
    content: str
    line_number: int


@dataclass(slots=True)
class Hunk:
    """Contiguous block of changes anchored to original-file coordinates."""

    old_start: int
    old_lines: int = 1
    new_start: int = 1
    new_lines: int = 1
    changes: List[Change] = field(default_factory=list)

    @property
    def additions(self) -> int:
        return sum(1 for change in self.changes if change.type is ChangeType.ADD)

    @property
    def deletions(self) -> int:
        return sum(1 for change in self.changes if change.type is ChangeType.REMOVE)


@dataclass(slots=True)
class ParsedDiff:
    """All hunks targeting one file, in the order they appeared in the diff."""

    file_path: str
    old_path: Optional[str] = None
    new_path: Optional[str] = None
    hunks: List[Hunk] = field(default_factory=list)

    def subset(self, indices: Iterable[int]) -> "ParsedDiff":
        """Return a copy holding only the hunks at ``indices``.

        Hunks keep their original relative order regardless of the order in
        which ``indices`` are given; out-of-range indices are ignored.
        """
        wanted = set(indices)
        selected = [hunk for position, hunk in enumerate(self.hunks) if position in wanted]
        return replace(self, hunks=selected)


def _normalise_line_endings(text: str) -> str:
    """Convert CRLF to LF; a lone CR is line content and is kept."""
    return text.replace("\r\n", "\n")


def _strip_prefix(path: str, prefix: str) -> str:
    return path[len(prefix):] if path.startswith(prefix) else path


def _count(value: str | None) -> int:
    """Return the number of lines represented in a hunk header."""
    return int(value) if value else 1


class DiffParser:
    """Single-pass unified diff parser and its inverse renderer."""

    @staticmethod
    def parse(diff_text: str) -> list[ParsedDiff]:
        """Parse ``diff_text`` into one :class:`ParsedDiff` per ``---`` header.

        Malformed input never raises; unrecognised lines are skipped and the
        validator is responsible for catching diffs that do not fit the file.
        """
        diffs: list[ParsedDiff] = []
        current_diff: ParsedDiff | None = None
        current_hunk: Hunk | None = None
        line_number = 0

        for line in _normalise_line_endings(diff_text or "").split("\n"):
            if line.startswith(_OLD_FILE_MARKER):
                if current_diff is not None:
                    if current_hunk is not None:
                        current_diff.hunks.append(current_hunk)
                    diffs.append(current_diff)
                old_path = _strip_prefix(line[len(_OLD_FILE_MARKER):], "a/")
                current_diff = ParsedDiff(file_path=old_path, old_path=old_path)
                current_hunk = None
            elif line.startswith(_NEW_FILE_MARKER) and current_diff is not None:
                new_path = _strip_prefix(line[len(_NEW_FILE_MARKER):], "b/")
                current_diff.new_path = new_path
                current_diff.file_path = new_path
            elif line.startswith("@@"):
                if current_hunk is not None and current_diff is not None:
                    current_diff.hunks.append(current_hunk)
                current_hunk = None
                match = _HUNK_HEADER.match(line)
                if match:
                    old_start = int(match.group("old_start"))
                    current_hunk = Hunk(
                        old_start=old_start,
                        old_lines=_count(match.group("old_count")),
                        new_start=int(match.group("new_start")),
                        new_lines=_count(match.group("new_count")),
                    )
                    line_number = old_start
            elif current_hunk is not None:
                if line.startswith("+"):
                    current_hunk.changes.append(Change(ChangeType.ADD, line[1:], line_number))
                elif line.startswith("-"):
                    current_hunk.changes.append(Change(ChangeType.REMOVE, line[1:], line_number))
                    line_number += 1
                elif line.startswith(" "):
                    current_hunk.changes.append(Change(ChangeType.CONTEXT, line[1:], line_number))
                    line_number += 1

        if current_diff is not None:
            if current_hunk is not None:
                current_diff.hunks.append(current_hunk)
            diffs.append(current_diff)
        return diffs

    @staticmethod
    def generate(diff: ParsedDiff) -> str:
        """Render ``diff`` back into unified diff text."""
        old_path = diff.old_path or diff.file_path
        new_path = diff.new_path or diff.file_path
        lines = [
            f"--- {old_path}" if old_path == _NULL_PATH else f"--- a/{old_path}",
            f"+++ {new_path}" if new_path == _NULL_PATH else f"+++ b/{new_path}",
        ]
        for hunk in diff.hunks:
            lines.append(f"@@ -{hunk.old_start},{hunk.old_lines} +{hunk.new_start},{hunk.new_lines} @@")
            lines.extend(f"{change.type.marker}{change.content}" for change in hunk.changes)
        return "".join(f"{line}\n" for line in lines)


__all__ = ["Change", "ChangeType", "DiffParser", "Hunk", "ParsedDiff"]
