"""Preview data and confirmation decisions consumed by interactive front ends."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .diff.parser import DiffParser, Hunk, ParsedDiff
from .diff.validator import ValidationResult

PREVIEW_CHANGE_LIMIT = 5


@dataclass(slots=True)
class DiffSummary:
    """Counts shown to a user before deciding whether to apply a diff."""

    file_path: str
    additions: int
    deletions: int
    hunk_count: int
    preview: Tuple[str, ...] = ()
    remaining: int = 0


@dataclass(slots=True)
class FilePreview:
    """Summary, validation and simulated result for one target file."""

    diff: ParsedDiff
    summary: DiffSummary
    validation: ValidationResult
    result_lines: Optional[List[str]] = None


class DecisionAction(str, Enum):
    APPLY = "apply"
    SKIP = "skip"
    QUIT = "quit"
    PARTIAL = "partial"


@dataclass(slots=True)
class Decision:
    """User answer for one diff; ``selected_hunks`` only matters for partial."""

    action: DecisionAction
    selected_hunks: Tuple[int, ...] = field(default_factory=tuple)

    @classmethod
    def apply(cls) -> "Decision":
        return cls(DecisionAction.APPLY)

    @classmethod
    def skip(cls) -> "Decision":
        return cls(DecisionAction.SKIP)

    @classmethod
    def quit(cls) -> "Decision":
        return cls(DecisionAction.QUIT)

    @classmethod
    def partial(cls, hunks: Tuple[int, ...] | List[int]) -> "Decision":
        return cls(DecisionAction.PARTIAL, tuple(hunks))


ConfirmCallback = Callable[[ParsedDiff, DiffSummary], Decision]


def summarize(diff: ParsedDiff) -> DiffSummary:
    """Count additions, deletions and hunks, with a short preview of the first hunk."""
    additions = sum(hunk.additions for hunk in diff.hunks)
    deletions = sum(hunk.deletions for hunk in diff.hunks)
    preview: Tuple[str, ...] = ()
    remaining = 0
    if diff.hunks:
        first = diff.hunks[0].changes
        preview = tuple(f"{change.type.marker}{change.content}" for change in first[:PREVIEW_CHANGE_LIMIT])
        remaining = max(len(first) - PREVIEW_CHANGE_LIMIT, 0)
    return DiffSummary(
        file_path=diff.file_path,
        additions=additions,
        deletions=deletions,
        hunk_count=len(diff.hunks),
        preview=preview,
        remaining=remaining,
    )


def describe_hunk(hunk: Hunk, index: int) -> str:
    """One-line label used when selecting hunks to apply."""
    end = hunk.old_start + hunk.old_lines
    return f"Hunk {index + 1}: Lines {hunk.old_start}-{end} (+{hunk.additions} -{hunk.deletions})"


def render_diff(diff: ParsedDiff) -> List[str]:
    """Full unified diff text for ``diff``, split into display lines."""
    return DiffParser.generate(diff).splitlines()


__all__ = [
    "ConfirmCallback",
    "Decision",
    "DecisionAction",
    "DiffSummary",
    "FilePreview",
    "describe_hunk",
    "render_diff",
    "summarize",
]
