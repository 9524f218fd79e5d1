"""Apply validated diffs to files with cumulative offset bookkeeping."""

from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import MutableSequence, Optional, Tuple

from ..errors import ErrorKind, IOFailureError, SafePatchError
from .parser import ChangeType, Hunk, ParsedDiff
from .validator import DiffValidator, read_text_exact, split_file_lines


@dataclass(slots=True)
class ApplyResult:
    """Outcome of applying one :class:`ParsedDiff` to one file."""

    success: bool
    file_path: str
    lines_changed: int = 0
    error: Optional[str] = None


def _apply_hunk(hunk: Hunk, lines: MutableSequence[str], offset: int) -> Tuple[int, int]:
    """Apply ``hunk`` to ``lines`` in place.

    Removals are recorded against the pre-hunk coordinates and insertions
    against the post-hunk coordinates, then removals run in descending order
    followed by insertions in ascending order. Returns ``(lines_changed,
    net_offset)`` where ``net_offset`` is insertions minus deletions.
    """
    source_index = hunk.old_start - 1 + offset
    target_index = source_index
    removals: list[int] = []
    insertions: list[Tuple[int, str]] = []

    for change in hunk.changes:
        if change.type is ChangeType.REMOVE:
            removals.append(source_index)
            source_index += 1
        elif change.type is ChangeType.ADD:
            insertions.append((target_index, change.content))
            target_index += 1
        else:
            source_index += 1
            target_index += 1

    for index in sorted(removals, reverse=True):
        del lines[index]
    for index, content in sorted(insertions, key=lambda item: item[0]):
        lines.insert(index, content)

    return len(removals) + len(insertions), len(insertions) - len(removals)


def apply_hunks(diff: ParsedDiff, lines: MutableSequence[str]) -> int:
    """Apply every hunk of ``diff`` to ``lines`` and return the lines changed."""
    lines_changed = 0
    offset = 0
    for hunk in diff.hunks:
        changed, delta = _apply_hunk(hunk, lines, offset)
        lines_changed += changed
        offset += delta
    return lines_changed


def _replace_file(path: Path, content: str) -> None:
    """Swap ``content`` into ``path`` with a single rename."""
    with tempfile.NamedTemporaryFile("wb", dir=path.parent, prefix=f".{path.name}.", delete=False) as handle:
        handle.write(content.encode("utf-8"))
        temp_path = Path(handle.name)
    try:
        shutil.copymode(path, temp_path)
        os.replace(temp_path, path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise


class DiffApplier:
    """Mutates files according to a validated :class:`ParsedDiff`."""

    @staticmethod
    def apply(diff: ParsedDiff, target_path: Path | str, *, strict: bool = False) -> ApplyResult:
        path = Path(target_path)
        validation = DiffValidator.validate(diff, path, strict=strict)
        if not validation.valid:
            return ApplyResult(
                success=False,
                file_path=path.as_posix(),
                error=f"Validation failed: {', '.join(validation.errors)}",
            )
        try:
            lines, newline = split_file_lines(read_text_exact(path))
            lines_changed = apply_hunks(diff, lines)
            _replace_file(path, newline.join(lines))
        except (OSError, UnicodeError) as error:
            return ApplyResult(success=False, file_path=path.as_posix(), error=str(error))
        return ApplyResult(success=True, file_path=path.as_posix(), lines_changed=lines_changed)

    @staticmethod
    def dry_run(diff: ParsedDiff, target_path: Path | str, *, strict: bool = False) -> list[str]:
        """Return the lines ``target_path`` would hold after applying ``diff``.

        Raises :class:`SafePatchError` with ``VALIDATION_FAILED`` when a hunk does
        not fit the file, and :class:`IOFailureError` when it cannot be read.
        """
        path = Path(target_path)
        try:
            content = read_text_exact(path)
        except (OSError, UnicodeError) as error:
            raise IOFailureError(path, error) from error
        validation = DiffValidator.validate_content(diff, content, strict=strict)
        if not validation.valid:
            raise SafePatchError(
                f"Validation failed: {', '.join(validation.errors)}",
                kind=ErrorKind.VALIDATION_FAILED,
                details={"path": path.as_posix(), "errors": list(validation.errors)},
            )
        lines, _ = split_file_lines(content)
        apply_hunks(diff, lines)
        return lines


__all__ = ["ApplyResult", "DiffApplier", "apply_hunks"]
