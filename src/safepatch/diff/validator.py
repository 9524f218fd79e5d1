"""Check parsed diffs against the current content of their target files."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence, Tuple

from .parser import ChangeType, Hunk, ParsedDiff

_CRLF = "\r\n"
_LF = "\n"


@dataclass(slots=True)
class ValidationResult:
    """Fatal errors and non-fatal staleness warnings for one target file."""

    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def detect_newline(content: str) -> str:
    """Return the newline convention used by ``content``."""
    return _CRLF if _CRLF in content else _LF


def split_file_lines(content: str) -> Tuple[list[str], str]:
    """Split ``content`` on its own newline convention.

    A trailing newline yields a final empty element so that joining the
    lines with the returned separator reproduces ``content`` exactly.
    """
    newline = detect_newline(content)
    return content.split(newline), newline


def read_text_exact(path: Path) -> str:
    """Read ``path`` as UTF-8 without newline translation."""
    return path.read_bytes().decode("utf-8")


def _validate_hunk(hunk: Hunk, file_lines: Sequence[str], *, strict: bool) -> Tuple[list[str], list[str]]:
    errors: list[str] = []
    warnings: list[str] = []

    if hunk.old_start < 1 or hunk.old_start > len(file_lines) + 1:
        errors.append(f"Hunk starts at line {hunk.old_start}, but file only has {len(file_lines)} lines")
        return errors, warnings

    cursor = hunk.old_start - 1
    for change in hunk.changes:
        if change.type is ChangeType.ADD:
            continue
        if cursor >= len(file_lines):
            errors.append(f"Context line {cursor + 1} is beyond end of file")
            break
        found = file_lines[cursor]
        if found != change.content:
            message = (
                f"Line {cursor + 1} doesn't match context:\n"
                f'  Expected: "{change.content}"\n'
                f'  Found:    "{found}"'
            )
            (errors if strict else warnings).append(message)
        cursor += 1
    return errors, warnings


class DiffValidator:
    """Bounds and staleness checks for a :class:`ParsedDiff`."""

    @staticmethod
    def validate(diff: ParsedDiff, target_path: Path | str, *, strict: bool = False) -> ValidationResult:
        """Validate every hunk of ``diff`` against ``target_path``.

        Content mismatches are warnings unless ``strict`` is set, in which case
        they are reported as errors and the result is invalid.
        """
        path = Path(target_path)
        try:
            content = read_text_exact(path)
        except FileNotFoundError:
            return ValidationResult(valid=False, errors=[f"File not found: {path.as_posix()}"])
        except (OSError, UnicodeDecodeError) as error:
            return ValidationResult(valid=False, errors=[f"Failed to read file: {error}"])
        return DiffValidator.validate_content(diff, content, strict=strict)

    @staticmethod
    def validate_content(diff: ParsedDiff, content: str, *, strict: bool = False) -> ValidationResult:
        """Validate ``diff`` against in-memory file ``content``."""
        file_lines, _ = split_file_lines(content)
        errors: list[str] = []
        warnings: list[str] = []
        for hunk in diff.hunks:
            hunk_errors, hunk_warnings = _validate_hunk(hunk, file_lines, strict=strict)
            errors.extend(hunk_errors)
            warnings.extend(hunk_warnings)
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    @staticmethod
    def can_apply_cleanly(diff: ParsedDiff, file_content: str) -> bool:
        """Return ``True`` when every hunk fits and matches ``file_content`` exactly."""
        file_lines, _ = split_file_lines(file_content)
        for hunk in diff.hunks:
            if hunk.old_start < 1 or hunk.old_start > len(file_lines) + 1:
                return False
            cursor = hunk.old_start - 1
            for change in hunk.changes:
                if change.type is ChangeType.ADD:
                    continue
                if cursor >= len(file_lines) or file_lines[cursor] != change.content:
                    return False
                cursor += 1
        return True


__all__ = [
    "DiffValidator",
    "ValidationResult",
    "detect_newline",
    "read_text_exact",
    "split_file_lines",
]
