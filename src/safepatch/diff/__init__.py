"""Unified diff parsing, validation and application."""

from .applier import ApplyResult, DiffApplier
from .parser import Change, ChangeType, DiffParser, Hunk, ParsedDiff
from .validator import DiffValidator, ValidationResult

__all__ = [
    "ApplyResult",
    "Change",
    "ChangeType",
    "DiffApplier",
    "DiffParser",
    "DiffValidator",
    "Hunk",
    "ParsedDiff",
    "ValidationResult",
]
