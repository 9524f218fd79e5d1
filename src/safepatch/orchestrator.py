"""Apply pipeline: load, parse, validate, confirm, back up, apply, roll back."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from .backup.manager import BackupManager
from .diff.applier import ApplyResult, DiffApplier
from .diff.parser import DiffParser, ParsedDiff
from .diff.validator import DiffValidator, ValidationResult
from .errors import ErrorKind, NotFoundError, SafePatchError
from .memory.schema import ApplyStatus, BackupInfo
from .preview import ConfirmCallback, DecisionAction, FilePreview, summarize
from .suggestions import SuggestionSource
from .telemetry import emit_event

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


class ApplyState(str, Enum):
    LOADING = "loading"
    PARSING = "parsing"
    VALIDATING = "validating"
    CONFIRMING = "confirming"
    DRY_RUN_DONE = "dry_run_done"
    BACKING_UP = "backing_up"
    APPLYING = "applying"
    SUCCESS = "success"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class ApplyOptions:
    """Flags controlling a single apply run."""

    dry_run: bool = False
    force: bool = False
    create_backup: bool = True
    strict: bool = False


@dataclass(slots=True)
class ApplyOutcome:
    """Result of :meth:`ApplyOrchestrator.apply`."""

    success: bool
    suggestion_id: str
    state: ApplyState
    files_modified: List[str] = field(default_factory=list)
    backup_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    warnings: List[str] = field(default_factory=list)
    rolled_back: bool = False
    rollback_error: Optional[str] = None


class HistorySink(Protocol):
    """Receives apply outcomes; failures here never affect an apply."""

    def record(
        self,
        suggestion_id: str,
        files_modified: Sequence[str],
        backup_id: Optional[str],
        outcome: ApplyStatus,
        *,
        error: Optional[str] = None,
    ) -> object:
        ...

    def mark_rolled_back(self, backup_id: str) -> int:
        ...


class ApplyOrchestrator:
    """Drives one suggestion through the apply state machine.

    Every failure on the apply path is reported through :class:`ApplyOutcome`
    rather than raised. Validation is concurrent and read-only; application is
    sequential and, when a backup exists, all-or-nothing across files.
    """

    def __init__(
        self,
        source: SuggestionSource,
        backups: BackupManager,
        *,
        project_root: Path | str | None = None,
        history: Optional[HistorySink] = None,
        confirm: Optional[ConfirmCallback] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.source = source
        self.backups = backups
        self.project_root = Path(project_root) if project_root is not None else backups.project_root
        self.history = history
        self.confirm = confirm
        self.max_workers = max(1, max_workers)

    def _target(self, diff: ParsedDiff) -> Path:
        return self.project_root / diff.file_path

    def _path_error(self, diff: ParsedDiff) -> Optional[str]:
        """Return why ``diff`` may not touch its target, or ``None`` when it stays inside the project."""
        relative = Path(diff.file_path)
        if relative.is_absolute():
            return f"Absolute paths are not permitted in diffs: {diff.file_path}"
        if ".." in relative.parts:
            return f"Path escapes the project root: {diff.file_path}"
        root = self.project_root.resolve()
        try:
            (root / relative).resolve().relative_to(root)
        except ValueError:
            return f"Path escapes the project root: {diff.file_path}"
        return None

    def _validate_one(self, diff: ParsedDiff, *, strict: bool) -> ValidationResult:
        path_error = self._path_error(diff)
        if path_error is not None:
            return ValidationResult(valid=False, errors=[path_error])
        return DiffValidator.validate(diff, self._target(diff), strict=strict)

    # Apply ---------------------------------------------------------------------------
    def apply(self, suggestion_id: str, options: Optional[ApplyOptions] = None) -> ApplyOutcome:
        options = options or ApplyOptions()
        emit_event("apply_started", suggestion_id=suggestion_id, dry_run=options.dry_run, force=options.force)

        state = ApplyState.LOADING
        diff_text = self.source.lookup(suggestion_id)
        if not diff_text:
            return self._fail(
                suggestion_id, state, ErrorKind.NOT_FOUND, f"Suggestion not found: {suggestion_id}"
            )

        state = ApplyState.PARSING
        diffs = DiffParser.parse(diff_text)
        if not diffs:
            return self._fail(suggestion_id, state, ErrorKind.PARSE_EMPTY, "No valid diff found in suggestion")

        state = ApplyState.VALIDATING
        results = self._validate_all(diffs, strict=options.strict)
        warnings: List[str] = []
        errors: List[str] = []
        for diff, result in zip(diffs, results):
            warnings.extend(f"{diff.file_path}: {warning}" for warning in result.warnings)
            errors.extend(f"{diff.file_path}: {error}" for error in result.errors)
        if errors:
            if not options.force:
                emit_event("apply_validation_failed", suggestion_id=suggestion_id, errors=errors)
                outcome = self._fail(
                    suggestion_id,
                    state,
                    ErrorKind.VALIDATION_FAILED,
                    "Validation failed:\n" + "\n".join(errors),
                )
                outcome.warnings = warnings
                return outcome
            LOGGER.warning("Forcing apply of %s despite %d validation error(s)", suggestion_id, len(errors))
            warnings.extend(errors)

        if self.confirm is not None:
            state = ApplyState.CONFIRMING
            selected = self._confirm_each(diffs)
            if selected is None or not selected:
                emit_event("apply_cancelled", suggestion_id=suggestion_id)
                return ApplyOutcome(
                    success=False,
                    suggestion_id=suggestion_id,
                    state=ApplyState.CANCELLED,
                    error="Apply cancelled",
                    warnings=warnings,
                )
            diffs = selected

        if options.dry_run:
            files = [diff.file_path for diff in diffs]
            emit_event("apply_dry_run", suggestion_id=suggestion_id, files=files)
            return ApplyOutcome(
                success=True,
                suggestion_id=suggestion_id,
                state=ApplyState.DRY_RUN_DONE,
                files_modified=files,
                warnings=warnings,
            )

        backup_id: Optional[str] = None
        if options.create_backup:
            state = ApplyState.BACKING_UP
            try:
                backup_id = self.backups.create_backup(
                    [self._target(diff) for diff in diffs], reason=f"apply-{suggestion_id}"
                )
            except (SafePatchError, OSError) as error:
                outcome = self._fail(suggestion_id, state, ErrorKind.IO_FAILURE, f"Backup failed: {error}")
                outcome.warnings = warnings
                return outcome
            emit_event("apply_backup_created", suggestion_id=suggestion_id, backup_id=backup_id)

        state = ApplyState.APPLYING
        applied: List[str] = []
        failures: List[ApplyResult] = []
        for diff in diffs:
            path_error = self._path_error(diff)
            if path_error is not None:
                result = ApplyResult(success=False, file_path=diff.file_path, error=path_error)
            else:
                result = DiffApplier.apply(diff, self._target(diff), strict=options.strict)
            if result.success:
                applied.append(diff.file_path)
                LOGGER.debug("Applied %s (%d line(s) changed)", diff.file_path, result.lines_changed)
            else:
                failures.append(result)
                LOGGER.warning("Failed to apply %s: %s", diff.file_path, result.error)

        if failures:
            return self._roll_back(suggestion_id, backup_id, applied, failures, warnings)

        self._record(suggestion_id, applied, backup_id, ApplyStatus.SUCCESS)
        emit_event("apply_succeeded", suggestion_id=suggestion_id, files=applied, backup_id=backup_id)
        return ApplyOutcome(
            success=True,
            suggestion_id=suggestion_id,
            state=ApplyState.SUCCESS,
            files_modified=applied,
            backup_id=backup_id,
            warnings=warnings,
        )

    def _validate_all(self, diffs: Sequence[ParsedDiff], *, strict: bool) -> List[ValidationResult]:
        workers = min(self.max_workers, len(diffs))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self._validate_one, diff, strict=strict)
                for diff in diffs
            ]
            return [future.result() for future in futures]

    def _confirm_each(self, diffs: Sequence[ParsedDiff]) -> Optional[List[ParsedDiff]]:
        """Ask the confirm callback about each diff; ``None`` means quit."""
        selected: List[ParsedDiff] = []
        for diff in diffs:
            decision = self.confirm(diff, summarize(diff))
            if decision.action is DecisionAction.QUIT:
                return None
            if decision.action is DecisionAction.SKIP:
                LOGGER.info("Skipping %s", diff.file_path)
                continue
            if decision.action is DecisionAction.PARTIAL:
                partial = diff.subset(decision.selected_hunks)
                if not partial.hunks:
                    LOGGER.info("No hunks selected for %s; skipping", diff.file_path)
                    continue
                selected.append(partial)
                continue
            selected.append(diff)
        return selected

    def _roll_back(
        self,
        suggestion_id: str,
        backup_id: Optional[str],
        applied: List[str],
        failures: Sequence[ApplyResult],
        warnings: List[str],
    ) -> ApplyOutcome:
        summary = "; ".join(f"{failure.file_path}: {failure.error}" for failure in failures)
        error = f"Failed to apply {len(failures)} file(s): {summary}"

        if backup_id is None:
            self._record(suggestion_id, applied, None, ApplyStatus.FAILED, error=error)
            emit_event("apply_failed", suggestion_id=suggestion_id, files=applied, error=error)
            return ApplyOutcome(
                success=False,
                suggestion_id=suggestion_id,
                state=ApplyState.FAILED,
                files_modified=applied,
                error=error,
                error_kind=ErrorKind.PARTIAL_APPLY_FAILURE,
                warnings=warnings,
            )

        rollback_error: Optional[str] = None
        try:
            self.backups.restore(backup_id)
        except (SafePatchError, OSError) as restore_error:
            rollback_error = str(restore_error)
            LOGGER.error("Rollback from backup %s failed: %s", backup_id, restore_error)

        self._record(suggestion_id, applied, backup_id, ApplyStatus.ROLLED_BACK, error=error)
        emit_event(
            "apply_rolled_back",
            suggestion_id=suggestion_id,
            backup_id=backup_id,
            error=error,
            rollback_error=rollback_error,
        )
        return ApplyOutcome(
            success=False,
            suggestion_id=suggestion_id,
            state=ApplyState.ROLLED_BACK,
            files_modified=applied,
            backup_id=backup_id,
            error=error,
            error_kind=ErrorKind.PARTIAL_APPLY_FAILURE,
            warnings=warnings,
            rolled_back=True,
            rollback_error=rollback_error,
        )

    @staticmethod
    def _fail(suggestion_id: str, state: ApplyState, kind: ErrorKind, message: str) -> ApplyOutcome:
        LOGGER.info("Apply of %s stopped while %s: %s", suggestion_id, state.value, message)
        emit_event("apply_failed", suggestion_id=suggestion_id, state=state, error_kind=kind)
        return ApplyOutcome(
            success=False,
            suggestion_id=suggestion_id,
            state=ApplyState.FAILED,
            error=message,
            error_kind=kind,
        )

    def _record(
        self,
        suggestion_id: str,
        files: Sequence[str],
        backup_id: Optional[str],
        status: ApplyStatus,
        *,
        error: Optional[str] = None,
    ) -> None:
        if self.history is None:
            return
        try:
            self.history.record(suggestion_id, list(files), backup_id, status, error=error)
        except Exception as exc:
            LOGGER.warning("Failed to record apply history for %s: %s", suggestion_id, exc)

    # Preview -------------------------------------------------------------------------
    def preview(self, suggestion_id: str, *, strict: bool = False) -> List[FilePreview]:
        """Summarise, validate and simulate every diff of a suggestion without writing."""
        diff_text = self.source.lookup(suggestion_id)
        if not diff_text:
            raise NotFoundError(f"Suggestion not found: {suggestion_id}")
        diffs = DiffParser.parse(diff_text)
        if not diffs:
            raise SafePatchError("No valid diff found in suggestion", kind=ErrorKind.PARSE_EMPTY)

        previews: List[FilePreview] = []
        for diff, validation in zip(diffs, self._validate_all(diffs, strict=strict)):
            result_lines: Optional[List[str]] = None
            if validation.valid:
                try:
                    result_lines = DiffApplier.dry_run(diff, self._target(diff), strict=strict)
                except SafePatchError as error:
                    validation.valid = False
                    validation.errors.append(str(error))
            previews.append(
                FilePreview(diff=diff, summary=summarize(diff), validation=validation, result_lines=result_lines)
            )
        return previews

    # Undo ----------------------------------------------------------------------------
    def undo(self, backup_id: str) -> int:
        """Restore ``backup_id`` over the project and return the restored file count."""
        restored = self.backups.restore(backup_id)
        if self.history is not None:
            try:
                self.history.mark_rolled_back(backup_id)
            except Exception as exc:
                LOGGER.warning("Failed to mark backup %s as rolled back: %s", backup_id, exc)
        emit_event("undo_completed", backup_id=backup_id, files=restored)
        return len(restored)

    def list_undoable(self, limit: int = 10) -> List[BackupInfo]:
        return self.backups.list_backups()[: max(limit, 0)]

    def undo_latest(self, count: int = 1) -> int:
        """Undo the ``count`` newest backups, newest first."""
        return sum(self.undo(info.id) for info in self.list_undoable(count))

    def undo_since(self, moment: datetime) -> int:
        """Undo every backup taken at or after ``moment``, newest first."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        restored = 0
        for info in self.backups.list_backups():
            if info.timestamp < moment:
                break
            restored += self.undo(info.id)
        return restored

    def clean_backups(self, keep: int = 10) -> int:
        removed = self.backups.clean_old_backups(keep)
        emit_event("backups_cleaned", removed=removed, keep=keep)
        return removed


__all__ = [
    "ApplyOptions",
    "ApplyOrchestrator",
    "ApplyOutcome",
    "ApplyState",
    "HistorySink",
]
