"""CLI commands for applying, previewing and undoing suggested diffs."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer

from .backup.manager import BackupManager
from .config import DEFAULT_CONFIG_NAME, ConfigError, SafePatchConfig, load_config
from .diff.parser import ParsedDiff
from .errors import SafePatchError
from .memory.store import HistoryStore
from .orchestrator import ApplyOptions, ApplyOrchestrator, ApplyOutcome, ApplyState
from .preview import ConfirmCallback, Decision, DiffSummary, describe_hunk, render_diff
from .suggestions import (
    DatabaseSuggestionLookup,
    LocalSuggestionLookup,
    LocalSuggestionStore,
    SuggestionResolver,
)

APP_HELP = "Safely apply, preview and undo suggested code changes."
UNDO_LIST_LIMIT = 10

app = typer.Typer(help=APP_HELP)


def _configure_logging(config: SafePatchConfig, verbose: bool) -> None:
    level_name = "DEBUG" if verbose else config.logging.level.upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(level)


def _load(config_path: str, verbose: bool = False) -> SafePatchConfig:
    try:
        config = load_config(Path(config_path))
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    _configure_logging(config, verbose)
    return config


@contextmanager
def _orchestrator(
    config: SafePatchConfig, confirm: Optional[ConfirmCallback] = None
) -> Iterator[ApplyOrchestrator]:
    with HistoryStore.from_config(config) as store:
        resolver = SuggestionResolver(
            [
                DatabaseSuggestionLookup(store),
                LocalSuggestionLookup(LocalSuggestionStore(config.suggestions_path)),
            ]
        )
        backups = BackupManager(config.backup_dir, project_root=config.project_root)
        yield ApplyOrchestrator(
            resolver,
            backups,
            project_root=config.project_root,
            history=store,
            confirm=confirm,
        )


def _parse_hunk_selection(raw: str, hunk_count: int) -> List[int]:
    """Turn ``"1, 3"`` into zero-based hunk indices, ignoring anything out of range."""
    indices: List[int] = []
    for token in raw.replace(" ", "").split(","):
        if not token.isdigit():
            continue
        index = int(token) - 1
        if 0 <= index < hunk_count and index not in indices:
            indices.append(index)
    return indices


def _prompt_decision(diff: ParsedDiff, summary: DiffSummary) -> Decision:
    typer.echo("")
    typer.echo(f"File: {summary.file_path}")
    typer.echo(f"Changes: +{summary.additions} -{summary.deletions} ({summary.hunk_count} hunk(s))")
    for line in summary.preview:
        typer.echo(f"  {line}")
    if summary.remaining:
        typer.echo(f"  ... {summary.remaining} more line(s)")

    while True:
        answer = typer.prompt("Apply? [y]es/[n]o/[d]iff/[p]artial/[q]uit", default="y").strip().lower()
        if answer in {"y", "yes"}:
            return Decision.apply()
        if answer in {"n", "no"}:
            return Decision.skip()
        if answer in {"q", "quit"}:
            return Decision.quit()
        if answer in {"d", "diff"}:
            for line in render_diff(diff):
                typer.echo(line)
            continue
        if answer in {"p", "partial"}:
            for index, hunk in enumerate(diff.hunks):
                typer.echo(f"  {describe_hunk(hunk, index)}")
            raw = typer.prompt("Hunks to apply (comma separated)", default="")
            return Decision.partial(_parse_hunk_selection(raw, len(diff.hunks)))
        typer.echo("Please answer y, n, d, p or q.")


def _report_outcome(outcome: ApplyOutcome) -> None:
    if outcome.warnings:
        typer.echo("Warnings:")
        for warning in outcome.warnings:
            typer.echo(f"  - {warning}")

    if outcome.state is ApplyState.CANCELLED:
        typer.echo("Apply cancelled; no files were changed.")
        return

    if outcome.success:
        if outcome.state is ApplyState.DRY_RUN_DONE:
            typer.echo(f"Dry run: would modify {len(outcome.files_modified)} file(s):")
        else:
            typer.echo(f"Applied {outcome.suggestion_id} to {len(outcome.files_modified)} file(s):")
        for path in outcome.files_modified:
            typer.echo(f"- {path}")
        if outcome.backup_id:
            typer.echo(f"Backup: {outcome.backup_id} (undo with `safepatch undo {outcome.backup_id}`)")
        return

    kind = outcome.error_kind.value if outcome.error_kind else "error"
    typer.echo(f"Apply failed [{kind}]: {outcome.error}")
    if outcome.rolled_back:
        typer.echo(f"Changes were rolled back from backup {outcome.backup_id}.")
    if outcome.rollback_error:
        typer.echo(f"Rollback error: {outcome.rollback_error}")
    raise typer.Exit(code=1)


@app.command()
def apply(
    suggestion_id: str = typer.Argument(..., help="Identifier of the suggestion to apply."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the SafePatch configuration file.",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate and report without writing files."),
    force: bool = typer.Option(False, "--force", help="Continue past validation errors."),
    no_backup: bool = typer.Option(False, "--no-backup", help="Skip the pre-apply snapshot."),
    strict: bool = typer.Option(False, "--strict", help="Treat stale context lines as errors."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply every file without prompting."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Apply a stored suggestion to the project."""
    cfg = _load(config, verbose)
    options = ApplyOptions(
        dry_run=dry_run,
        force=force,
        create_backup=cfg.backup.enabled and not no_backup,
        strict=strict or cfg.apply.strict,
    )
    confirm = None if (yes or dry_run) else _prompt_decision
    with _orchestrator(cfg, confirm=confirm) as orchestrator:
        outcome = orchestrator.apply(suggestion_id, options)
    _report_outcome(outcome)


@app.command()
def preview(
    suggestion_id: str = typer.Argument(..., help="Identifier of the suggestion to preview."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the SafePatch configuration file.",
    ),
    show_diff: bool = typer.Option(False, "--diff", help="Print the full diff for each file."),
) -> None:
    """Show what a suggestion would change without touching any file."""
    cfg = _load(config)
    try:
        with _orchestrator(cfg) as orchestrator:
            previews = orchestrator.preview(suggestion_id, strict=cfg.apply.strict)
    except SafePatchError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error

    for item in previews:
        summary = item.summary
        status = "ok" if item.validation.valid else "invalid"
        typer.echo(
            f"{summary.file_path}: +{summary.additions} -{summary.deletions} "
            f"({summary.hunk_count} hunk(s)) [{status}]"
        )
        for error in item.validation.errors:
            typer.echo(f"  error: {error}")
        for warning in item.validation.warnings:
            typer.echo(f"  warning: {warning}")
        if show_diff:
            for line in render_diff(item.diff):
                typer.echo(f"  {line}")


@app.command()
def undo(
    backup_id: Optional[str] = typer.Argument(None, help="Backup to restore; prompts when omitted."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the SafePatch configuration file.",
    ),
    latest: Optional[int] = typer.Option(None, "--latest", help="Undo the N most recent applies."),
    list_only: bool = typer.Option(False, "--list", help="List undoable backups and exit."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Restore files from a backup taken before an apply."""
    cfg = _load(config)
    with _orchestrator(cfg) as orchestrator:
        backups = orchestrator.list_undoable(UNDO_LIST_LIMIT)
        if list_only:
            if not backups:
                typer.echo("No backups available.")
            for info in backups:
                typer.echo(f"{info.id}  {info.timestamp.isoformat()}  {info.file_count} file(s)  {info.reason}")
            return

        if latest is not None:
            if not yes and not typer.confirm(f"Undo the {latest} most recent apply(s)?"):
                typer.echo("Undo cancelled.")
                return
            restored = orchestrator.undo_latest(latest)
            typer.echo(f"Restored {restored} file(s).")
            return

        if backup_id is None:
            if not backups:
                typer.echo("No backups available.")
                return
            for position, info in enumerate(backups, start=1):
                typer.echo(f"{position}. {info.id} ({info.file_count} file(s), {info.reason})")
            choice = typer.prompt("Backup to restore (number)", default="1")
            if not choice.isdigit() or not 1 <= int(choice) <= len(backups):
                typer.echo(f"Invalid selection: {choice}")
                raise typer.Exit(code=1)
            backup_id = backups[int(choice) - 1].id
        elif not yes and not typer.confirm(f"Restore backup {backup_id}?"):
            typer.echo("Undo cancelled.")
            return

        try:
            restored = orchestrator.undo(backup_id)
        except SafePatchError as error:
            typer.echo(str(error))
            raise typer.Exit(code=1) from error
    typer.echo(f"Restored {restored} file(s) from backup {backup_id}.")


@app.command()
def history(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the SafePatch configuration file.",
    ),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries to show."),
) -> None:
    """List recorded applies, newest first."""
    cfg = _load(config)
    with HistoryStore.from_config(cfg) as store:
        records = store.list_applies(limit)
    if not records:
        typer.echo("No applies recorded.")
        return
    for record in records:
        files = ", ".join(record.files_modified) or "-"
        typer.echo(
            f"{record.applied_at.isoformat()}  {record.suggestion_id}  [{record.status.value}]  "
            f"backup={record.backup_id or '-'}  files={files}"
        )
        if record.error:
            typer.echo(f"  error: {record.error}")


@app.command()
def clean(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the SafePatch configuration file.",
    ),
    keep: Optional[int] = typer.Option(None, "--keep", help="Number of backups to keep."),
) -> None:
    """Delete all but the newest backups."""
    cfg = _load(config)
    with _orchestrator(cfg) as orchestrator:
        removed = orchestrator.clean_backups(cfg.backup.keep if keep is None else keep)
    typer.echo(f"Removed {removed} old backup(s).")


if __name__ == "__main__":
    app()
