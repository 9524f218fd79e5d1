from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

import pytest

from safepatch.backup.manager import BackupManager
from safepatch.errors import BackupNotFoundError, ErrorKind, IOFailureError, NotFoundError
from safepatch.memory.schema import ApplyStatus
from safepatch.orchestrator import ApplyOptions, ApplyOrchestrator, ApplyState
from safepatch.preview import Decision
from safepatch.suggestions import StaticSuggestionSource

APP_DIFF = (
    "--- a/src/app.py\n"
    "+++ b/src/app.py\n"
    "@@ -1,2 +1,2 @@\n"
    " def greet(name):\n"
    '-    return "hello " + name\n'
    '+    return f"hello {name}"\n'
)
UTIL_DIFF = "--- a/src/util.py\n+++ b/src/util.py\n@@ -1,2 +1,2 @@\n-VALUE = 1\n+VALUE = 10\n OTHER = 2\n"
BAD_UTIL_DIFF = "--- a/src/util.py\n+++ b/src/util.py\n@@ -30,1 +30,1 @@\n-MISSING = 0\n+MISSING = 1\n"
TWO_HUNK_APP_DIFF = (
    "--- a/src/app.py\n"
    "+++ b/src/app.py\n"
    "@@ -1,2 +1,2 @@\n"
    " def greet(name):\n"
    '-    return "hello " + name\n'
    '+    return "hi " + name\n'
    "@@ -5,2 +5,2 @@\n"
    " def farewell(name):\n"
    '-    return "bye " + name\n'
    '+    return "later " + name\n'
)


class RecordingHistory:
    def __init__(self) -> None:
        self.records: List[tuple] = []
        self.rolled_back: List[str] = []

    def record(
        self,
        suggestion_id: str,
        files_modified: Sequence[str],
        backup_id: Optional[str],
        outcome: ApplyStatus,
        *,
        error: Optional[str] = None,
    ) -> None:
        self.records.append((suggestion_id, list(files_modified), backup_id, outcome, error))

    def mark_rolled_back(self, backup_id: str) -> int:
        self.rolled_back.append(backup_id)
        return 1


class ExplodingHistory:
    def record(self, *args, **kwargs) -> None:
        raise RuntimeError("history database is down")

    def mark_rolled_back(self, backup_id: str) -> int:
        raise RuntimeError("history database is down")


class FailingBackups(BackupManager):
    def create_backup(self, files, reason: str = "apply") -> str:
        raise IOFailureError(self.backup_dir, "disk full")


def _orchestrator(tiny_project, suggestions, **kwargs) -> ApplyOrchestrator:
    backups = kwargs.pop("backups", None) or BackupManager(tiny_project.backup_dir, project_root=tiny_project.root)
    return ApplyOrchestrator(
        StaticSuggestionSource(suggestions),
        backups,
        project_root=tiny_project.root,
        **kwargs,
    )


def test_successful_apply_modifies_files_backs_up_and_records(tiny_project) -> None:
    original_app = tiny_project.read("src/app.py")
    original_util = tiny_project.read("src/util.py")
    history = RecordingHistory()
    orchestrator = _orchestrator(tiny_project, {"s1": APP_DIFF + UTIL_DIFF}, history=history)

    outcome = orchestrator.apply("s1")

    assert outcome.success
    assert outcome.state is ApplyState.SUCCESS
    assert outcome.files_modified == ["src/app.py", "src/util.py"]
    assert outcome.backup_id is not None
    assert 'return f"hello {name}"' in tiny_project.read("src/app.py")
    assert tiny_project.read("src/util.py") == "VALUE = 10\nOTHER = 2\n"
    assert history.records == [("s1", ["src/app.py", "src/util.py"], outcome.backup_id, ApplyStatus.SUCCESS, None)]

    # restoring the backup returns both files to their pre-apply bytes
    orchestrator.backups.restore(outcome.backup_id)
    assert tiny_project.read("src/app.py") == original_app
    assert tiny_project.read("src/util.py") == original_util


def test_unknown_suggestion_reports_not_found(tiny_project) -> None:
    outcome = _orchestrator(tiny_project, {}).apply("missing")

    assert not outcome.success
    assert outcome.error_kind is ErrorKind.NOT_FOUND
    assert outcome.error == "Suggestion not found: missing"


def test_suggestion_without_diff_reports_parse_empty(tiny_project) -> None:
    outcome = _orchestrator(tiny_project, {"s1": "Consider renaming greet."}).apply("s1")

    assert outcome.error_kind is ErrorKind.PARSE_EMPTY
    assert outcome.error == "No valid diff found in suggestion"


def test_validation_failure_in_second_file_changes_nothing(tiny_project) -> None:
    original_app = tiny_project.read("src/app.py")
    original_util = tiny_project.read("src/util.py")
    orchestrator = _orchestrator(tiny_project, {"s1": APP_DIFF + BAD_UTIL_DIFF})

    outcome = orchestrator.apply("s1")

    assert not outcome.success
    assert outcome.error_kind is ErrorKind.VALIDATION_FAILED
    assert "src/util.py" in outcome.error
    assert "src/app.py" not in outcome.error
    assert tiny_project.read("src/app.py") == original_app
    assert tiny_project.read("src/util.py") == original_util
    assert orchestrator.list_undoable() == []


def test_dry_run_reports_files_without_writing(tiny_project) -> None:
    original_app = tiny_project.read("src/app.py")
    orchestrator = _orchestrator(tiny_project, {"s1": APP_DIFF + UTIL_DIFF})

    outcome = orchestrator.apply("s1", ApplyOptions(dry_run=True))

    assert outcome.success
    assert outcome.state is ApplyState.DRY_RUN_DONE
    assert outcome.files_modified == ["src/app.py", "src/util.py"]
    assert outcome.backup_id is None
    assert tiny_project.read("src/app.py") == original_app
    assert orchestrator.list_undoable() == []


def test_apply_failure_rolls_back_every_file(tiny_project) -> None:
    original_app = tiny_project.read("src/app.py")
    history = RecordingHistory()
    orchestrator = _orchestrator(tiny_project, {"s1": APP_DIFF + BAD_UTIL_DIFF}, history=history)

    outcome = orchestrator.apply("s1", ApplyOptions(force=True))

    assert not outcome.success
    assert outcome.state is ApplyState.ROLLED_BACK
    assert outcome.error_kind is ErrorKind.PARTIAL_APPLY_FAILURE
    assert outcome.rolled_back
    assert outcome.rollback_error is None
    assert "src/util.py" in outcome.error
    assert tiny_project.read("src/app.py") == original_app
    assert history.records[-1][3] is ApplyStatus.ROLLED_BACK


def test_apply_failure_without_backup_is_not_rolled_back(tiny_project) -> None:
    orchestrator = _orchestrator(tiny_project, {"s1": APP_DIFF + BAD_UTIL_DIFF})

    outcome = orchestrator.apply("s1", ApplyOptions(force=True, create_backup=False))

    assert outcome.state is ApplyState.FAILED
    assert outcome.error_kind is ErrorKind.PARTIAL_APPLY_FAILURE
    assert not outcome.rolled_back
    assert outcome.files_modified == ["src/app.py"]
    assert 'return f"hello {name}"' in tiny_project.read("src/app.py")


@pytest.mark.parametrize("force", [False, True])
def test_diff_escaping_project_root_never_writes(tiny_project, force: bool) -> None:
    outside = tiny_project.root.parent / "outside.txt"
    outside.write_text("secret\n", encoding="utf-8")
    diff = "--- a/../outside.txt\n+++ b/../outside.txt\n@@ -1 +1 @@\n-secret\n+pwned\n"
    orchestrator = _orchestrator(tiny_project, {"s1": diff})

    outcome = orchestrator.apply("s1", ApplyOptions(create_backup=False, force=force))

    assert not outcome.success
    assert "Path escapes the project root: ../outside.txt" in outcome.error
    assert outside.read_text(encoding="utf-8") == "secret\n"


def test_absolute_diff_path_is_a_validation_error(tiny_project) -> None:
    outside = tiny_project.root.parent / "absolute.txt"
    outside.write_text("secret\n", encoding="utf-8")
    diff = f"--- {outside.as_posix()}\n+++ {outside.as_posix()}\n@@ -1 +1 @@\n-secret\n+pwned\n"

    outcome = _orchestrator(tiny_project, {"s1": diff}).apply("s1", ApplyOptions(create_backup=False))

    assert outcome.error_kind is ErrorKind.VALIDATION_FAILED
    assert "Absolute paths are not permitted" in outcome.error
    assert outside.read_text(encoding="utf-8") == "secret\n"


def test_backup_failure_stops_before_any_mutation(tiny_project) -> None:
    original_app = tiny_project.read("src/app.py")
    backups = FailingBackups(tiny_project.backup_dir, project_root=tiny_project.root)
    orchestrator = _orchestrator(tiny_project, {"s1": APP_DIFF}, backups=backups)

    outcome = orchestrator.apply("s1")

    assert outcome.error_kind is ErrorKind.IO_FAILURE
    assert "disk full" in outcome.error
    assert tiny_project.read("src/app.py") == original_app


def test_stale_context_warns_unless_strict(tiny_project) -> None:
    tiny_project.write("src/util.py", "VALUE = 1\nOTHER = 3\n")
    orchestrator = _orchestrator(tiny_project, {"s1": UTIL_DIFF})

    strict_outcome = orchestrator.apply("s1", ApplyOptions(strict=True))
    assert strict_outcome.error_kind is ErrorKind.VALIDATION_FAILED

    outcome = orchestrator.apply("s1")
    assert outcome.success
    assert len(outcome.warnings) == 1
    assert outcome.warnings[0].startswith("src/util.py: Line 2 doesn't match context")


def test_history_failures_do_not_affect_the_outcome(tiny_project) -> None:
    orchestrator = _orchestrator(tiny_project, {"s1": APP_DIFF}, history=ExplodingHistory())

    outcome = orchestrator.apply("s1")

    assert outcome.success
    assert orchestrator.undo(outcome.backup_id) == 1


def test_confirm_skip_drops_a_file(tiny_project) -> None:
    original_app = tiny_project.read("src/app.py")

    def confirm(diff, summary):
        return Decision.skip() if diff.file_path == "src/app.py" else Decision.apply()

    outcome = _orchestrator(tiny_project, {"s1": APP_DIFF + UTIL_DIFF}, confirm=confirm).apply("s1")

    assert outcome.success
    assert outcome.files_modified == ["src/util.py"]
    assert tiny_project.read("src/app.py") == original_app


def test_confirm_quit_cancels_without_side_effects(tiny_project) -> None:
    original_util = tiny_project.read("src/util.py")
    orchestrator = _orchestrator(tiny_project, {"s1": UTIL_DIFF}, confirm=lambda diff, summary: Decision.quit())

    outcome = orchestrator.apply("s1")

    assert outcome.state is ApplyState.CANCELLED
    assert not outcome.success
    assert tiny_project.read("src/util.py") == original_util
    assert orchestrator.list_undoable() == []


def test_confirm_receives_summary_and_partial_selection_applies_chosen_hunks(tiny_project) -> None:
    seen = []

    def confirm(diff, summary):
        seen.append((summary.additions, summary.deletions, summary.hunk_count))
        return Decision.partial([1])

    outcome = _orchestrator(tiny_project, {"s1": TWO_HUNK_APP_DIFF}, confirm=confirm).apply("s1")

    assert outcome.success
    assert seen == [(2, 2, 2)]
    content = tiny_project.read("src/app.py")
    assert 'return "hello " + name' in content
    assert 'return "later " + name' in content


def test_preview_simulates_without_writing(tiny_project) -> None:
    original_util = tiny_project.read("src/util.py")
    orchestrator = _orchestrator(tiny_project, {"s1": UTIL_DIFF + BAD_UTIL_DIFF.replace("util", "app")})

    previews = orchestrator.preview("s1")

    assert [item.summary.file_path for item in previews] == ["src/util.py", "src/app.py"]
    assert previews[0].validation.valid
    assert previews[0].result_lines == ["VALUE = 10", "OTHER = 2", ""]
    assert not previews[1].validation.valid
    assert previews[1].result_lines is None
    assert tiny_project.read("src/util.py") == original_util

    with pytest.raises(NotFoundError):
        orchestrator.preview("unknown")


def test_undo_restores_and_marks_history(tiny_project) -> None:
    original_util = tiny_project.read("src/util.py")
    history = RecordingHistory()
    orchestrator = _orchestrator(tiny_project, {"s1": UTIL_DIFF}, history=history)
    outcome = orchestrator.apply("s1")

    assert orchestrator.undo(outcome.backup_id) == 1
    assert tiny_project.read("src/util.py") == original_util
    assert history.rolled_back == [outcome.backup_id]

    with pytest.raises(BackupNotFoundError):
        orchestrator.undo("no-such-backup")


def test_undo_latest_since_and_clean(tiny_project) -> None:
    clock_time = [datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)]
    backups = BackupManager(tiny_project.backup_dir, project_root=tiny_project.root, clock=lambda: clock_time[0])
    orchestrator = _orchestrator(
        tiny_project,
        {"s1": UTIL_DIFF, "s2": APP_DIFF},
        backups=backups,
    )
    original_util = tiny_project.read("src/util.py")
    original_app = tiny_project.read("src/app.py")

    assert orchestrator.apply("s1").success
    clock_time[0] += timedelta(hours=1)
    assert orchestrator.apply("s2").success

    assert [info.reason for info in orchestrator.list_undoable()] == ["apply-s2", "apply-s1"]
    assert orchestrator.undo_latest(1) == 1
    assert tiny_project.read("src/app.py") == original_app
    assert tiny_project.read("src/util.py") != original_util

    assert orchestrator.undo_since(datetime(2024, 3, 1, 8, 0)) == 2
    assert tiny_project.read("src/util.py") == original_util

    assert orchestrator.clean_backups(keep=1) == 1
    assert [info.reason for info in orchestrator.list_undoable()] == ["apply-s2"]


def test_apply_emits_structured_telemetry(tiny_project, caplog: pytest.LogCaptureFixture) -> None:
    orchestrator = _orchestrator(tiny_project, {"s1": UTIL_DIFF})

    with caplog.at_level(logging.INFO, logger="safepatch.telemetry"):
        outcome = orchestrator.apply("s1")

    events = [
        json.loads(record.getMessage())
        for record in caplog.records
        if record.name == "safepatch.telemetry"
    ]
    names = [event["event"] for event in events]
    assert names == ["apply_started", "apply_backup_created", "apply_succeeded"]
    assert events[-1]["backup_id"] == outcome.backup_id
    assert events[-1]["files"] == ["src/util.py"]
