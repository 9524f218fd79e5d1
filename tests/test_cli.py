from __future__ import annotations

from typer.testing import CliRunner

from safepatch.cli import app
from safepatch.config import load_config
from safepatch.memory.schema import StoredSuggestion
from safepatch.memory.store import HistoryStore
from safepatch.suggestions import LocalSuggestionStore

UTIL_DIFF = "--- a/src/util.py\n+++ b/src/util.py\n@@ -1,2 +1,2 @@\n-VALUE = 1\n+VALUE = 10\n OTHER = 2\n"


def _seed(tiny_project, suggestion_id: str, diff: str) -> None:
    config = load_config(tiny_project.config_path, env={})
    with HistoryStore.from_config(config) as store:
        store.save_suggestion(StoredSuggestion(id=suggestion_id, diff=diff, file_path="src/util.py"))


def _invoke(tiny_project, *args: str, input: str | None = None):
    runner = CliRunner()
    return runner.invoke(
        app,
        [*args, "--config", str(tiny_project.config_path)],
        input=input,
        catch_exceptions=False,
    )


def test_apply_history_and_undo_round_trip(tiny_project) -> None:
    _seed(tiny_project, "s1", UTIL_DIFF)

    result = _invoke(tiny_project, "apply", "s1", "--yes")
    assert result.exit_code == 0, result.output
    assert "Applied s1 to 1 file(s)" in result.output
    assert tiny_project.read("src/util.py") == "VALUE = 10\nOTHER = 2\n"

    history = _invoke(tiny_project, "history")
    assert history.exit_code == 0, history.output
    assert "s1" in history.output
    assert "[success]" in history.output

    listing = _invoke(tiny_project, "undo", "--list")
    backup_id = listing.output.split()[0]
    assert (tiny_project.backup_dir / backup_id).is_dir()

    undo = _invoke(tiny_project, "undo", backup_id, "--yes")
    assert undo.exit_code == 0, undo.output
    assert f"Restored 1 file(s) from backup {backup_id}." in undo.output
    assert tiny_project.read("src/util.py") == "VALUE = 1\nOTHER = 2\n"
    assert "[rolled_back]" in _invoke(tiny_project, "history").output


def test_apply_unknown_suggestion_exits_with_error(tiny_project) -> None:
    result = _invoke(tiny_project, "apply", "missing", "--yes")

    assert result.exit_code == 1
    assert "Suggestion not found: missing" in result.output


def test_apply_reads_suggestions_from_local_store(tiny_project) -> None:
    config = load_config(tiny_project.config_path, env={})
    saved = LocalSuggestionStore(config.suggestions_path).save(
        str(tiny_project.root), "tiny", [{"diff": UTIL_DIFF, "file_path": "src/util.py"}]
    )

    result = _invoke(tiny_project, "apply", saved[0].id, "--yes", "--no-backup")

    assert result.exit_code == 0, result.output
    assert "Backup:" not in result.output
    assert tiny_project.read("src/util.py") == "VALUE = 10\nOTHER = 2\n"


def test_interactive_skip_cancels_apply(tiny_project) -> None:
    _seed(tiny_project, "s1", UTIL_DIFF)

    result = _invoke(tiny_project, "apply", "s1", input="n\n")

    assert result.exit_code == 0, result.output
    assert "File: src/util.py" in result.output
    assert "Apply cancelled" in result.output
    assert tiny_project.read("src/util.py") == "VALUE = 1\nOTHER = 2\n"


def test_dry_run_and_preview_do_not_write(tiny_project) -> None:
    _seed(tiny_project, "s1", UTIL_DIFF)

    dry = _invoke(tiny_project, "apply", "s1", "--dry-run")
    preview = _invoke(tiny_project, "preview", "s1", "--diff")

    assert dry.exit_code == 0, dry.output
    assert "Dry run: would modify 1 file(s)" in dry.output
    assert preview.exit_code == 0, preview.output
    assert "src/util.py: +1 -1 (1 hunk(s)) [ok]" in preview.output
    assert "+VALUE = 10" in preview.output
    assert tiny_project.read("src/util.py") == "VALUE = 1\nOTHER = 2\n"


def test_validation_failure_exits_non_zero(tiny_project) -> None:
    _seed(tiny_project, "bad", "--- a/src/util.py\n+++ b/src/util.py\n@@ -40 +40 @@\n-x\n+y\n")

    result = _invoke(tiny_project, "apply", "bad", "--yes")

    assert result.exit_code == 1
    assert "Apply failed [validation_failed]" in result.output


def test_undo_without_backups_and_clean(tiny_project) -> None:
    assert "No backups available." in _invoke(tiny_project, "undo").output

    _seed(tiny_project, "s1", UTIL_DIFF)
    assert _invoke(tiny_project, "apply", "s1", "--yes").exit_code == 0

    clean = _invoke(tiny_project, "clean", "--keep", "0")
    assert clean.exit_code == 0, clean.output
    assert "Removed 1 old backup(s)." in clean.output


def test_invalid_config_exits_with_message(tiny_project) -> None:
    tiny_project.config_path.write_text("- not\n- a mapping\n", encoding="utf-8")

    result = _invoke(tiny_project, "history")

    assert result.exit_code == 1
    assert "mapping" in result.output
