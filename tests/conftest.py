from __future__ import annotations

import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@dataclass(slots=True)
class TinyProject:
    """Fixture payload representing the synthetic project under test."""

    root: Path
    config_path: Path

    def write(self, relative: str, content: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content.encode("utf-8"))
        return path

    def read(self, relative: str) -> str:
        return (self.root / relative).read_bytes().decode("utf-8")

    @property
    def backup_dir(self) -> Path:
        return self.root / ".safepatch" / "backups"


@pytest.fixture()
def tiny_project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> TinyProject:
    """Create a small project with two source files and a config file."""

    monkeypatch.delenv("SAFEPATCH_BACKUP_DIR", raising=False)
    project_root = tmp_path / "tiny-project"
    project_root.mkdir()

    project = TinyProject(root=project_root, config_path=project_root / "safepatch.yaml")
    project.write(
        "src/app.py",
        textwrap.dedent(
            """
            def greet(name):
                return "hello " + name


            def farewell(name):
                return "bye " + name
            """
        ).lstrip(),
    )
    project.write("src/util.py", "VALUE = 1\nOTHER = 2\n")
    project.config_path.write_text(
        textwrap.dedent(
            """
            project:
              root: .
            backup:
              enabled: true
              keep: 10
            logging:
              level: WARNING
            """
        ).lstrip(),
        encoding="utf-8",
    )
    return project
