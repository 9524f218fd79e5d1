"""Point-in-time file snapshots that make applies reversible."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from ..errors import BackupNotFoundError, IOFailureError
from ..memory.schema import BackupInfo, BackupMetadata, utc_now

LOGGER = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"
_ID_FORMAT = "%Y-%m-%dT%H-%M-%S"
_MAX_ID_SUFFIX = 99

Clock = Callable[[], datetime]


class BackupManager:
    """Creates, lists, restores and prunes snapshot directories.

    Each backup lives in ``<backup_dir>/<id>/`` and mirrors the project-relative
    paths of the files it captured, plus a ``metadata.json`` record written
    once every copy has landed. Backups are never modified after creation;
    they are only restored from or deleted wholesale.
    """

    def __init__(
        self,
        backup_dir: Path | str,
        *,
        project_root: Path | str | None = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.backup_dir = Path(backup_dir)
        self.project_root = Path(project_root) if project_root is not None else Path.cwd()
        self._clock = clock or utc_now

    # Creation ------------------------------------------------------------------------
    def create_backup(self, files: Iterable[Path | str], reason: str = "apply") -> str:
        """Snapshot ``files`` and return the new backup id."""
        timestamp = self._clock()
        backup_id, backup_path = self._claim_backup_dir(timestamp.strftime(_ID_FORMAT))
        root = self.project_root.resolve()
        copied: List[str] = []
        try:
            for entry in files:
                source = self._resolve_live_path(entry)
                try:
                    relative = source.relative_to(root)
                except ValueError:
                    raise IOFailureError(source, "file is outside the project root") from None
                if not source.is_file():
                    LOGGER.warning("Skipping backup of missing file %s", source)
                    continue
                relative_key = relative.as_posix()
                if relative_key in copied:
                    continue
                destination = backup_path / relative
                try:
                    destination.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(source, destination)
                except OSError as error:
                    raise IOFailureError(source, error) from error
                copied.append(relative_key)

            metadata = BackupMetadata(id=backup_id, timestamp=timestamp, files=copied, reason=reason)
            self._write_metadata(backup_path, metadata)
        except Exception:
            shutil.rmtree(backup_path, ignore_errors=True)
            raise

        LOGGER.debug("Created backup %s with %d file(s)", backup_id, len(copied))
        return backup_id

    def _resolve_live_path(self, entry: Path | str) -> Path:
        path = Path(entry)
        if not path.is_absolute():
            path = self.project_root / path
        return path.resolve()

    def _claim_backup_dir(self, base_id: str) -> Tuple[str, Path]:
        """Atomically create a unique snapshot directory derived from ``base_id``."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        for attempt in range(_MAX_ID_SUFFIX + 1):
            candidate = base_id if attempt == 0 else f"{base_id}-{attempt:02d}"
            path = self.backup_dir / candidate
            try:
                path.mkdir()
            except FileExistsError:
                continue
            except OSError as error:
                raise IOFailureError(path, error) from error
            return candidate, path
        raise IOFailureError(self.backup_dir / base_id, "too many backups created within one second")

    @staticmethod
    def _write_metadata(backup_path: Path, metadata: BackupMetadata) -> None:
        target = backup_path / METADATA_FILENAME
        try:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=backup_path, prefix=".metadata.", delete=False
            ) as handle:
                handle.write(metadata.model_dump_json(indent=2))
                temp_path = Path(handle.name)
            os.replace(temp_path, target)
        except OSError as error:
            raise IOFailureError(target, error) from error

    # Queries -------------------------------------------------------------------------
    def _backup_path(self, backup_id: str) -> Optional[Path]:
        if not backup_id or backup_id in {".", ".."} or PurePosixPath(backup_id).name != backup_id:
            return None
        if "\\" in backup_id:
            return None
        return self.backup_dir / backup_id

    def get_backup_metadata(self, backup_id: str) -> Optional[BackupMetadata]:
        """Return the metadata for ``backup_id`` or ``None`` when it is absent."""
        backup_path = self._backup_path(backup_id)
        if backup_path is None:
            return None
        metadata_path = backup_path / METADATA_FILENAME
        if not metadata_path.is_file():
            return None
        try:
            return BackupMetadata.model_validate_json(metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as error:
            raise IOFailureError(metadata_path, error) from error

    def list_backups(self) -> List[BackupInfo]:
        """Return every readable backup, newest first."""
        if not self.backup_dir.is_dir():
            return []
        backups: List[BackupInfo] = []
        for entry in self.backup_dir.iterdir():
            if not entry.is_dir():
                continue
            try:
                metadata = self.get_backup_metadata(entry.name)
            except IOFailureError as error:
                LOGGER.warning("Ignoring unreadable backup %s: %s", entry.name, error)
                continue
            if metadata is not None:
                backups.append(BackupInfo.from_metadata(metadata))
        backups.sort(key=lambda info: (info.timestamp, info.id), reverse=True)
        return backups

    # Restore / delete ----------------------------------------------------------------
    def restore(self, backup_id: str, files: Optional[Sequence[str]] = None) -> Tuple[str, ...]:
        """Copy snapshot files back over the live tree.

        Restores ``files`` when given, otherwise everything the backup
        recorded. Snapshot copies that no longer exist are skipped. Returns the
        relative paths that were restored.
        """
        metadata = self.get_backup_metadata(backup_id)
        if metadata is None:
            raise BackupNotFoundError(backup_id)

        backup_path = self.backup_dir / metadata.id
        requested = list(files) if files is not None else list(metadata.files)
        restored: List[str] = []
        for relative in requested:
            relative_path = PurePosixPath(Path(relative).as_posix())
            if relative_path.is_absolute() or ".." in relative_path.parts:
                LOGGER.warning("Refusing to restore unsafe path %s from backup %s", relative, backup_id)
                continue
            source = backup_path / relative_path
            if not source.is_file():
                LOGGER.debug("Snapshot copy %s missing from backup %s; skipping", relative, backup_id)
                continue
            target = self.project_root / relative_path
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
            except OSError as error:
                raise IOFailureError(target, error) from error
            restored.append(relative_path.as_posix())
        return tuple(restored)

    def delete_backup(self, backup_id: str) -> None:
        """Remove a backup directory; unknown ids are ignored."""
        backup_path = self._backup_path(backup_id)
        if backup_path is None or not backup_path.exists():
            return
        shutil.rmtree(backup_path, ignore_errors=True)

    def clean_old_backups(self, keep: int = 10) -> int:
        """Delete all but the ``keep`` newest backups and return how many were removed."""
        backups = self.list_backups()
        stale = backups[max(keep, 0):]
        for info in stale:
            self.delete_backup(info.id)
        if stale:
            LOGGER.info("Removed %d old backup(s) from %s", len(stale), self.backup_dir)
        return len(stale)


__all__ = ["BackupManager", "METADATA_FILENAME"]
