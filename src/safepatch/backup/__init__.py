"""Backup capture, restore and retention."""

from .manager import METADATA_FILENAME, BackupManager

__all__ = ["BackupManager", "METADATA_FILENAME"]
