"""Durable file storage: JSON tables and advisory locking."""

from .file_lock import FileLock, LockTimeoutError, lock_from_settings
from .json_files import read_json, write_json, write_json_atomic, write_text, backup_path

__all__ = [
    "FileLock",
    "LockTimeoutError",
    "lock_from_settings",
    "read_json",
    "write_json",
    "write_json_atomic",
    "write_text",
    "backup_path",
]
