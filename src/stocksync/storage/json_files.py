"""JSON persistence helpers with atomic replace and backup fallback."""

import json
import os
from pathlib import Path
from typing import Any, Callable, Optional, Union

from ..utils.logging import get_logger

logger = get_logger("json_files")

PathLike = Union[str, Path]


def backup_path(path: PathLike) -> Path:
    path = Path(path)
    return path.with_name(path.name + ".bak")


def _load(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def read_json(
    path: PathLike,
    default: Any = None,
    validate: Optional[Callable[[Any], bool]] = None
) -> Any:
    """Read a JSON document, falling back to its backup copy.

    Args:
        path: File to read
        default: Value returned when neither the file nor its backup is usable
        validate: Optional predicate; a document failing it is treated as unreadable

    Returns:
        Parsed document or ``default``
    """
    path = Path(path)
    for candidate in (path, backup_path(path)):
        if not candidate.exists():
            continue
        try:
            data = _load(candidate)
        except (OSError, ValueError) as e:
            logger.warning("Failed to read JSON file", path=str(candidate), error=str(e))
            continue
        if validate is not None and not validate(data):
            logger.warning("JSON file failed validation", path=str(candidate))
            continue
        if candidate != path:
            logger.warning("Recovered JSON document from backup", path=str(path))
        return data
    return default


def write_json_atomic(path: PathLike, data: Any, keep_backup: bool = True) -> None:
    """Write a JSON document through a temp file and rename.

    The previous version is copied to ``<name>.bak`` first so a torn write
    can be recovered by :func:`read_json`.

    Raises:
        OSError: If the document cannot be written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, indent=2, default=str)

    tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        if keep_backup and path.exists():
            backup = backup_path(path)
            backup_tmp = backup.with_name(backup.name + ".tmp")
            with open(path, "rb") as src, open(backup_tmp, "wb") as dst:
                dst.write(src.read())
            os.replace(backup_tmp, backup)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def write_json(path: PathLike, data: Any) -> bool:
    """Best-effort write for audit records; failures are logged, not raised."""
    try:
        write_json_atomic(path, data, keep_backup=False)
        return True
    except OSError as e:
        logger.error("Failed to write JSON file", path=str(path), error=str(e))
        return False


def write_text(path: PathLike, text: str) -> bool:
    """Best-effort plain text write; failures are logged, not raised."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        return True
    except OSError as e:
        logger.error("Failed to write file", path=str(path), error=str(e))
        return False
