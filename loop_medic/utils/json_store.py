"""Whole-file JSON persistence tolerant of missing or corrupt files."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def read_json(path: Path, default: Callable[[], T]) -> Any:
    """Read a JSON document, falling back to a default on any failure.

    Args:
        path: File to read.
        default: Factory for the value returned when the file is missing,
            unreadable or malformed.

    Returns:
        The parsed document or ``default()``.
    """
    path = Path(path)
    if not path.exists():
        return default()
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable state file {path}: {e}")
        return default()


def write_json(path: Path, data: Any) -> bool:
    """Write a JSON document pretty-printed, replacing the file atomically.

    Args:
        path: Destination file; parent directories are created.
        data: JSON-serializable document.

    Returns:
        True on success, False if the write failed (logged).
    """
    path = Path(path)
    tmp = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp, path)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write state file {path}: {e}")
        if tmp and os.path.exists(tmp):
            os.unlink(tmp)
        return False
