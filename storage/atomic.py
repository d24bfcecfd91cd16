"""Crash-safe file primitives.

A reader of a file written through :func:`atomic_write_text` sees either the
previous content or the complete new content, never a mix: the new content
is written to a sibling temporary file, synced, and renamed over the target.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

TMP_SUFFIX = ".tmp"


def fsync_dir(path: Path) -> None:
    """Persist the directory entry of ``path`` (no-op where unsupported)."""

    if os.name != "posix":  # pragma: no cover - directories cannot be opened on Windows
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_text(path: Path, data: str, encoding: str = "utf-8") -> None:
    """Replace ``path`` with ``data`` atomically.

    Raises ``OSError`` on failure. When the failure happens before the
    rename the temporary file is removed and ``path`` is untouched.
    """

    path = Path(path)
    tmp = tempfile.NamedTemporaryFile(
        "w",
        encoding=encoding,
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=TMP_SUFFIX,
        delete=False,
    )
    tmp_name = tmp.name
    try:
        with tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    fsync_dir(path.parent)


def atomic_write_json(path: Path, obj: Any) -> None:
    atomic_write_text(path, json.dumps(obj, ensure_ascii=False, indent=2))


def append_line(path: Path, line: str, encoding: str = "utf-8") -> None:
    """Append one newline-terminated line and sync it to disk."""

    payload = (line.rstrip("\n") + "\n").encode(encoding)
    fd = os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o644)
    try:
        os.write(fd, payload)
        os.fsync(fd)
    finally:
        os.close(fd)


def read_json(path: Path, default: Any = None) -> Any:
    """Return the parsed JSON document at ``path`` or ``default``.

    Missing, unreadable and malformed files are all treated as absent.
    """

    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return default
    except (OSError, ValueError) as exc:
        logger.warning("unreadable json treated as absent", path=str(path), error=str(exc))
        return default
