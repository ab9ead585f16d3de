"""Crash-safe replacement of JSON state files."""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def _sync_directory(directory: Path) -> None:
    """Flush the rename to disk where the platform allows it."""
    if not hasattr(os, "O_DIRECTORY"):
        return
    try:
        fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_json(path: Path, data: Any, *, indent: int = 2) -> None:
    """Replace *path* with *data* serialized as JSON.

    The payload is serialized before any file is touched, written to a
    sibling ``.<name>.*.tmp`` file, fsynced and renamed over *path*.
    Readers see the old file or the new one, and a failed write removes
    its temp file before re-raising.
    """
    content = json.dumps(data, indent=indent, ensure_ascii=False) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp_path = Path(tmp.name)
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)
        raise
    _sync_directory(path.parent)
