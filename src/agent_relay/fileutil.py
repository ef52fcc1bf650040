"""File utilities for agent-relay.

Provides atomic_write() for crash-safe persistence and JSON helpers
built on top of it.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any


def atomic_write(path: Path, content: str) -> None:
    """Write content to *path* atomically via temp-file + rename.

    On success the file contains exactly *content*; on any failure the
    previous file (if any) is untouched. Data is fsynced before the
    rename so a crash right after return cannot lose it.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd = -1  # os.fdopen owns the fd now
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if fd >= 0:
            os.close(fd)
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise


def write_json(path: Path, data: Any) -> None:
    """Serialize *data* as indented JSON and write it atomically."""
    atomic_write(path, json.dumps(data, indent=2, sort_keys=True) + "\n")


def read_json(path: Path, default: Any = None) -> Any:
    """Load JSON from *path*, returning *default* when the file is missing.

    Decode errors propagate so callers can decide how to treat a corrupt
    file.
    """
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))
