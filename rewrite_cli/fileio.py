"""Atomic file writes shared by the artifact cache and the patch emitter."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


def atomic_write(path: Path, data: Union[bytes, str], encoding: str = "utf-8") -> None:
    """Write *data* to *path* so readers see either the old file or the new one.

    The temp file lives in the target directory so the final rename never
    crosses a filesystem. It is removed if anything fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = data.encode(encoding) if isinstance(data, str) else data
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
