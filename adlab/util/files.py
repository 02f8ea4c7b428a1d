"""
File utility functions.
"""

import os
import tempfile
from datetime import datetime
from pathlib import Path


def ensure_dir(path: str | Path) -> Path:
    """Ensure directory exists, creating if necessary."""
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def write_text(path: str | Path, content: str) -> None:
    """Write text to file, creating parent directories if needed."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content, encoding="utf-8")


def write_text_atomic(path: str | Path, content: str) -> None:
    """
    Write text so readers never observe a half-written file.

    The content goes to a temporary file in the same directory which then
    replaces the target.
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{p.name}.", dir=str(p.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, p)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def run_dir_name(when: datetime | None = None) -> str:
    """Directory name for a run under runs/ (filesystem safe on Windows)."""
    when = when or datetime.now()
    return when.isoformat().replace(":", "-").split(".")[0]
