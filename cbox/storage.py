"""Flat-file storage helpers shared by every cbox record store."""

import os
import tempfile
from pathlib import Path

from cbox.config import settings


def safe_branch(branch: str) -> str:
    """Filesystem- and DNS-friendly form of a branch name."""
    return branch.replace("/", "-")


def state_dir(base_dir: str | Path) -> Path:
    """The ``.cbox`` directory inside a project or worktree."""
    return Path(base_dir) / settings.state_dir_name


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` via a temp file and rename.

    A crash mid-write leaves either the old file or the new one, never a
    truncated document.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
