"""Editing task text in the user's editor."""

import os
import shlex
import subprocess
import tempfile
from pathlib import Path

from cbox.errors import ConfigError, FlowError

TASK_EDIT_TEMPLATE = """

# -- Edit the task above --
# First line: task title
# Everything after the blank line: description
# Lines starting with '#' are ignored
# Leave empty to cancel
"""


def resolve_editor(configured: str = "") -> str:
    """Editor command: ``CBOX_EDITOR`` > config ``editor`` > ``VISUAL`` > ``EDITOR``."""
    return (
        os.environ.get("CBOX_EDITOR")
        or configured
        or os.environ.get("VISUAL")
        or os.environ.get("EDITOR")
        or ""
    )


def strip_comments(text: str) -> str:
    """Drop lines starting with ``#`` and trim the result."""
    lines = [line for line in text.split("\n") if not line.strip().startswith("#")]
    return "\n".join(lines).strip()


def split_title_description(text: str) -> tuple[str, str]:
    """First paragraph is the title, the rest is the description."""
    title, _, description = text.partition("\n\n")
    return title.strip(), description.strip()


def edit_text(initial: str, configured_editor: str = "") -> str:
    """Open ``initial`` in the editor and return the edited text without comments.

    Raises:
        ConfigError: If no editor is configured.
        FlowError: If the editor fails.
    """
    editor = resolve_editor(configured_editor)
    if not editor:
        raise ConfigError(
            "no editor found: set CBOX_EDITOR, VISUAL, or EDITOR, or add editor to .cbox.toml"
        )
    fd, name = tempfile.mkstemp(prefix="cbox-task-", suffix=".txt")
    path = Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(initial)
        result = subprocess.run([*shlex.split(editor), str(path)])
        if result.returncode != 0:
            raise FlowError(f"editor exited with status {result.returncode}")
        return strip_comments(path.read_text(encoding="utf-8"))
    finally:
        path.unlink(missing_ok=True)


def edit_title_description(title: str, description: str, configured_editor: str = "") -> tuple[str, str]:
    """Let the user edit a task's title and description.

    Raises:
        FlowError: If the result is empty or has no title.
    """
    text = edit_text(f"{title}\n\n{description}{TASK_EDIT_TEMPLATE}", configured_editor)
    if not text:
        raise FlowError("empty content after editing")
    new_title, new_description = split_title_description(text)
    if not new_title:
        raise FlowError("empty title after editing")
    return new_title, new_description
