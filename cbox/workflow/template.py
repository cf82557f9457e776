"""Templated shell commands for the issue tracker and PR collaborators.

Commands in ``.cbox.toml`` reference values as ``$Title``, ``$IssueID`` and
so on. Values are passed to ``sh -c`` as environment variables and the shell
expands them, so titles containing quotes or backticks are safe.
"""

import os
import re
import subprocess
from pathlib import Path

import structlog

from cbox.errors import CommandError

logger = structlog.get_logger(__name__)

# Placeholders a workflow command may reference.
KNOWN_VARIABLES = (
    "Title",
    "Description",
    "IssueID",
    "Status",
    "Body",
    "PRNumber",
    "PRURL",
    "Branch",
    "Dir",
    "Slug",
)

_VAR = re.compile(r"\$(?:\{(\w+)\}|(\w+))")


def expand_vars(template: str, variables: dict[str, str]) -> str:
    """Expand ``$Name``/``${Name}`` from ``variables``; unknown names stay as ``${Name}``."""

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1) or match.group(2)
        if key in variables:
            return variables[key]
        return "${" + key + "}"

    return _VAR.sub(_sub, template)


def command_env(variables: dict[str, str]) -> dict[str, str]:
    """Environment for a templated command.

    Known placeholders the caller did not supply expand to their own
    literal text (``$Status``) instead of an empty string.
    """
    env = dict(os.environ)
    for name in KNOWN_VARIABLES:
        env[name] = f"${name}"
    env.update(variables)
    return env


def run_shell_command(
    command: str,
    variables: dict[str, str] | None = None,
    cwd: str | Path | None = None,
) -> str:
    """Run ``command`` under ``sh -c`` and return its trimmed stdout.

    Args:
        command: Shell command string with ``$Name`` placeholders.
        variables: Placeholder values, passed as environment variables.
        cwd: Working directory (defaults to the current one).

    Raises:
        CommandError: If the command exits non-zero. The error carries the
            combined stdout and stderr.
    """
    result = subprocess.run(
        ["sh", "-c", command],
        cwd=cwd,
        env=command_env(variables or {}),
        capture_output=True,
        text=True,
    )
    stdout = result.stdout.strip()
    if result.returncode != 0:
        combined = f"{result.stdout}\n{result.stderr}".strip()
        logger.debug("shell_command_failed", command=command, exit_code=result.returncode)
        raise CommandError(command, result.returncode, combined)
    return stdout
