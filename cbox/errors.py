"""Exception hierarchy for cbox.

Lower layers raise these; the CLI turns any ``CboxError`` into an error
block and a non-zero exit. Several classes also derive from the matching
builtin so callers can catch them the usual way.
"""


class CboxError(Exception):
    """Base class for all errors surfaced to the user."""


class ConfigError(CboxError):
    """The project configuration is missing, invalid or incomplete."""


class SandboxNotFoundError(CboxError, FileNotFoundError):
    """No sandbox state exists for the requested branch."""

    def __init__(self, branch: str) -> None:
        self.branch = branch
        super().__init__(f"no sandbox found for branch {branch!r} - run 'cbox up {branch}' first")


class TaskNotFoundError(CboxError, FileNotFoundError):
    """No task file exists in the worktree."""

    def __init__(self, worktree_path: str) -> None:
        self.worktree_path = worktree_path
        super().__init__(f"no task found in {worktree_path}")


class InvalidTransitionError(CboxError, ValueError):
    """A phase transition is not allowed by the transition rules."""


class FlowError(CboxError):
    """A flow operation was refused or could not complete."""


class HelperStartError(CboxError):
    """A supervised helper process failed to confirm its handshake."""


class CommandError(CboxError):
    """A templated shell command exited non-zero."""

    def __init__(self, command: str, returncode: int, output: str) -> None:
        self.command = command
        self.returncode = returncode
        self.output = output
        detail = output.strip() or f"exit status {returncode}"
        super().__init__(f"command failed: {detail}")


class ContainerError(CboxError):
    """A fatal container engine operation failed."""


class WorktreeError(CboxError):
    """A git worktree or branch operation failed."""


class SandboxStateError(CboxError):
    """A sandbox state file exists but cannot be parsed."""
