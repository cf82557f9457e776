"""Session Store: one JSON state file per sandbox branch.

Files live at ``<project>/.cbox/<safe-branch>.state.json``. A loaded
record is the single source of truth for which external resources exist
for a branch.
"""

from pathlib import Path

import structlog
from pydantic import ValidationError

from cbox.errors import SandboxNotFoundError, SandboxStateError
from cbox.models.schemas import SandboxState
from cbox.storage import atomic_write_text, safe_branch, state_dir

logger = structlog.get_logger(__name__)

STATE_SUFFIX = ".state.json"


class SessionStore:
    """Reads and writes sandbox state files for one project.

    No locking: concurrent invocations against the same branch are not
    supported.
    """

    def __init__(self, project_dir: str | Path) -> None:
        self.project_dir = Path(project_dir)

    def path_for(self, branch: str) -> Path:
        return state_dir(self.project_dir) / f"{safe_branch(branch)}{STATE_SUFFIX}"

    def exists(self, branch: str) -> bool:
        return self.path_for(branch).exists()

    def load(self, branch: str) -> SandboxState:
        """Load the state for ``branch``.

        Raises:
            SandboxNotFoundError: If no state file exists.
            SandboxStateError: If the file cannot be parsed.
        """
        path = self.path_for(branch)
        try:
            data = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise SandboxNotFoundError(branch) from e
        try:
            return SandboxState.model_validate_json(data)
        except ValidationError as e:
            raise SandboxStateError(f"parsing sandbox state {path}: {e}") from e

    def save(self, state: SandboxState) -> None:
        atomic_write_text(self.path_for(state.branch), state.model_dump_json(indent=2))
        logger.debug("sandbox_state_saved", branch=state.branch)

    def remove(self, branch: str) -> None:
        """Delete the state file; a missing file is not an error."""
        self.path_for(branch).unlink(missing_ok=True)

    def list_all(self) -> list[SandboxState]:
        """All readable state files, sorted by branch. Corrupt files are skipped."""
        directory = state_dir(self.project_dir)
        if not directory.is_dir():
            return []
        states: list[SandboxState] = []
        for path in sorted(directory.glob(f"*{STATE_SUFFIX}")):
            try:
                states.append(SandboxState.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as e:
                logger.warning("sandbox_state_unreadable", path=str(path), error=str(e))
        return sorted(states, key=lambda s: s.branch)
