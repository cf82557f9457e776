"""Legacy ``flow-<branch>.json`` records (read and update only).

Older versions tracked flows in the project directory with a free-form
phase string. New flows never create these files; they are read so those
flows can still be listed, merged, abandoned and cleaned, and removed once
the flow ends.
"""

from pathlib import Path

import structlog
from pydantic import ValidationError

from cbox.models.schemas import FlowState, utc_now
from cbox.sandbox.state import STATE_SUFFIX
from cbox.storage import atomic_write_text, safe_branch, state_dir

logger = structlog.get_logger(__name__)


class LegacyFlowStore:
    def __init__(self, project_dir: str | Path) -> None:
        self.project_dir = Path(project_dir)

    def path_for(self, branch: str) -> Path:
        return state_dir(self.project_dir) / f"flow-{safe_branch(branch)}.json"

    def load(self, branch: str) -> FlowState | None:
        path = self.path_for(branch)
        try:
            return FlowState.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValidationError as e:
            logger.warning("legacy_flow_unreadable", path=str(path), error=str(e))
            return None

    def list_all(self) -> list[FlowState]:
        directory = state_dir(self.project_dir)
        if not directory.is_dir():
            return []
        states = []
        for path in sorted(directory.glob("flow-*.json")):
            if path.name.endswith(STATE_SUFFIX):
                # Sandbox state of a branch named flow-...
                continue
            try:
                states.append(FlowState.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as e:
                logger.warning("legacy_flow_unreadable", path=str(path), error=str(e))
        return states

    def update(self, state: FlowState) -> None:
        """Rewrite an existing record (PR details). Never creates one."""
        path = self.path_for(state.branch)
        if not path.exists():
            raise FileNotFoundError(path)
        state.updated_at = utc_now()
        atomic_write_text(path, state.model_dump_json(indent=2))

    def remove(self, branch: str) -> None:
        self.path_for(branch).unlink(missing_ok=True)
