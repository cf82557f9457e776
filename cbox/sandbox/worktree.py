"""Git worktree management for sandbox checkouts.

Each branch is checked out next to the project as
``<parent>/<project>--<safe-branch>`` so the container can mount it
without touching the main working copy.
"""

import shutil
import subprocess
from pathlib import Path

import structlog

from cbox.errors import WorktreeError
from cbox.storage import safe_branch

logger = structlog.get_logger(__name__)


def worktree_path(project_dir: str | Path, branch: str) -> Path:
    project = Path(project_dir).resolve()
    return project.parent / f"{project.name}--{safe_branch(branch)}"


def _git(project_dir: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", "-C", str(project_dir), *args],
        capture_output=True,
        text=True,
    )


class Worktrees:
    """Thin wrapper over the git CLI for one project repository."""

    def __init__(self, project_dir: str | Path) -> None:
        self.project_dir = Path(project_dir)

    def path_for(self, branch: str) -> Path:
        return worktree_path(self.project_dir, branch)

    def branch_exists(self, branch: str) -> bool:
        return _git(self.project_dir, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}").returncode == 0

    def create(self, branch: str) -> Path:
        """Create (or reuse) the worktree for ``branch``.

        An existing directory is reused as-is. Otherwise the branch is checked
        out if it exists, or created from the current HEAD.

        Raises:
            WorktreeError: If git cannot create the worktree.
        """
        path = self.path_for(branch)
        if path.exists():
            logger.info("worktree_reused", branch=branch, path=str(path))
            return path

        result = _git(self.project_dir, "worktree", "add", str(path), branch)
        if result.returncode != 0:
            result = _git(self.project_dir, "worktree", "add", str(path), "-b", branch)
        if result.returncode != 0:
            raise WorktreeError(f"git worktree add: {result.stderr.strip()}")

        logger.info("worktree_created", branch=branch, path=str(path))
        return path

    def remove(self, path: str | Path) -> None:
        """Remove a worktree; an already-missing worktree is not an error."""
        path = Path(path)
        result = _git(self.project_dir, "worktree", "remove", "--force", str(path))
        if result.returncode != 0:
            if path.exists():
                # Not registered with git (or git refused): remove the directory itself.
                shutil.rmtree(path, ignore_errors=True)
            _git(self.project_dir, "worktree", "prune")
            logger.debug("worktree_remove_fallback", path=str(path), error=result.stderr.strip())

    def delete_branch(self, branch: str) -> None:
        """Force-delete a local branch; a missing branch is not an error."""
        result = _git(self.project_dir, "branch", "-D", branch)
        if result.returncode != 0:
            logger.debug("branch_delete_skipped", branch=branch, error=result.stderr.strip())


def copy_into_worktree(project_dir: str | Path, wt_path: str | Path, files: list[str]) -> list[str]:
    """Copy auxiliary files (``.env`` etc.) from the project into a worktree.

    Missing sources are skipped; directories are copied recursively.

    Returns:
        The relative paths that were copied.
    """
    copied: list[str] = []
    for rel in files:
        src = Path(project_dir) / rel
        dst = Path(wt_path) / rel
        if not src.exists():
            continue
        dst.parent.mkdir(parents=True, exist_ok=True)
        if src.is_dir():
            shutil.copytree(src, dst, dirs_exist_ok=True)
        else:
            shutil.copy2(src, dst)
        copied.append(rel)
    return copied
