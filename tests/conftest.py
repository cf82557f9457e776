"""Shared test fixtures for cbox tests.

Provides fake collaborators for the container engine, git worktrees, the
helper process supervisor and the workflow command runner, so tests never
touch Docker, git or the network.
"""

import io
import shutil
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Ensure the repository root is on sys.path so ``import cbox`` resolves when
# running pytest without installing the package.
_repo_root = str(Path(__file__).resolve().parent.parent)
if _repo_root not in sys.path:
    sys.path.insert(0, _repo_root)

from cbox.errors import CommandError, ContainerError, HelperStartError  # noqa: E402
from cbox.models.project import ProjectConfig  # noqa: E402
from cbox.models.schemas import HelperHandshake  # noqa: E402
from cbox.output.render import Renderer  # noqa: E402
from cbox.output.theme import PLAIN_THEME  # noqa: E402
from cbox.sandbox.docker_runtime import AgentContainerSpec, ExecResult, FileEntry  # noqa: E402
from cbox.sandbox.lifecycle import SandboxLifecycle  # noqa: E402
from cbox.sandbox.state import SessionStore  # noqa: E402
from cbox.sandbox.supervisor import HelperProcess  # noqa: E402
from cbox.sandbox.worktree import worktree_path  # noqa: E402

# ---------------------------------------------------------------------------
# Fake container runtime
# ---------------------------------------------------------------------------


class FakeRuntime:
    """In-memory stand-in for ``DockerRuntime``.

    ``fail_on`` names methods that raise ``ContainerError``.
    """

    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.fail_on = fail_on or set()
        self.calls: list[tuple[str, Any]] = []
        self.running: set[str] = set()
        self.networks: set[str] = set()
        self.images: set[str] = set()
        self.files: dict[str, list[FileEntry]] = {}
        self.removed_containers: list[str] = []
        self.removed_networks: list[str] = []
        self.interactive_calls: list[tuple[str, list[str]]] = []
        self.exec_result = ExecResult(exit_code=0, output='{"type": "result", "result": "done"}')
        self.history = False

    def _record(self, method: str, arg: Any) -> None:
        self.calls.append((method, arg))
        if method in self.fail_on:
            raise ContainerError(f"{method} failed")

    @property
    def methods(self) -> list[str]:
        return [m for m, _ in self.calls]

    def build_image(self, tag: str, dockerfile: Path | None = None, no_cache: bool = False) -> None:
        self._record("build_image", tag)
        self.images.add(tag)

    def create_network(self, name: str) -> None:
        self._record("create_network", name)
        self.networks.add(name)

    def remove_network(self, name: str) -> None:
        self._record("remove_network", name)
        self.networks.discard(name)
        self.removed_networks.append(name)

    def container_running(self, name: str) -> bool:
        return name in self.running

    def stop_and_remove(self, name: str) -> None:
        self._record("stop_and_remove", name)
        self.running.discard(name)
        self.removed_containers.append(name)

    def run_agent_container(self, spec: AgentContainerSpec) -> str:
        self._record("run_agent_container", spec)
        self.running.add(spec.name)
        return "container-id"

    def run_traefik(self, name: str, image: str, proxy_port: int, dynamic_dir: Path) -> None:
        self._record("run_traefik", name)
        self.running.add(name)

    def put_files(self, name: str, entries: list[FileEntry], owner: str = "claude") -> None:
        self._record("put_files", name)
        self.files.setdefault(name, []).extend(entries)

    def exec(self, name: str, command: list[str], user: str = "claude") -> ExecResult:
        self._record("exec", command)
        return self.exec_result

    def has_conversation_history(self, name: str) -> bool:
        return self.history

    def interactive(self, name: str, command: list[str], user: str = "claude") -> int:
        self.interactive_calls.append((name, command))
        return 0


# ---------------------------------------------------------------------------
# Fake worktrees
# ---------------------------------------------------------------------------


class FakeWorktrees:
    """Creates plain directories where git would create worktrees."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir
        self.branches: set[str] = set()
        self.removed: list[str] = []
        self.deleted_branches: list[str] = []

    def path_for(self, branch: str) -> Path:
        return worktree_path(self.project_dir, branch)

    def branch_exists(self, branch: str) -> bool:
        return branch in self.branches

    def create(self, branch: str) -> Path:
        path = self.path_for(branch)
        path.mkdir(parents=True, exist_ok=True)
        self.branches.add(branch)
        return path

    def remove(self, path: str | Path) -> None:
        shutil.rmtree(path, ignore_errors=True)
        self.removed.append(str(path))

    def delete_branch(self, branch: str) -> None:
        self.branches.discard(branch)
        self.deleted_branches.append(branch)


# ---------------------------------------------------------------------------
# Fake supervisor
# ---------------------------------------------------------------------------


class FakeSupervisor:
    """Hands out fake pids; ``fail_on`` holds helper subcommands that fail to start."""

    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.fail_on = fail_on or set()
        self.started: list[list[str]] = []
        self.stopped: list[int] = []
        self._next_pid = 1000

    def start(
        self,
        argv: list[str],
        log_path: Path | None = None,
        cwd: str | Path | None = None,
        require_port: bool = True,
    ) -> HelperProcess:
        subcommand = next((a for a in argv if a.startswith("_")), "")
        if subcommand in self.fail_on:
            raise HelperStartError(f"{subcommand} did not start")
        self.started.append(argv)
        self._next_pid += 1
        return HelperProcess(pid=self._next_pid, handshake=HelperHandshake(port=40000 + self._next_pid))

    def stop(self, pid: int) -> None:
        if pid > 0:
            self.stopped.append(pid)

    def kill(self, pid: int) -> None:
        self.stop(pid)


# ---------------------------------------------------------------------------
# Recording command runner
# ---------------------------------------------------------------------------


class RecordingRunner:
    """Stands in for ``run_shell_command``.

    ``outputs`` maps a substring of the command to its output; ``failures``
    holds substrings whose commands raise ``CommandError``.
    """

    def __init__(self, outputs: dict[str, str] | None = None, failures: set[str] | None = None) -> None:
        self.outputs = outputs or {}
        self.failures = failures or set()
        self.calls: list[tuple[str, dict[str, str], Any]] = []

    def __call__(self, command: str, variables: dict[str, str] | None = None, cwd: Any = None) -> str:
        self.calls.append((command, dict(variables or {}), cwd))
        for key in self.failures:
            if key in command:
                raise CommandError(command, 1, f"{key} failed")
        for key, output in self.outputs.items():
            if key in command:
                return output
        return ""

    def commands(self) -> list[str]:
        return [c for c, _, _ in self.calls]

    def variables_for(self, key: str) -> list[dict[str, str]]:
        return [v for c, v, _ in self.calls if key in c]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    """An empty project directory (worktrees are created beside it)."""
    path = tmp_path / "proj"
    path.mkdir()
    return path


@pytest.fixture()
def output() -> io.StringIO:
    return io.StringIO()


@pytest.fixture()
def renderer(output: io.StringIO) -> Renderer:
    return Renderer(stream=output, theme=PLAIN_THEME)


@pytest.fixture()
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture()
def worktrees(project_dir: Path) -> FakeWorktrees:
    return FakeWorktrees(project_dir)


@pytest.fixture()
def make_lifecycle(
    project_dir: Path,
    runtime: FakeRuntime,
    supervisor: FakeSupervisor,
    worktrees: FakeWorktrees,
    renderer: Renderer,
) -> Callable[..., SandboxLifecycle]:
    """Factory for a lifecycle wired to the fakes; accepts a ``ProjectConfig``."""

    def _make(config: ProjectConfig | None = None) -> SandboxLifecycle:
        return SandboxLifecycle(
            project_dir,
            config=config or ProjectConfig(),
            runtime=runtime,
            supervisor=supervisor,
            worktrees=worktrees,
            store=SessionStore(project_dir),
            renderer=renderer,
        )

    return _make
