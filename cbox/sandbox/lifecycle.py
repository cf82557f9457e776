"""Session Lifecycle: bring a branch sandbox up, down, and clean it away.

``up`` is an ordered pipeline. Core resources (worktree, serve route, image,
network, container) are fatal when they fail; auxiliary features (file
copies, bridge proxy, command proxy, injected content) only warn. ``down``
and ``clean`` share one teardown in which every step tolerates resources
that are already gone, so both are safe to repeat.

Usage:
    lifecycle = SandboxLifecycle(project_dir, renderer=Renderer())
    state = lifecycle.up("feature/login")
    lifecycle.down("feature/login")
    lifecycle.clean("feature/login")
"""

import getpass
import json
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import structlog
from docker.errors import DockerException

from cbox.config import settings
from cbox.errors import CboxError, ContainerError, SandboxNotFoundError, SandboxStateError
from cbox.models.project import ProjectConfig, load_project_config
from cbox.models.schemas import SandboxState
from cbox.output.blocks import Block, parse_claude_output
from cbox.output.render import Renderer
from cbox.sandbox import serve
from cbox.sandbox.docker_runtime import (
    AgentContainerSpec,
    DockerRuntime,
    FileEntry,
    collect_environment,
    container_name,
    image_name,
    network_name,
)
from cbox.sandbox.hostcmd import NAMED_PREFIX
from cbox.sandbox.instructions import INSTRUCTIONS_PATH, build_instructions, client_entries
from cbox.sandbox.state import SessionStore
from cbox.sandbox.supervisor import ProcessSupervisor, self_command
from cbox.sandbox.worktree import Worktrees, copy_into_worktree
from cbox.storage import safe_branch, state_dir

logger = structlog.get_logger(__name__)

# Errors a best-effort step may raise; anything else is a bug and propagates.
_STEP_ERRORS = (CboxError, DockerException, OSError, ValueError)


@dataclass
class UpOptions:
    """Options for ``SandboxLifecycle.up``.

    Attributes:
        no_cache: Rebuild the image without the layer cache.
        flow_branch: When set, expose the workflow tools for this task
            branch through the command proxy.
    """

    no_cache: bool = False
    flow_branch: str = ""


class SandboxLifecycle:
    """Creates, tracks and tears down the resources of branch sandboxes.

    Collaborators are injectable so tests can substitute fakes.

    Args:
        project_dir: The main project checkout.
        config: Project configuration (loaded from ``.cbox.toml`` if omitted).
        runtime: Container engine adapter.
        supervisor: Helper process supervisor.
        worktrees: Git worktree adapter.
        store: Session store.
        renderer: User-facing output; None keeps the lifecycle silent.
    """

    def __init__(
        self,
        project_dir: str | Path,
        config: ProjectConfig | None = None,
        runtime: DockerRuntime | None = None,
        supervisor: ProcessSupervisor | None = None,
        worktrees: Worktrees | None = None,
        store: SessionStore | None = None,
        renderer: Renderer | None = None,
    ) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.project = self.project_dir.name
        self.config = config if config is not None else load_project_config(self.project_dir)
        self.runtime = runtime or DockerRuntime()
        self.supervisor = supervisor or ProcessSupervisor()
        self.worktrees = worktrees or Worktrees(self.project_dir)
        self.store = store or SessionStore(self.project_dir)
        self.renderer = renderer

    # ------------------------------------------------------------------
    # Output helpers
    # ------------------------------------------------------------------

    def _progress(self, message: str) -> None:
        if self.renderer is not None:
            self.renderer.progress(message)

    def _warn(self, event: str, message: str, **context: object) -> None:
        logger.warning(event, **context)
        if self.renderer is not None:
            self.renderer.warning(message)

    def _best_effort(self, step: str, fn: Callable[[], object], **context: object) -> bool:
        """Run a degradable step; on failure warn and report False."""
        try:
            fn()
        except _STEP_ERRORS as e:
            self._warn(f"{step}_failed", f"{step.replace('_', ' ').capitalize()} failed: {e}", error=str(e), **context)
            return False
        return True

    def logs_dir(self) -> Path:
        return state_dir(self.project_dir) / "logs"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def info(self, branch: str) -> SandboxState:
        return self.store.load(branch)

    def list_all(self) -> list[SandboxState]:
        return self.store.list_all()

    def _blank_state(self, branch: str) -> SandboxState:
        return SandboxState(
            branch=branch,
            project_dir=str(self.project_dir),
            worktree_path=str(self.worktrees.path_for(branch)),
            claude_container=container_name(self.project, branch),
            claude_image=image_name(self.project),
            network_name=network_name(self.project, branch),
        )

    # ------------------------------------------------------------------
    # Up
    # ------------------------------------------------------------------

    def up(self, branch: str, options: UpOptions | None = None) -> SandboxState:
        """Create (or recreate) every resource of the branch sandbox.

        Returns:
            The persisted state of the running sandbox.

        Raises:
            WorktreeError: If the worktree cannot be created.
            ContainerError: If the serve route, image, network or container
                cannot be set up.
            HelperStartError: If the serve runner fails to start.
        """
        options = options or UpOptions()
        cfg = self.config
        state = self._blank_state(branch)
        log = logger.bind(branch=branch, project=self.project)

        self._progress(f"Creating worktree for {branch}")
        wt_path = self.worktrees.create(branch)
        state.worktree_path = str(wt_path)

        if cfg.copy_files:
            self._best_effort(
                "copy_files",
                lambda: copy_into_worktree(self.project_dir, wt_path, cfg.copy_files),
            )

        try:
            if cfg.serve is not None and cfg.serve.command:
                self._progress("Starting serve process")
                self._start_serve(state)

            self._progress("Building agent image")
            dockerfile = self.project_dir / cfg.dockerfile if cfg.dockerfile else None
            self.runtime.build_image(state.claude_image, dockerfile=dockerfile, no_cache=options.no_cache)

            self._progress("Creating network")
            self.runtime.create_network(state.network_name)

            self.runtime.stop_and_remove(state.claude_container)

            env_file = self.project_dir / cfg.env_file if cfg.env_file else None
            environment = collect_environment(cfg.env, env_file)

            if cfg.browser and Path(settings.bridge_socket_dir).is_dir():
                self._progress("Starting browser bridge proxy")
                self._best_effort("bridge_proxy", lambda: self._start_bridge(state))
            if state.bridge_mappings:
                environment["CHROME_BRIDGE_MAPPINGS"] = json.dumps(
                    [m.model_dump() for m in state.bridge_mappings]
                )
                environment["USER"] = os.environ.get("USER") or getpass.getuser()

            exposed: list[str] = []
            if cfg.host_commands or cfg.commands:
                self._progress("Starting command proxy")
                builtins = self._flow_builtins(options.flow_branch) if options.flow_branch else {}
                if self._best_effort("command_proxy", lambda: self._start_command_proxy(state, builtins)):
                    exposed = sorted(
                        {*cfg.host_commands, *builtins, *(f"{NAMED_PREFIX}{n}" for n in cfg.commands)}
                    )
            if state.command_proxy_port:
                environment["CBOX_HOST_CMD_ADDR"] = f"host.docker.internal:{state.command_proxy_port}"

            self._progress("Starting agent container")
            self.runtime.run_agent_container(
                AgentContainerSpec(
                    name=state.claude_container,
                    image=state.claude_image,
                    network=state.network_name,
                    worktree_path=state.worktree_path,
                    environment=environment,
                    ports=cfg.ports,
                )
            )
        except (CboxError, DockerException) as e:
            log.error("sandbox_up_aborted", error=str(e))
            self._abort(state)
            if isinstance(e, CboxError):
                raise
            raise ContainerError(f"container engine: {e}") from e

        state.running = True
        state.ports = list(cfg.ports)

        self._best_effort(
            "instruction_injection",
            lambda: self.runtime.put_files(
                state.claude_container,
                [FileEntry(path=INSTRUCTIONS_PATH, content=build_instructions(cfg, exposed).encode())],
            ),
        )
        if exposed:
            self._best_effort(
                "tool_injection",
                lambda: self.runtime.put_files(state.claude_container, client_entries(exposed)),
            )

        self.store.save(state)
        log.info("sandbox_up_complete", container=state.claude_container, serve_url=state.serve_url)
        return state

    def _abort(self, state: SandboxState) -> None:
        """Stop helpers started by a failed ``up`` and record what exists.

        Each step only warns so the original failure is the one reported.
        """
        context = {"branch": state.branch}
        self._best_effort("bridge_proxy_stop", lambda: self.supervisor.stop(state.bridge_proxy_pid), **context)
        self._best_effort("command_proxy_stop", lambda: self.supervisor.stop(state.command_proxy_pid), **context)
        if state.serve_pid:
            self._best_effort("serve_stop", lambda: self._stop_serve(state), **context)
        state.clear_transient()
        self.store.save(state)

    def _start_bridge(self, state: SandboxState) -> None:
        helper = self.supervisor.start(
            self_command("_bridge-proxy", settings.bridge_socket_dir),
            log_path=self.logs_dir() / f"{safe_branch(state.branch)}-bridge.log",
            require_port=False,
        )
        if not helper.handshake.mappings:
            # Nothing to relay; the helper exits on its own.
            self.supervisor.stop(helper.pid)
            return
        state.bridge_proxy_pid = helper.pid
        state.bridge_mappings = helper.handshake.mappings

    def _flow_builtins(self, flow_branch: str) -> dict[str, list[str]]:
        base = self_command("--project", str(self.project_dir), "flow")
        return {
            "cbox-flow-ready": [*base, "ready", flow_branch],
            "cbox-flow-pr": [*base, "pr", flow_branch],
            "cbox-report": [*base, "report", flow_branch],
        }

    def _start_command_proxy(self, state: SandboxState, builtins: dict[str, list[str]]) -> None:
        helper = self.supervisor.start(
            self_command(
                "_cmd-proxy",
                "--worktree", state.worktree_path,
                "--host-commands", json.dumps(self.config.host_commands),
                "--commands", json.dumps(self.config.commands),
                "--builtins", json.dumps(builtins),
            ),
            log_path=self.logs_dir() / f"{safe_branch(state.branch)}-cmd-proxy.log",
        )
        state.command_proxy_pid = helper.pid
        state.command_proxy_port = helper.handshake.port

    # ------------------------------------------------------------------
    # Serve
    # ------------------------------------------------------------------

    def _start_serve(self, state: SandboxState) -> None:
        """Start the serve runner and route it through Traefik.

        Raises:
            ContainerError: If the route cannot be set up (the runner is stopped).
            HelperStartError: If the runner does not start.
        """
        cfg = self.config.serve
        assert cfg is not None
        safe = safe_branch(state.branch)
        helper = self.supervisor.start(
            self_command(
                "_serve-runner",
                "--command", cfg.command,
                "--port", str(cfg.port),
                "--dir", state.worktree_path,
            ),
            log_path=self.serve_log_path(state.branch),
        )
        state.serve_pid = helper.pid
        state.serve_port = helper.handshake.port
        try:
            self._ensure_traefik(cfg.proxy_port)
            serve.add_route(self.project_dir, safe, self.project, state.serve_port)
        except (ContainerError, DockerException, OSError) as e:
            self.supervisor.stop(state.serve_pid)
            state.serve_pid = 0
            state.serve_port = 0
            raise ContainerError(f"setting up serve route: {e}") from e
        state.serve_url = serve.serve_url(safe, self.project, cfg.proxy_port)
        logger.info("serve_routed", branch=state.branch, url=state.serve_url, port=state.serve_port)

    def _ensure_traefik(self, proxy_port: int) -> None:
        name = serve.traefik_container_name(self.project)
        if self.runtime.container_running(name):
            return
        directory = serve.dynamic_dir(self.project_dir)
        directory.mkdir(parents=True, exist_ok=True)
        self.runtime.stop_and_remove(name)
        self.runtime.run_traefik(
            name,
            settings.traefik_image,
            proxy_port or serve.DEFAULT_PROXY_PORT,
            directory,
        )

    def _stop_serve(self, state: SandboxState) -> None:
        self.supervisor.stop(state.serve_pid)
        serve.remove_route(self.project_dir, safe_branch(state.branch))
        if not serve.has_routes(self.project_dir):
            self.runtime.stop_and_remove(serve.traefik_container_name(self.project))

    def serve_log_path(self, branch: str) -> Path:
        return self.logs_dir() / f"{safe_branch(branch)}-serve.log"

    def serve_start(self, branch: str) -> SandboxState:
        """Start (or restart) the serve process for an existing sandbox.

        Raises:
            ContainerError: If no serve command is configured or routing fails.
        """
        if self.config.serve is None or not self.config.serve.command:
            raise ContainerError("no serve command configured - add [serve] to .cbox.toml")
        state = self.store.load(branch)
        if state.serve_pid:
            self._stop_serve(state)
        self._start_serve(state)
        self.store.save(state)
        return state

    def serve_stop(self, branch: str) -> SandboxState:
        state = self.store.load(branch)
        self._stop_serve(state)
        state.serve_pid = 0
        state.serve_port = 0
        state.serve_url = ""
        self.store.save(state)
        return state

    # ------------------------------------------------------------------
    # Down / Clean
    # ------------------------------------------------------------------

    def _teardown(self, state: SandboxState) -> None:
        """Stop helpers, serve, container and network. Never raises for stale state."""
        context = {"branch": state.branch}
        self._best_effort("bridge_proxy_stop", lambda: self.supervisor.stop(state.bridge_proxy_pid), **context)
        self._best_effort("command_proxy_stop", lambda: self.supervisor.stop(state.command_proxy_pid), **context)
        self._best_effort("serve_stop", lambda: self._stop_serve(state), **context)
        container = state.claude_container or container_name(self.project, state.branch)
        self._best_effort("container_removal", lambda: self.runtime.stop_and_remove(container), **context)
        network = state.network_name or network_name(self.project, state.branch)
        self._best_effort("network_removal", lambda: self.runtime.remove_network(network), **context)

    def down(self, branch: str) -> SandboxState:
        """Stop the sandbox, keeping its worktree and identifiers.

        Raises:
            SandboxNotFoundError: If the branch has no sandbox.
        """
        state = self.store.load(branch)
        self._progress(f"Stopping sandbox for {branch}")
        self._teardown(state)
        state.clear_transient()
        self.store.save(state)
        logger.info("sandbox_down_complete", branch=branch)
        return state

    def clean(self, branch: str) -> None:
        """Remove every resource of the sandbox, its worktree, branch and record.

        Runs the full teardown whatever the recorded running flag says. A
        missing or unreadable record is not an error: names are derived
        from the branch.
        """
        try:
            state = self.store.load(branch)
        except SandboxNotFoundError:
            state = self._blank_state(branch)
        except SandboxStateError as e:
            logger.warning("sandbox_state_unreadable", branch=branch, error=str(e))
            state = self._blank_state(branch)
        self._progress(f"Cleaning sandbox for {branch}")
        self._teardown(state)
        self._best_effort("worktree_removal", lambda: self.worktrees.remove(state.worktree_path), branch=branch)
        self._best_effort("branch_deletion", lambda: self.worktrees.delete_branch(branch), branch=branch)
        self.store.remove(branch)
        logger.info("sandbox_clean_complete", branch=branch)

    # ------------------------------------------------------------------
    # Agent sessions
    # ------------------------------------------------------------------

    def _running_container(self, branch: str) -> str:
        state = self.store.load(branch)
        if not self.runtime.container_running(state.claude_container):
            raise ContainerError(f"sandbox for {branch!r} is not running - run 'cbox up {branch}'")
        return state.claude_container

    def chat(self, branch: str, prompt: str = "", resume: bool = False) -> int:
        """Interactive Claude session in the sandbox; returns its exit status."""
        container = self._running_container(branch)
        command = ["claude", "--dangerously-skip-permissions"]
        if self.config.browser:
            command.append("--chrome")
        if resume:
            command.append("--continue")
        elif prompt:
            command.append(prompt)
        return self.runtime.interactive(container, command)

    def chat_prompt(self, branch: str, prompt: str) -> list[Block]:
        """Run Claude headless with ``prompt`` and return its output blocks.

        Raises:
            ContainerError: If Claude exits non-zero.
        """
        container = self._running_container(branch)
        result = self.runtime.exec(
            container,
            ["claude", "--dangerously-skip-permissions", "-p", prompt, "--output-format", "json"],
        )
        blocks = parse_claude_output(result.output)
        if result.exit_code != 0:
            raise ContainerError(f"claude exited with status {result.exit_code}: {result.output.strip()[:500]}")
        return blocks

    def has_conversation_history(self, branch: str) -> bool:
        return self.runtime.has_conversation_history(self._running_container(branch))

    def shell(self, branch: str) -> int:
        return self.runtime.interactive(self._running_container(branch), ["bash"])

    def exec_interactive(self, branch: str, command: list[str]) -> int:
        return self.runtime.interactive(self._running_container(branch), command)


__all__ = ["SandboxLifecycle", "UpOptions"]
