"""Docker runtime for sandbox containers, networks and images.

This module wraps the Docker SDK for the resource primitives the session
lifecycle needs. Removal calls treat "not found" as success so teardown can
be repeated safely. Interactive sessions are the one place that shells out
to ``docker exec -it``: the SDK cannot hand the user's terminal to a
container process.
"""

import os
import shutil
import subprocess
import tarfile
import tempfile
from dataclasses import dataclass, field
from importlib import resources
from io import BytesIO
from pathlib import Path

import docker
import structlog
from docker.errors import APIError, BuildError, DockerException, NotFound
from dotenv import dotenv_values

from cbox.config import settings
from cbox.errors import ContainerError
from cbox.storage import safe_branch

logger = structlog.get_logger(__name__)

CLAUDE_HOME = "/home/claude"
WORKSPACE = "/workspace"
CONVERSATION_DIR = f"{CLAUDE_HOME}/.claude/projects/-workspace"


def image_name(project: str, role: str = "claude") -> str:
    return f"cbox-{project}-{role}:latest"


def container_name(project: str, branch: str, role: str = "claude") -> str:
    return f"cbox-{project}-{safe_branch(branch)}-{role}"


def network_name(project: str, branch: str) -> str:
    return f"cbox-{project}-{safe_branch(branch)}"


def parse_port_bindings(ports: list[str]) -> dict[str, int | tuple[str, int]]:
    """Convert ``docker -p`` style specs into SDK port bindings.

    Accepts ``"3000"``, ``"8080:3000"`` and ``"127.0.0.1:8080:3000"``.

    Raises:
        ValueError: If a spec is malformed.
    """
    bindings: dict[str, int | tuple[str, int]] = {}
    for spec in ports:
        parts = spec.split(":")
        try:
            if len(parts) == 1:
                bindings[f"{int(parts[0])}/tcp"] = int(parts[0])
            elif len(parts) == 2:
                bindings[f"{int(parts[1])}/tcp"] = int(parts[0])
            elif len(parts) == 3:
                bindings[f"{int(parts[2])}/tcp"] = (parts[0], int(parts[1]))
            else:
                raise ValueError(spec)
        except ValueError as e:
            raise ValueError(f"invalid port mapping {spec!r}") from e
    return bindings


def collect_environment(names: list[str], env_file: str | Path | None = None) -> dict[str, str]:
    """Environment for the container: env-file values, then forwarded host vars.

    Host variables that are unset or empty are not forwarded. A missing env
    file is ignored.
    """
    env: dict[str, str] = {}
    if env_file and Path(env_file).is_file():
        env.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    for name in names:
        value = os.environ.get(name, "")
        if value:
            env[name] = value
    return env


@dataclass
class ExecResult:
    """Result of a one-shot command run inside a container."""

    exit_code: int
    output: str


@dataclass
class FileEntry:
    """A file (or symlink) to place inside a container."""

    path: str
    content: bytes = b""
    mode: int = 0o644
    symlink_to: str = ""


@dataclass
class AgentContainerSpec:
    """Everything needed to start the agent container for a branch."""

    name: str
    image: str
    network: str
    worktree_path: str
    environment: dict[str, str] = field(default_factory=dict)
    ports: list[str] = field(default_factory=list)


class DockerRuntime:
    """Container engine operations used by the session lifecycle."""

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client.

        Raises:
            ContainerError: If the Docker daemon cannot be reached.
        """
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                logger.error("docker_unavailable", error=str(e))
                raise ContainerError(f"connecting to Docker: {e}") from e
        return self._client

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def build_image(self, tag: str, dockerfile: Path | None = None, no_cache: bool = False) -> None:
        """Build the agent image from the packaged or a custom Dockerfile.

        The build context always contains the packaged ``entrypoint.sh``.

        Raises:
            ContainerError: If the build fails.
        """
        templates = resources.files("cbox.sandbox") / "templates"
        with tempfile.TemporaryDirectory(prefix="cbox-build-") as context:
            ctx = Path(context)
            (ctx / "entrypoint.sh").write_bytes((templates / "entrypoint.sh").read_bytes())
            (ctx / "entrypoint.sh").chmod(0o755)
            if dockerfile is not None:
                try:
                    shutil.copyfile(dockerfile, ctx / "Dockerfile.claude")
                except OSError as e:
                    raise ContainerError(f"reading custom Dockerfile {dockerfile}: {e}") from e
            else:
                (ctx / "Dockerfile.claude").write_bytes((templates / "Dockerfile.claude").read_bytes())

            try:
                self.client.images.build(
                    path=str(ctx),
                    dockerfile="Dockerfile.claude",
                    tag=tag,
                    nocache=no_cache,
                    rm=True,
                )
            except (BuildError, APIError) as e:
                logger.error("image_build_failed", image=tag, error=str(e))
                raise ContainerError(f"building image {tag}: {e}") from e
        logger.info("image_built", image=tag, no_cache=no_cache)

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    def create_network(self, name: str) -> None:
        """Create a bridge network; an existing one is reused.

        Raises:
            ContainerError: If the network cannot be created.
        """
        try:
            if self.client.networks.list(names=[name]):
                return
            self.client.networks.create(name, driver="bridge")
        except APIError as e:
            if "already exists" in str(e):
                return
            raise ContainerError(f"creating network {name}: {e}") from e
        logger.info("network_created", network=name)

    def remove_network(self, name: str) -> None:
        """Remove a network; a missing one is not an error."""
        if not name:
            return
        try:
            self.client.networks.get(name).remove()
            logger.info("network_removed", network=name)
        except NotFound:
            pass
        except APIError as e:
            logger.warning("network_remove_failed", network=name, error=str(e))

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def _get_container(self, name: str):
        try:
            return self.client.containers.get(name)
        except APIError as e:
            raise ContainerError(f"looking up container {name}: {e}") from e

    def container_running(self, name: str) -> bool:
        try:
            return self.client.containers.get(name).status == "running"
        except NotFound:
            return False
        except APIError as e:
            raise ContainerError(f"inspecting container {name}: {e}") from e

    def stop_and_remove(self, name: str) -> None:
        """Stop and remove a container; a missing one is not an error.

        Raises:
            ContainerError: If the engine refuses to stop or remove it.
        """
        if not name:
            return
        try:
            container = self.client.containers.get(name)
            container.stop(timeout=settings.container_stop_timeout_seconds)
            container.remove(force=True)
            logger.info("container_removed", container=name)
        except NotFound:
            pass  # Already removed
        except APIError as e:
            logger.error("container_remove_failed", container=name, error=str(e))
            raise ContainerError(f"removing container {name}: {e}") from e

    def run_agent_container(self, spec: AgentContainerSpec) -> str:
        """Start the agent container and return its id.

        Raises:
            ContainerError: If the container cannot be started.
        """
        try:
            container = self.client.containers.run(
                spec.image,
                name=spec.name,
                detach=True,
                network=spec.network,
                volumes={
                    spec.worktree_path: {"bind": WORKSPACE, "mode": "rw"},
                    "/var/run/docker.sock": {"bind": "/var/run/docker.sock", "mode": "rw"},
                },
                environment=spec.environment,
                ports=parse_port_bindings(spec.ports),
                extra_hosts={"host.docker.internal": "host-gateway"},
                working_dir=WORKSPACE,
            )
        except (APIError, ValueError) as e:
            logger.error("container_start_failed", container=spec.name, error=str(e))
            raise ContainerError(f"starting container {spec.name}: {e}") from e
        logger.info("container_started", container=spec.name, container_id=container.id[:12])
        return container.id

    def run_traefik(self, name: str, image: str, proxy_port: int, dynamic_dir: Path) -> None:
        """Start the shared reverse proxy reading routes from ``dynamic_dir``.

        Raises:
            ContainerError: If the proxy cannot be started.
        """
        try:
            self.client.containers.run(
                image,
                name=name,
                detach=True,
                ports={"80/tcp": proxy_port},
                volumes={str(dynamic_dir): {"bind": "/etc/traefik/dynamic", "mode": "ro"}},
                extra_hosts={"host.docker.internal": "host-gateway"},
                command=[
                    "--entrypoints.web.address=:80",
                    "--providers.file.directory=/etc/traefik/dynamic",
                    "--providers.file.watch=true",
                ],
            )
        except APIError as e:
            raise ContainerError(f"starting traefik: {e}") from e
        logger.info("traefik_started", container=name, proxy_port=proxy_port)

    # ------------------------------------------------------------------
    # Inside the container
    # ------------------------------------------------------------------

    def put_files(self, name: str, entries: list[FileEntry], owner: str = "claude") -> None:
        """Write files and symlinks into a running container.

        Entries are packed into one tar archive extracted at ``/`` and then
        chowned to ``owner``.

        Raises:
            ContainerError: If the container is missing or rejects the archive.
        """
        container = self._get_container(name)
        tar_stream = BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            for entry in entries:
                info = tarfile.TarInfo(name=entry.path.lstrip("/"))
                if entry.symlink_to:
                    info.type = tarfile.SYMTYPE
                    info.linkname = entry.symlink_to
                    tar.addfile(info)
                else:
                    info.size = len(entry.content)
                    info.mode = entry.mode
                    tar.addfile(info, BytesIO(entry.content))
        tar_stream.seek(0)

        parents = sorted({str(Path(e.path).parent) for e in entries})
        try:
            container.exec_run(["mkdir", "-p", *parents], user="root")
            container.put_archive("/", tar_stream)
            container.exec_run(["chown", "-h", f"{owner}:{owner}", *[e.path for e in entries]], user="root")
        except APIError as e:
            raise ContainerError(f"copying files into {name}: {e}") from e

    def exec(self, name: str, command: list[str], user: str = "claude") -> ExecResult:
        container = self._get_container(name)
        try:
            result = container.exec_run(command, user=user, workdir=WORKSPACE)
        except APIError as e:
            raise ContainerError(f"running {command[0]} in {name}: {e}") from e
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return ExecResult(exit_code=result.exit_code, output=output)

    def has_conversation_history(self, name: str) -> bool:
        """Whether Claude has saved a conversation for ``/workspace``."""
        result = self.exec(name, ["sh", "-c", f"ls {CONVERSATION_DIR}/*.jsonl >/dev/null 2>&1"])
        return result.exit_code == 0

    def interactive(self, name: str, command: list[str], user: str = "claude") -> int:
        """Run ``command`` in the container attached to the user's terminal."""
        args = ["docker", "exec", "-it", "-u", user, name, *command]
        return subprocess.run(args).returncode
