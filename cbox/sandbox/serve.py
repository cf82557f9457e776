"""Dev server support: the serve-runner helper and Traefik routing.

A configured serve command runs on the host (not in the container) under a
detached serve-runner helper. A per-project Traefik container routes
``http://<branch>.<project>.dev.localhost`` to it through one dynamic route
file per branch.
"""

import os
import re
import signal
import socket
import subprocess
import sys
import threading
import time
from pathlib import Path

import structlog

from cbox.models.schemas import HelperHandshake
from cbox.sandbox.supervisor import emit_handshake
from cbox.storage import state_dir

logger = structlog.get_logger(__name__)

DEFAULT_PROXY_PORT = 80
EARLY_EXIT_WINDOW_SECONDS = 0.5
CHILD_STOP_GRACE_SECONDS = 5.0

_EXTRA_PORT = re.compile(r"\$Port(\d+)")


def allocate_port(fixed_port: int = 0) -> int:
    """A free TCP port on localhost, or ``fixed_port`` when it is set."""
    if fixed_port > 0:
        return fixed_port
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def expand_port_placeholders(command: str, port: int) -> str:
    """Replace ``$Port2``, ``$Port3``... with fresh ports, then ``$Port`` with ``port``.

    Repeated occurrences of the same ``$PortN`` get the same port.
    """
    extra: dict[str, int] = {}

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in extra:
            extra[key] = allocate_port()
        return str(extra[key])

    return _EXTRA_PORT.sub(_sub, command).replace("$Port", str(port))


# ---------------------------------------------------------------------------
# Traefik routing
# ---------------------------------------------------------------------------


def traefik_container_name(project: str) -> str:
    return f"cbox-{project}-traefik"


def dynamic_dir(project_dir: str | Path) -> Path:
    return state_dir(project_dir) / "traefik" / "dynamic"


def route_host(safe_branch: str, project: str) -> str:
    return f"{safe_branch}.{project}.dev.localhost"


def serve_url(safe_branch: str, project: str, proxy_port: int) -> str:
    host = route_host(safe_branch, project)
    if proxy_port in (0, DEFAULT_PROXY_PORT):
        return f"http://{host}"
    return f"http://{host}:{proxy_port}"


def add_route(project_dir: str | Path, safe_branch: str, project: str, backend_port: int) -> Path:
    """Write the Traefik route file sending the branch host to ``backend_port``."""
    directory = dynamic_dir(project_dir)
    directory.mkdir(parents=True, exist_ok=True)
    host = route_host(safe_branch, project)
    content = (
        "http:\n"
        "  routers:\n"
        f"    {safe_branch}:\n"
        f'      rule: "Host(`{host}`)"\n'
        f"      service: {safe_branch}\n"
        "  services:\n"
        f"    {safe_branch}:\n"
        "      loadBalancer:\n"
        "        servers:\n"
        f'          - url: "http://host.docker.internal:{backend_port}"\n'
    )
    path = directory / f"{safe_branch}.yml"
    path.write_text(content)
    return path


def remove_route(project_dir: str | Path, safe_branch: str) -> None:
    (dynamic_dir(project_dir) / f"{safe_branch}.yml").unlink(missing_ok=True)


def has_routes(project_dir: str | Path) -> bool:
    directory = dynamic_dir(project_dir)
    return directory.is_dir() and any(directory.glob("*.yml"))


# ---------------------------------------------------------------------------
# Serve runner helper
# ---------------------------------------------------------------------------


def run_serve_helper(command: str, fixed_port: int, workdir: str) -> None:
    """Entry point of the ``_serve-runner`` helper subcommand.

    Starts ``command`` under ``sh -c``, reports the port once the command
    has survived its first half second, then waits for SIGTERM and stops the
    child with a grace period.

    Raises:
        SystemExit: If the command exits during startup.
    """
    port = allocate_port(fixed_port)
    expanded = expand_port_placeholders(command, port)
    # stdout carries the handshake; the dev server writes to the log on stderr.
    child = subprocess.Popen(
        ["sh", "-c", expanded],
        cwd=workdir,
        stdin=subprocess.DEVNULL,
        stdout=sys.stderr.fileno(),
        start_new_session=True,
    )
    logger.info("serve_started", command=expanded, port=port, pid=child.pid)

    try:
        code = child.wait(timeout=EARLY_EXIT_WINDOW_SECONDS)
    except subprocess.TimeoutExpired:
        pass
    else:
        logger.error("serve_exited_early", exit_code=code)
        raise SystemExit(f"serve command exited during startup (exit status {code})")

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    emit_handshake(HelperHandshake(port=port))

    while not stop.is_set() and child.poll() is None:
        stop.wait(0.2)

    if child.poll() is None:
        _stop_child(child)
    logger.info("serve_stopped", exit_code=child.returncode)


def _stop_child(child: subprocess.Popen[bytes]) -> None:
    try:
        os.killpg(child.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    deadline = time.monotonic() + CHILD_STOP_GRACE_SECONDS
    while time.monotonic() < deadline:
        if child.poll() is not None:
            return
        time.sleep(0.1)
    try:
        os.killpg(child.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    child.wait()
