"""Process Supervisor for detached helper processes.

Helpers (bridge proxy, command proxy, serve runner) are this same program
re-invoked with a private subcommand. Each runs in its own session so it
survives the parent's exit, and confirms readiness by printing exactly one
JSON line on stdout before going quiet.
"""

import os
import selectors
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path

import structlog
from pydantic import ValidationError

from cbox.config import settings
from cbox.errors import HelperStartError
from cbox.models.schemas import HelperHandshake

logger = structlog.get_logger(__name__)


@dataclass
class HelperProcess:
    """A started helper and its confirmed handshake."""

    pid: int
    handshake: HelperHandshake


def self_command(*args: str) -> list[str]:
    """Argv that re-invokes this program with ``args``."""
    return [sys.executable, "-m", "cbox", *args]


def emit_handshake(handshake: HelperHandshake) -> None:
    """Print the handshake line and detach stdout from the parent's pipe.

    Called by helper processes once they are ready. After this the parent
    stops reading, so any later stdout writes go to /dev/null instead of a
    closed pipe.
    """
    sys.stdout.write(handshake.model_dump_json() + "\n")
    sys.stdout.flush()
    devnull = os.open(os.devnull, os.O_WRONLY)
    os.dup2(devnull, sys.stdout.fileno())
    os.close(devnull)


def _read_first_line(proc: subprocess.Popen[bytes], timeout: float) -> bytes:
    """The helper's first stdout line, or whatever arrived before ``timeout``."""
    assert proc.stdout is not None
    fd = proc.stdout.fileno()
    buffer = b""
    deadline = time.monotonic() + timeout
    with selectors.DefaultSelector() as sel:
        sel.register(fd, selectors.EVENT_READ)
        while b"\n" not in buffer:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not sel.select(remaining):
                break
            chunk = os.read(fd, 4096)
            if not chunk:
                break
            buffer += chunk
    return buffer.split(b"\n", 1)[0]


class ProcessSupervisor:
    """Starts and stops detached helper processes.

    Helpers started by this supervisor are tracked by pid so their exit
    status is collected through ``Popen``. Pids recorded by an earlier
    invocation are signalled directly.
    """

    def __init__(
        self,
        start_timeout: float | None = None,
        stop_timeout: float | None = None,
    ) -> None:
        self.start_timeout = start_timeout if start_timeout is not None else settings.helper_start_timeout_seconds
        self.stop_timeout = stop_timeout if stop_timeout is not None else settings.process_stop_timeout_seconds
        self._children: dict[int, subprocess.Popen[bytes]] = {}

    def start(
        self,
        argv: list[str],
        log_path: Path | None = None,
        cwd: str | Path | None = None,
        require_port: bool = True,
    ) -> HelperProcess:
        """Launch ``argv`` detached and read its handshake line.

        Args:
            argv: Full command line of the helper.
            log_path: File receiving the helper's stderr (inherited if None).
            cwd: Working directory for the helper.
            require_port: Reject a handshake whose port is not positive.

        Returns:
            The helper's pid and parsed handshake.

        Raises:
            HelperStartError: If the helper cannot be started or its first
                line is missing or not a valid handshake. The helper is
                killed in that case.
        """
        stderr = None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            stderr = log_path.open("ab")
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=stderr,
                cwd=cwd,
                start_new_session=True,
            )
        except OSError as e:
            raise HelperStartError(f"starting helper {argv[-1] if argv else ''}: {e}") from e
        finally:
            if stderr is not None:
                stderr.close()
        self._children[proc.pid] = proc

        try:
            line = _read_first_line(proc, self.start_timeout)
        finally:
            assert proc.stdout is not None
            proc.stdout.close()

        try:
            handshake = HelperHandshake.model_validate_json(line)
            if require_port and handshake.port <= 0:
                raise ValueError(f"no listening port in handshake: {line.decode(errors='replace')}")
        except (ValidationError, ValueError) as e:
            self.kill(proc.pid)
            logger.error("helper_handshake_invalid", argv=argv, line=line[:200])
            detail = line.decode(errors="replace").strip() or "no output"
            raise HelperStartError(f"helper did not report readiness: {detail}") from e

        logger.info("helper_started", pid=proc.pid, port=handshake.port)
        return HelperProcess(pid=proc.pid, handshake=handshake)

    def _alive(self, pid: int) -> bool:
        proc = self._children.get(pid)
        if proc is None:
            return _pid_alive(pid)
        if proc.poll() is None:
            return True
        del self._children[pid]
        return False

    def stop(self, pid: int) -> None:
        """Send SIGTERM to ``pid`` and wait for it to exit.

        Escalates to SIGKILL after the stop timeout. A pid of 0 or a process
        that is already gone is silently ignored.
        """
        if pid <= 0:
            return
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            self._children.pop(pid, None)
            return
        except PermissionError as e:
            logger.warning("helper_stop_denied", pid=pid, error=str(e))
            return

        deadline = time.monotonic() + self.stop_timeout
        while time.monotonic() < deadline:
            if not self._alive(pid):
                logger.info("helper_stopped", pid=pid)
                return
            time.sleep(0.05)
        self.kill(pid)
        logger.warning("helper_killed", pid=pid)

    def kill(self, pid: int) -> None:
        if pid <= 0:
            return
        try:
            os.kill(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            self._children.pop(pid, None)
            return
        deadline = time.monotonic() + 1.0
        while self._alive(pid) and time.monotonic() < deadline:
            time.sleep(0.01)


def _pid_alive(pid: int) -> bool:
    """Whether ``pid`` still exists, reaping it first if it is our child."""
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
        if reaped == pid:
            return False
    except ChildProcessError:
        pass
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
