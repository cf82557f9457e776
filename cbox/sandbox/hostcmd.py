"""Command proxy: runs a whitelisted set of commands on the host for the sandbox.

The agent inside the container calls ``git``, ``gh`` or ``cbox-<name>``;
the in-container client forwards the call here, and this server runs the
command in the matching directory of the host worktree while streaming
stdin/stdout/stderr and the exit code over the framed protocol defined in
``hostcmd_client``.
"""

import asyncio
import json
import signal
from pathlib import Path

import structlog

from cbox.models.schemas import HelperHandshake
from cbox.sandbox.hostcmd_client import (
    FRAME_EXIT,
    FRAME_SIGNAL,
    FRAME_STDERR,
    FRAME_STDIN,
    FRAME_STDIN_EOF,
    FRAME_STDOUT,
    HEADER,
    decode_header,
    encode_exit_code,
    encode_frame,
)
from cbox.sandbox.supervisor import emit_handshake

logger = structlog.get_logger(__name__)

CONTAINER_ROOT = "/workspace"
NAMED_PREFIX = "cbox-"
EXIT_SPAWN_FAILED = 127


class CommandProxy:
    """Asyncio TCP server executing proxied commands inside one worktree.

    Attributes:
        worktree_path: Host directory mounted at ``/workspace`` in the sandbox.
        host_commands: Executables run as-is (``git``, ``gh``).
        named_commands: ``name -> shell command`` exposed as ``cbox-<name>``.
        builtins: ``command -> argv prefix`` for cbox's own tools.
    """

    def __init__(
        self,
        worktree_path: str | Path,
        host_commands: list[str] | None = None,
        named_commands: dict[str, str] | None = None,
        builtins: dict[str, list[str]] | None = None,
    ) -> None:
        self.worktree_path = Path(worktree_path).resolve()
        self.host_commands = set(host_commands or [])
        self.named_commands = dict(named_commands or {})
        self.builtins = dict(builtins or {})
        self._server: asyncio.Server | None = None

    @property
    def exposed_commands(self) -> list[str]:
        """Every command name the sandbox may call, sorted."""
        names = set(self.host_commands) | set(self.builtins)
        names |= {f"{NAMED_PREFIX}{name}" for name in self.named_commands}
        return sorted(names)

    def translate_cwd(self, container_cwd: str) -> Path:
        """Map a container path under ``/workspace`` to the host worktree.

        Paths outside ``/workspace`` map to the worktree root.

        Raises:
            ValueError: If the path escapes the worktree.
        """
        if container_cwd != CONTAINER_ROOT and not container_cwd.startswith(CONTAINER_ROOT + "/"):
            return self.worktree_path
        rel = container_cwd[len(CONTAINER_ROOT):].lstrip("/")
        host_path = (self.worktree_path / rel).resolve()
        if host_path != self.worktree_path and not host_path.is_relative_to(self.worktree_path):
            raise ValueError(f"path {container_cwd!r} escapes worktree")
        return host_path

    def resolve(self, cmd: str, args: list[str]) -> list[str] | None:
        """Argv to execute for a request, or None if the command is not allowed."""
        if cmd in self.host_commands:
            return [cmd, *args]
        if cmd in self.builtins:
            return [*self.builtins[cmd], *args]
        if cmd.startswith(NAMED_PREFIX):
            name = cmd[len(NAMED_PREFIX):]
            if name in self.named_commands:
                return ["sh", "-c", self.named_commands[name], cmd, *args]
        return None

    async def start(self, host: str = "0.0.0.0", port: int = 0) -> int:
        """Start listening and return the bound port."""
        self._server = await asyncio.start_server(self.handle, host=host, port=port)
        bound = self._server.sockets[0].getsockname()[1]
        logger.info("command_proxy_listening", port=bound, commands=self.exposed_commands)
        return bound

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Serve one proxied command over a client connection."""
        try:
            await self._handle(reader, writer)
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug("command_proxy_connection_lost", error=str(e))
        finally:
            writer.close()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        line = await reader.readline()
        try:
            request = json.loads(line)
            cmd = str(request["cmd"])
            args = [str(a) for a in request.get("args") or []]
            cwd_in = str(request.get("cwd") or CONTAINER_ROOT)
        except (ValueError, KeyError, TypeError):
            await _reply(writer, {"error": "invalid handshake JSON"})
            return

        argv = self.resolve(cmd, args)
        if argv is None:
            logger.warning("command_proxy_rejected", cmd=cmd)
            await _reply(writer, {"error": f"command not allowed: {cmd}"})
            return
        try:
            cwd = self.translate_cwd(cwd_in)
        except ValueError as e:
            await _reply(writer, {"error": str(e)})
            return

        await _reply(writer, {"ok": True})
        logger.info("command_proxy_exec", cmd=cmd, args=args, cwd=str(cwd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            writer.write(encode_frame(FRAME_STDERR, f"cbox: {cmd}: {e}\n".encode()))
            writer.write(encode_frame(FRAME_EXIT, encode_exit_code(EXIT_SPAWN_FAILED)))
            await writer.drain()
            return

        assert proc.stdout is not None and proc.stderr is not None
        outputs = [
            asyncio.create_task(_pump_to_frames(proc.stdout, writer, FRAME_STDOUT)),
            asyncio.create_task(_pump_to_frames(proc.stderr, writer, FRAME_STDERR)),
        ]
        inbound = asyncio.create_task(_pump_from_client(reader, proc))

        returncode = await proc.wait()
        await asyncio.gather(*outputs)
        inbound.cancel()
        try:
            await inbound
        except asyncio.CancelledError:
            pass

        code = returncode if returncode >= 0 else 128 - returncode
        writer.write(encode_frame(FRAME_EXIT, encode_exit_code(code)))
        await writer.drain()


async def _reply(writer: asyncio.StreamWriter, payload: dict[str, object]) -> None:
    writer.write(json.dumps(payload).encode() + b"\n")
    await writer.drain()


async def _pump_to_frames(stream: asyncio.StreamReader, writer: asyncio.StreamWriter, kind: int) -> None:
    while data := await stream.read(32 * 1024):
        writer.write(encode_frame(kind, data))
        await writer.drain()


async def _pump_from_client(reader: asyncio.StreamReader, proc: asyncio.subprocess.Process) -> None:
    assert proc.stdin is not None
    try:
        while True:
            kind, length = decode_header(await reader.readexactly(HEADER.size))
            data = await reader.readexactly(length) if length else b""
            if kind == FRAME_STDIN:
                proc.stdin.write(data)
                await proc.stdin.drain()
            elif kind == FRAME_STDIN_EOF:
                proc.stdin.close()
            elif kind == FRAME_SIGNAL and len(data) >= 4 and proc.returncode is None:
                proc.send_signal(int.from_bytes(data[:4], "big"))
    except (asyncio.IncompleteReadError, ConnectionError, ValueError):
        if not proc.stdin.is_closing():
            proc.stdin.close()


async def _run_helper(proxy: CommandProxy) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)
    port = await proxy.start()
    emit_handshake(HelperHandshake(port=port))
    try:
        await stop.wait()
    finally:
        await proxy.close()


def run_command_proxy_helper(
    worktree_path: str,
    host_commands: list[str],
    named_commands: dict[str, str],
    builtins: dict[str, list[str]],
) -> None:
    """Entry point of the ``_cmd-proxy`` helper subcommand."""
    proxy = CommandProxy(worktree_path, host_commands, named_commands, builtins)
    asyncio.run(_run_helper(proxy))
