"""Browser bridge proxy helper.

Claude's browser extension exposes Unix sockets in a per-user directory on
the host. Containers cannot reach host Unix sockets, so this helper
republishes each live socket on its own TCP port; the container entrypoint
recreates the sockets with socat pointing at ``host.docker.internal``.
"""

import asyncio
import signal
import socket
from pathlib import Path

import structlog

from cbox.models.schemas import HelperHandshake, ProxyMapping
from cbox.sandbox.supervisor import emit_handshake

logger = structlog.get_logger(__name__)

_CHUNK = 64 * 1024


def discover_sockets(socket_dir: str | Path) -> list[Path]:
    """Connectable ``*.sock`` files in ``socket_dir``, sorted by name.

    Stale socket files left behind by a dead browser are skipped.
    """
    directory = Path(socket_dir)
    if not directory.is_dir():
        return []
    live: list[Path] = []
    for path in sorted(directory.glob("*.sock")):
        probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        probe.settimeout(0.5)
        try:
            probe.connect(str(path))
        except OSError:
            logger.debug("bridge_socket_stale", socket=str(path))
            continue
        finally:
            probe.close()
        live.append(path)
    return live


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while data := await reader.read(_CHUNK):
            writer.write(data)
            await writer.drain()
    except (ConnectionError, asyncio.IncompleteReadError):
        pass
    finally:
        writer.close()


def _relay_handler(socket_path: Path):
    async def handle(client_reader: asyncio.StreamReader, client_writer: asyncio.StreamWriter) -> None:
        try:
            upstream_reader, upstream_writer = await asyncio.open_unix_connection(str(socket_path))
        except OSError as e:
            logger.warning("bridge_upstream_unavailable", socket=str(socket_path), error=str(e))
            client_writer.close()
            return
        await asyncio.gather(
            _pipe(client_reader, upstream_writer),
            _pipe(upstream_reader, client_writer),
        )

    return handle


async def serve_bridge(
    socket_dir: str | Path,
    host: str = "0.0.0.0",
    ready: asyncio.Future[list[ProxyMapping]] | None = None,
    stop: asyncio.Event | None = None,
) -> list[ProxyMapping]:
    """Relay every live socket in ``socket_dir`` over TCP until ``stop`` is set.

    Returns immediately with no mappings when there are no live sockets.
    """
    servers: list[asyncio.Server] = []
    mappings: list[ProxyMapping] = []
    for path in discover_sockets(socket_dir):
        server = await asyncio.start_server(_relay_handler(path), host=host, port=0)
        port = server.sockets[0].getsockname()[1]
        servers.append(server)
        mappings.append(ProxyMapping(socket_name=path.name, tcp_port=port))
        logger.info("bridge_relay_listening", socket=path.name, port=port)

    if ready is not None:
        ready.set_result(mappings)
    if not servers:
        return mappings

    stop = stop or asyncio.Event()
    try:
        await stop.wait()
    finally:
        for server in servers:
            server.close()
            await server.wait_closed()
    return mappings


async def _run_helper(socket_dir: str) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    ready: asyncio.Future[list[ProxyMapping]] = loop.create_future()
    task = asyncio.create_task(serve_bridge(socket_dir, ready=ready, stop=stop))
    mappings = await ready
    emit_handshake(
        HelperHandshake(port=mappings[0].tcp_port if mappings else 0, mappings=mappings)
    )
    await task


def run_bridge_helper(socket_dir: str) -> None:
    """Entry point of the ``_bridge-proxy`` helper subcommand."""
    asyncio.run(_run_helper(socket_dir))
