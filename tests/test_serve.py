"""Tests for sandbox/serve.py and sandbox/bridge.py helpers."""

import asyncio
import re
import socket
from pathlib import Path

from cbox.models.schemas import ProxyMapping
from cbox.sandbox import serve
from cbox.sandbox.bridge import discover_sockets, serve_bridge


class TestPorts:
    """Port allocation and placeholder expansion."""

    def test_fixed_port_wins(self) -> None:
        assert serve.allocate_port(8123) == 8123

    def test_allocated_port_is_free(self) -> None:
        port = serve.allocate_port()
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", port))

    def test_expand_port_placeholders(self) -> None:
        expanded = serve.expand_port_placeholders("web --port $Port --api $Port2 --proxy $Port2 --db $Port3", 5000)
        match = re.fullmatch(r"web --port 5000 --api (\d+) --proxy (\d+) --db (\d+)", expanded)
        assert match is not None
        api, proxy, db = match.groups()
        assert api == proxy
        assert "5000" not in (api, db)

    def test_no_placeholders(self) -> None:
        assert serve.expand_port_placeholders("npm start", 3000) == "npm start"


class TestRouting:
    """Traefik route files and URLs."""

    def test_serve_url(self) -> None:
        assert serve.serve_url("feature-x", "proj", 80) == "http://feature-x.proj.dev.localhost"
        assert serve.serve_url("feature-x", "proj", 0) == "http://feature-x.proj.dev.localhost"
        assert serve.serve_url("feature-x", "proj", 8080) == "http://feature-x.proj.dev.localhost:8080"

    def test_add_and_remove_route(self, project_dir: Path) -> None:
        assert not serve.has_routes(project_dir)
        path = serve.add_route(project_dir, "feature-x", "proj", 4100)

        content = path.read_text()
        assert "Host(`feature-x.proj.dev.localhost`)" in content
        assert "http://host.docker.internal:4100" in content
        assert serve.has_routes(project_dir)

        serve.remove_route(project_dir, "feature-x")
        serve.remove_route(project_dir, "feature-x")
        assert not serve.has_routes(project_dir)

    def test_traefik_name(self) -> None:
        assert serve.traefik_container_name("proj") == "cbox-proj-traefik"


class TestBridgeDiscovery:
    """Live socket discovery for the browser bridge."""

    def test_skips_stale_and_non_socket_files(self, tmp_path: Path) -> None:
        live_path = tmp_path / "live.sock"
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        server.bind(str(live_path))
        server.listen(1)

        stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        stale.bind(str(tmp_path / "stale.sock"))
        stale.close()
        (tmp_path / "notes.txt").write_text("x")
        try:
            assert discover_sockets(tmp_path) == [live_path]
        finally:
            server.close()

    def test_missing_directory(self, tmp_path: Path) -> None:
        assert discover_sockets(tmp_path / "nope") == []


class TestBridgeRelay:
    """TCP to Unix socket relaying."""

    async def test_relays_bytes_both_ways(self, tmp_path: Path) -> None:
        async def echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            writer.write(await reader.read(1024))
            await writer.drain()
            writer.close()

        upstream = await asyncio.start_unix_server(echo, path=str(tmp_path / "browser.sock"))
        loop = asyncio.get_running_loop()
        ready: asyncio.Future[list[ProxyMapping]] = loop.create_future()
        stop = asyncio.Event()
        task = asyncio.create_task(serve_bridge(tmp_path, host="127.0.0.1", ready=ready, stop=stop))
        try:
            mappings = await ready
            assert [m.socket_name for m in mappings] == ["browser.sock"]

            reader, writer = await asyncio.open_connection("127.0.0.1", mappings[0].tcp_port)
            writer.write(b"ping")
            await writer.drain()
            assert await asyncio.wait_for(reader.read(1024), timeout=5) == b"ping"
            writer.close()
        finally:
            stop.set()
            await task
            upstream.close()
            await upstream.wait_closed()

    async def test_no_sockets_returns_immediately(self, tmp_path: Path) -> None:
        assert await serve_bridge(tmp_path) == []
