#!/usr/bin/env python3
"""Command proxy client, run inside the sandbox container.

This file is copied into the container as ``/home/claude/bin/.cbox-host-cmd``
with one symlink per exposed command, so it must only use the standard
library. Invoked through a symlink (``git status``), the symlink name is the
command; invoked directly, the first argument is.

Wire protocol, shared with the host-side server:

1. Client sends one JSON line ``{"cmd": ..., "args": [...], "cwd": ...}``.
2. Server answers one JSON line ``{"ok": true}`` or ``{"error": "..."}``.
3. Both sides exchange frames ``[type:1][length:4, big-endian][data]``.
"""

import json
import os
import signal
import socket
import struct
import sys
import threading

FRAME_STDIN = 0
FRAME_STDOUT = 1
FRAME_STDERR = 2
FRAME_EXIT = 3
FRAME_SIGNAL = 4
FRAME_STDIN_EOF = 5

HEADER = struct.Struct(">BI")
MAX_FRAME = 16 * 1024 * 1024
CLIENT_NAME = ".cbox-host-cmd"


def encode_frame(kind, data=b""):
    return HEADER.pack(kind, len(data)) + data


def decode_header(header):
    kind, length = HEADER.unpack(header)
    if length > MAX_FRAME:
        raise ValueError(f"frame too large: {length}")
    return kind, length


def encode_exit_code(code):
    return struct.pack(">i", code)


def decode_exit_code(data):
    return struct.unpack(">i", data[:4])[0]


def _read_exact(stream, n):
    buf = b""
    while len(buf) < n:
        chunk = stream.read(n - len(buf))
        if not chunk:
            return None
        buf += chunk
    return buf


def read_frame(stream):
    """Read one frame from a binary stream; None at end of stream."""
    header = _read_exact(stream, HEADER.size)
    if header is None:
        return None
    kind, length = decode_header(header)
    data = _read_exact(stream, length) if length else b""
    if data is None:
        return None
    return kind, data


def run(address, cmd, args, cwd, stdin=None, stdout=None, stderr=None):
    """Run ``cmd`` on the host through the proxy at ``address`` (host:port).

    Returns the remote exit code.
    """
    stdin = stdin if stdin is not None else sys.stdin.buffer
    stdout = stdout if stdout is not None else sys.stdout.buffer
    stderr = stderr if stderr is not None else sys.stderr.buffer

    host, _, port = address.rpartition(":")
    sock = socket.create_connection((host, int(port)))
    send_lock = threading.Lock()

    def send(kind, data=b""):
        with send_lock:
            sock.sendall(encode_frame(kind, data))

    try:
        request = {"cmd": cmd, "args": list(args), "cwd": cwd}
        sock.sendall(json.dumps(request).encode() + b"\n")
        reader = sock.makefile("rb")
        line = reader.readline()
        response = json.loads(line) if line else {"error": "connection closed"}
        if not response.get("ok"):
            stderr.write(f"cbox: {response.get('error', 'request rejected')}\n".encode())
            stderr.flush()
            return 126

        def pump_stdin():
            try:
                read = getattr(stdin, "read1", stdin.read)
                while True:
                    chunk = read(32 * 1024)
                    if not chunk:
                        break
                    send(FRAME_STDIN, chunk)
                send(FRAME_STDIN_EOF)
            except (OSError, ValueError):
                pass

        threading.Thread(target=pump_stdin, daemon=True).start()

        if threading.current_thread() is threading.main_thread():
            def forward(signum, _frame):
                try:
                    send(FRAME_SIGNAL, struct.pack(">I", signum))
                except OSError:
                    pass

            for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
                signal.signal(sig, forward)

        while True:
            frame = read_frame(reader)
            if frame is None:
                return 1
            kind, data = frame
            if kind == FRAME_STDOUT:
                stdout.write(data)
                stdout.flush()
            elif kind == FRAME_STDERR:
                stderr.write(data)
                stderr.flush()
            elif kind == FRAME_EXIT:
                return decode_exit_code(data)
    finally:
        sock.close()


def main():
    name = os.path.basename(sys.argv[0])
    argv = sys.argv[1:]
    if name in (CLIENT_NAME, "hostcmd_client.py"):
        if not argv:
            sys.stderr.write(f"usage: {CLIENT_NAME} <command> [args...]\n")
            sys.exit(2)
        name, argv = argv[0], argv[1:]

    address = os.environ.get("CBOX_HOST_CMD_ADDR", "")
    if not address:
        sys.stderr.write("cbox: CBOX_HOST_CMD_ADDR is not set\n")
        sys.exit(1)
    try:
        code = run(address, name, argv, os.getcwd())
    except OSError as e:
        sys.stderr.write(f"cbox: command proxy unreachable: {e}\n")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
