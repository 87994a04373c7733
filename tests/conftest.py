"""Shared fixtures: a real FileServer on an ephemeral port, a connected
ShareClient, a raw line-level connection, and scripted fake servers for
failure injection."""

from __future__ import annotations

import socket
import threading
from pathlib import Path
from typing import Callable, Iterator

import pytest

from sharedir.channel import FramedChannel
from sharedir.client import ShareClient
from sharedir.config import ClientSettings
from sharedir.errors import ShareDirError
from sharedir.protocol import BANNER
from sharedir.server import FileServer

HOST = "127.0.0.1"


# ---------------------------------------------------------------------------
# Real server / client
# ---------------------------------------------------------------------------


@pytest.fixture()
def shared_root(tmp_path: Path) -> Path:
    root = tmp_path / "shared"
    root.mkdir()
    return root


@pytest.fixture()
def server(shared_root: Path) -> Iterator[FileServer]:
    srv = FileServer(shared_root, host=HOST, port=0, payload_timeout=10.0)
    srv.start()
    yield srv
    srv.stop()


@pytest.fixture()
def fast_settings() -> ClientSettings:
    """Client settings with short timeouts so failure paths run quickly."""
    return ClientSettings(
        connect_timeout=2.0,
        response_timeout=5.0,
        get_timeout=5.0,
        put_timeout=5.0,
        dir_timeout=5.0,
        noop_timeout=2.0,
        reconnect_timeout=2.0,
        reconnect_delay=0.05,
        progress_interval=0.0,
        keepalive_interval=0,
    )


@pytest.fixture()
def client(server: FileServer, fast_settings: ClientSettings) -> Iterator[ShareClient]:
    c = ShareClient(fast_settings)
    result = c.connect(HOST, server.port)
    assert result.ok, result.message
    yield c
    c.disconnect()


@pytest.fixture()
def raw(server: FileServer) -> Iterator[FramedChannel]:
    """A bare FramedChannel to the real server, banner already consumed."""
    sock = socket.create_connection((HOST, server.port), timeout=5)
    ch = FramedChannel(sock)
    assert ch.read_line(5) == BANNER
    yield ch
    ch.close()


# ---------------------------------------------------------------------------
# Scripted peers
# ---------------------------------------------------------------------------


Script = Callable[[FramedChannel, int], None]


class ScriptedServer:
    """Accepts connections and hands each to ``script(channel, index)``."""

    def __init__(self, script: Script) -> None:
        self._script = script
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind((HOST, 0))
        self._sock.listen(8)
        self._sock.settimeout(0.2)
        self.port: int = self._sock.getsockname()[1]
        self.accepted = 0
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except TimeoutError:
                continue
            except OSError:
                break
            index = self.accepted
            self.accepted += 1
            threading.Thread(
                target=self._serve, args=(FramedChannel(conn), index), daemon=True
            ).start()

    def _serve(self, ch: FramedChannel, index: int) -> None:
        try:
            self._script(ch, index)
        except ShareDirError:
            pass
        finally:
            ch.close()

    def close(self) -> None:
        self._stop.set()
        try:
            self._sock.close()
        except OSError:
            pass
        self._thread.join(timeout=2)


@pytest.fixture()
def scripted_server() -> Iterator[Callable[[Script], ScriptedServer]]:
    started: list[ScriptedServer] = []

    def start(script: Script) -> ScriptedServer:
        srv = ScriptedServer(script)
        started.append(srv)
        return srv

    yield start
    for srv in started:
        srv.close()
