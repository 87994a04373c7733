"""
Client session: one live connection to a ShareDir server.

A Session owns the socket and its FramedChannel, remembers the server-side
virtual directory, and serializes writes with a single lock held for one
line or one payload chunk at a time. Any read that times out or hits a
closed stream tears the Session down before the error propagates, so a
dead Session is never reused.
"""

from __future__ import annotations

import logging
import socket
import threading
from enum import Enum, auto
from typing import Callable, Iterator

from .channel import FramedChannel, tune
from .errors import ChannelTimeout, ConnectionClosed, ShareDirError
from .protocol import BYE, Verb, command_line

log = logging.getLogger("sharedir.session")


class ConnectionState(Enum):
    """Client connection lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    RECONNECTING = auto()
    ERROR = auto()


class Session:
    """Socket + channel + write lock for one connection."""

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self.banner = ""
        self.virtual_path = "/"
        self._channel: FramedChannel | None = None
        self._write_lock = threading.Lock()

    @classmethod
    def open(
        cls,
        host: str,
        port: int,
        connect_timeout: float | None = 5.0,
        banner_timeout: float | None = 10.0,
    ) -> Session:
        """Dial *host*:*port* and read the server banner."""
        session = cls(host, port)
        try:
            sock = socket.create_connection((host, port), timeout=connect_timeout)
        except TimeoutError as exc:
            raise ChannelTimeout(f"Connection to {host}:{port} timed out") from exc
        except OSError as exc:
            raise ConnectionClosed(f"Cannot connect to {host}:{port}: {exc.strerror or exc}") from exc
        tune(sock)
        session._channel = FramedChannel(sock)
        session.banner = session.read_line(banner_timeout)
        log.debug("Connected to %s:%d: %s", host, port, session.banner)
        return session

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._channel is not None and not self._channel.closed

    def _require(self) -> FramedChannel:
        if self._channel is None or self._channel.closed:
            raise ConnectionClosed("Session is not connected")
        return self._channel

    # ------------------------------------------------------------------
    # Writing (locked per write)
    # ------------------------------------------------------------------

    def send_line(self, text: str) -> None:
        self.send_lines(text)

    def send_lines(self, *texts: str) -> None:
        """Send a command and its follow-up header lines as one write."""
        with self._write_lock:
            try:
                self._require().send_lines(*texts)
            except ConnectionClosed:
                self.teardown()
                raise

    def send_command(self, verb: Verb, argument: str = "") -> None:
        self.send_line(command_line(verb, argument))

    def write_chunk(self, data: bytes) -> None:
        with self._write_lock:
            try:
                self._require().write_bytes(data)
            except ConnectionClosed:
                self.teardown()
                raise

    # ------------------------------------------------------------------
    # Reading (unlocked, one outstanding command at a time)
    # ------------------------------------------------------------------

    def read_line(self, timeout: float | None = None) -> str:
        try:
            return self._require().read_line(timeout)
        except (ChannelTimeout, ConnectionClosed):
            self.teardown()
            raise

    def iter_chunks(self, total: int, chunk_size: int, timeout: float | None = None) -> Iterator[bytes]:
        try:
            yield from self._require().iter_chunks(total, chunk_size, timeout)
        except (ChannelTimeout, ConnectionClosed):
            self.teardown()
            raise

    def drain(
        self,
        total: int,
        chunk_size: int,
        timeout: float | None = None,
        on_bytes: Callable[[int], None] | None = None,
    ) -> int:
        drained = 0
        for piece in self.iter_chunks(total, chunk_size, timeout):
            drained += len(piece)
            if on_bytes is not None:
                on_bytes(len(piece))
        return drained

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def teardown(self) -> None:
        """Close the socket without saying goodbye."""
        if self._channel is not None and not self._channel.closed:
            log.debug("Tearing down session to %s:%d", self.host, self.port)
            self._channel.close()

    def close(self, timeout: float = 2.0) -> None:
        """Send QUIT, wait briefly for Bye, then close."""
        if self.connected:
            try:
                self.send_command(Verb.QUIT)
                reply = self.read_line(timeout)
                if reply != BYE:
                    log.debug("Unexpected QUIT reply: %r", reply)
            except ShareDirError as exc:
                log.debug("QUIT failed: %s", exc)
        self.teardown()
