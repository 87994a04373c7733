"""
Framed channel — line and raw-byte I/O over one connected socket.

    ch = FramedChannel(sock)
    ch.send_line("GET report.pdf")
    if ch.read_line(timeout=10) == "SENDING_FILE":
        size = int(ch.read_line(timeout=10))
        for piece in ch.iter_chunks(size, 65536, timeout=120):
            ...

Read timeouts are applied per wait-for-data with select(), so the socket
stays in blocking mode and concurrent writers are never affected by a
reader's timeout. The channel does no locking of its own: callers that
share one channel between threads must serialize writes themselves.
"""

from __future__ import annotations

import logging
import select
import socket
from typing import Callable, Iterator

from .errors import ChannelTimeout, ConnectionClosed, ProtocolViolation
from .protocol import ENCODING, MAX_LINE_BYTES

log = logging.getLogger("sharedir.channel")

RECV_BYTES: int = 64 * 1024
SOCK_BUF: int = 1024 * 1024


def tune(sock: socket.socket) -> None:
    """Apply throughput-friendly socket options; failures are harmless."""
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except OSError:
        pass
    for opt in (socket.SO_SNDBUF, socket.SO_RCVBUF):
        try:
            sock.setsockopt(socket.SOL_SOCKET, opt, SOCK_BUF)
        except OSError:
            pass


class FramedChannel:
    """Newline-terminated UTF-8 lines plus length-delimited raw segments."""

    def __init__(self, sock: socket.socket, max_line: int = MAX_LINE_BYTES) -> None:
        sock.settimeout(None)
        self._sock = sock
        self._buf = bytearray()
        self._max_line = max_line
        self._closed = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def sock(self) -> socket.socket:
        return self._sock

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def send_line(self, text: str) -> None:
        self.send_lines(text)

    def send_lines(self, *texts: str) -> None:
        """Send several lines with a single write so they cannot be split."""
        for text in texts:
            if "\n" in text or "\r" in text:
                raise ValueError(f"Line must not contain a line break: {text!r}")
        payload = "".join(f"{t}\n" for t in texts).encode(ENCODING)
        self.write_bytes(payload)

    def write_bytes(self, data: bytes | bytearray | memoryview) -> None:
        if self._closed:
            raise ConnectionClosed("Channel is closed")
        try:
            self._sock.sendall(data)
        except (BrokenPipeError, ConnectionResetError, ConnectionAbortedError) as exc:
            raise ConnectionClosed(f"Connection lost while sending: {exc}") from exc
        except OSError as exc:
            if self._closed:
                raise ConnectionClosed("Channel is closed") from exc
            raise ConnectionClosed(f"Send failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_line(self, timeout: float | None = None) -> str:
        """
        Return the next line without its terminator.

        Raises ChannelTimeout if nothing arrives within *timeout* seconds,
        ConnectionClosed if the peer closes the stream first.
        """
        while True:
            idx = self._buf.find(b"\n")
            if idx >= 0:
                raw = bytes(self._buf[:idx])
                del self._buf[: idx + 1]
                line = raw.decode(ENCODING, errors="replace")
                if line.endswith("\r"):
                    line = line[:-1]
                if line.startswith("\ufeff"):
                    line = line[1:]
                return line
            if len(self._buf) > self._max_line:
                raise ProtocolViolation(f"Line exceeds {self._max_line} bytes")
            self._fill(timeout)

    def read_bytes(self, n: int, timeout: float | None = None) -> bytes:
        """Return exactly *n* bytes, raising ConnectionClosed on a short stream."""
        if n == 0:
            return b""
        parts = list(self.iter_chunks(n, n, timeout))
        return b"".join(parts)

    def iter_chunks(self, total: int, chunk_size: int, timeout: float | None = None) -> Iterator[bytes]:
        """
        Yield raw pieces of at most *chunk_size* bytes until exactly *total*
        bytes were consumed.

        A zero-byte read before *total* is reached raises ConnectionClosed
        carrying the received/expected counts.
        """
        remaining = total
        while remaining > 0:
            if self._buf:
                take = min(remaining, chunk_size, len(self._buf))
                piece = bytes(self._buf[:take])
                del self._buf[:take]
            else:
                self._wait_readable(timeout)
                try:
                    piece = self._sock.recv(min(remaining, chunk_size, RECV_BYTES))
                except (ConnectionResetError, ConnectionAbortedError) as exc:
                    raise ConnectionClosed(
                        f"Connection reset after {total - remaining}/{total} bytes",
                        received=total - remaining, expected=total,
                    ) from exc
                except OSError as exc:
                    raise ConnectionClosed(f"Receive failed: {exc}") from exc
                if not piece:
                    raise ConnectionClosed(
                        f"Connection closed after {total - remaining}/{total} bytes",
                        received=total - remaining, expected=total,
                    )
            remaining -= len(piece)
            yield piece

    def drain(
        self,
        total: int,
        chunk_size: int,
        timeout: float | None = None,
        on_bytes: Callable[[int], None] | None = None,
    ) -> int:
        """Read and discard *total* bytes; used to skip a payload and stay in sync."""
        drained = 0
        for piece in self.iter_chunks(total, chunk_size, timeout):
            drained += len(piece)
            if on_bytes is not None:
                on_bytes(len(piece))
        return drained

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        log.debug("Closing channel (%d unread bytes buffered)", len(self._buf))
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._sock.close()
        except OSError:
            pass

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _wait_readable(self, timeout: float | None) -> None:
        if self._closed:
            raise ConnectionClosed("Channel is closed")
        try:
            ready, _, _ = select.select([self._sock], [], [], timeout)
        except (OSError, ValueError) as exc:
            raise ConnectionClosed(f"Socket unusable: {exc}") from exc
        if not ready:
            raise ChannelTimeout(f"No data within {timeout:.1f}s")

    def _fill(self, timeout: float | None) -> None:
        self._wait_readable(timeout)
        try:
            data = self._sock.recv(RECV_BYTES)
        except (ConnectionResetError, ConnectionAbortedError) as exc:
            raise ConnectionClosed(f"Connection reset: {exc}") from exc
        except OSError as exc:
            raise ConnectionClosed(f"Receive failed: {exc}") from exc
        if not data:
            raise ConnectionClosed("Connection closed by peer")
        self._buf.extend(data)
