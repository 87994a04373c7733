"""
Error kinds shared by the client and the server.

ShareDirError
├── ChannelTimeout      no data within the read timeout
├── ConnectionClosed    peer closed the stream / zero-byte read / dead socket
├── ProtocolViolation   unexpected token or unparsable header line
├── PathRejected        sandbox escape attempt
├── FilesystemError     local or remote I/O failure
└── RetryExhausted      bounded retry loop gave up
"""

from __future__ import annotations


class ShareDirError(Exception):
    """Base class for every error raised by the protocol engine."""


class ChannelTimeout(ShareDirError, TimeoutError):
    """No response line or payload bytes arrived within the timeout."""


class ConnectionClosed(ShareDirError, ConnectionError):
    """The peer closed the stream, possibly in the middle of a payload."""

    def __init__(self, message: str = "Connection closed", received: int = 0, expected: int = 0) -> None:
        super().__init__(message)
        self.received = received
        self.expected = expected


class ProtocolViolation(ShareDirError):
    """The peer sent something the grammar does not allow at this point."""

    def __init__(self, message: str, got: str | None = None) -> None:
        super().__init__(message)
        self.got = got


class PathRejected(ShareDirError):
    """A path argument would resolve outside its sandbox."""


class FilesystemError(ShareDirError):
    """Creating, reading, writing or deleting a file failed."""


class RetryExhausted(ShareDirError):
    """All attempts of a bounded retry loop failed."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts
