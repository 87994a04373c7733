"""
Transfer engine — payload framing shared by the client and the server.

walk_tree(root) → list[FileEntry]
    Every regular file under *root*, relative paths rendered with "/".

stream_file(write, path, size, chunk_size, on_bytes)
    Send exactly *size* raw bytes of a local file through *write*, one
    chunk per call so the caller can lock around each chunk.

receive_file(channel, dest, size, chunk_size, timeout, on_bytes)
    Read exactly *size* raw bytes into ``dest.part`` and rename it to
    *dest* once complete. A dropped connection never leaves a file at
    *dest*; a local write failure keeps draining so the stream stays in
    sync, then raises FilesystemError.

send_tree / receive_tree
    The (relative path, length, bytes) triples of GETDIR / PUTDIR.
    Individual file failures on the receiving side are recorded on the
    descriptor and skipped.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Iterator, Protocol

from .errors import FilesystemError, PathRejected, ProtocolViolation, ShareDirError
from .protocol import DEFAULT_CHUNK_BYTES, parse_length
from .sandbox import PathSandbox

log = logging.getLogger("sharedir.transfer")

PART_SUFFIX = ".part"

ProgressCallback = Callable[[int, int], None]
Writer = Callable[[bytes], None]
LinesWriter = Callable[..., None]


class ChunkReader(Protocol):
    """Read side shared by FramedChannel (server) and Session (client)."""

    def read_line(self, timeout: float | None = None) -> str: ...

    def iter_chunks(self, total: int, chunk_size: int, timeout: float | None = None) -> Iterator[bytes]: ...

    def drain(
        self,
        total: int,
        chunk_size: int,
        timeout: float | None = None,
        on_bytes: Callable[[int], None] | None = None,
    ) -> int: ...


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


class Direction(Enum):
    UPLOAD = auto()
    DOWNLOAD = auto()


class Unit(Enum):
    FILE = auto()
    DIRECTORY = auto()


@dataclass
class FileEntry:
    abs_path: Path       # absolute path on disk
    rel_path: str        # "/"-separated path relative to the transferred root
    size: int


@dataclass
class FileRecord:
    rel_path: str
    size: int


@dataclass
class TransferDescriptor:
    """Accounting for one GET/PUT/GETDIR/PUTDIR exchange."""

    direction: Direction
    unit: Unit
    name: str
    total_bytes: int = 0
    file_count: int = 1
    files: list[FileRecord] = field(default_factory=list)
    bytes_moved: int = 0
    files_ok: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)
    finished: float | None = None

    @property
    def progress_fraction(self) -> float:
        if self.total_bytes <= 0:
            return 1.0
        return min(self.bytes_moved / self.total_bytes, 1.0)

    @property
    def elapsed(self) -> float:
        end = self.finished if self.finished is not None else time.monotonic()
        return max(end - self.started, 0.0)

    @property
    def speed_kbps(self) -> float:
        return self.bytes_moved / max(self.elapsed, 1.0) / 1024

    def record_failure(self, rel_path: str, reason: str) -> None:
        self.failures.append((rel_path, reason))
        log.warning("Skipped %s: %s", rel_path, reason)

    def finish(self) -> None:
        self.finished = time.monotonic()

    def summary(self) -> str:
        if self.unit is Unit.FILE:
            return f"{self.name} ({fmt_size(self.bytes_moved)}, {self.speed_kbps:.1f} KB/s)"
        return (f"{self.name}: {self.files_ok}/{self.file_count} files "
                f"({fmt_size(self.bytes_moved)}, {self.speed_kbps:.1f} KB/s)")


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


class ProgressThrottle:
    """Forward byte progress to *callback* at most once per *interval* seconds."""

    def __init__(
        self,
        callback: ProgressCallback | None,
        total: int,
        interval: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._callback = callback
        self._interval = interval
        self._clock = clock
        self._last = clock()
        self._reported = -1
        self.total = total
        self.done = 0

    def advance(self, n: int) -> None:
        self.done += n
        if self._callback is None:
            return
        now = self._clock()
        if now - self._last >= self._interval or self.done >= self.total:
            self._last = now
            self._report()

    def finish(self) -> None:
        if self._callback is not None and self._reported != self.done:
            self._report()

    def _report(self) -> None:
        self._reported = self.done
        assert self._callback is not None
        self._callback(self.done, self.total)


# ---------------------------------------------------------------------------
# Local tree helpers
# ---------------------------------------------------------------------------


def walk_tree(root: str | Path) -> list[FileEntry]:
    """
    Return a FileEntry for every readable regular file below *root*, in a
    stable order. Symlinks are not followed.
    """
    root = Path(root)
    if not root.is_dir():
        raise FilesystemError(f"Not a directory: {root.name}")
    entries: list[FileEntry] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for fname in sorted(filenames):
            abs_p = Path(dirpath) / fname
            if abs_p.is_symlink() or not abs_p.is_file():
                continue
            if not os.access(abs_p, os.R_OK):
                log.warning("Skipping unreadable file %s", abs_p)
                continue
            rel = abs_p.relative_to(root).as_posix()
            entries.append(FileEntry(abs_path=abs_p, rel_path=rel, size=abs_p.stat().st_size))
    return entries


def fmt_size(n: float) -> str:
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if n < 1024:
            return f"{n:.1f} {unit}" if unit != "B" else f"{int(n)} B"
        n /= 1024
    return f"{n:.1f} PB"


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------


def stream_file(
    write: Writer,
    path: str | Path,
    size: int,
    chunk_size: int = DEFAULT_CHUNK_BYTES,
    on_bytes: Callable[[int], None] | None = None,
) -> int:
    """
    Write exactly *size* bytes of *path* through *write*.

    Raises FilesystemError if the file cannot be read or is shorter than
    *size*; bytes beyond *size* are never sent.
    """
    sent = 0
    try:
        with open(path, "rb") as fh:
            while sent < size:
                block = fh.read(min(chunk_size, size - sent))
                if not block:
                    raise FilesystemError(
                        f"{Path(path).name} shrank to {sent} bytes, {size} were announced"
                    )
                write(block)
                sent += len(block)
                if on_bytes is not None:
                    on_bytes(len(block))
    except ShareDirError:
        # ConnectionClosed and ChannelTimeout are OSErrors too
        raise
    except OSError as exc:
        raise FilesystemError(f"Cannot read {Path(path).name}: {exc.strerror or exc}") from exc
    return sent


def send_tree(
    send_lines: LinesWriter,
    write: Writer,
    entries: list[FileEntry],
    chunk_size: int = DEFAULT_CHUNK_BYTES,
    on_bytes: Callable[[int], None] | None = None,
) -> int:
    """Send the per-file triples of a directory transfer; the count goes first, by the caller."""
    total = 0
    for idx, entry in enumerate(entries):
        log.debug("Sending [%d/%d] %s (%d bytes)", idx + 1, len(entries), entry.rel_path, entry.size)
        send_lines(entry.rel_path, str(entry.size))
        total += stream_file(write, entry.abs_path, entry.size, chunk_size, on_bytes)
    return total


# ---------------------------------------------------------------------------
# Receiving
# ---------------------------------------------------------------------------


def part_path(dest: Path) -> Path:
    return dest.with_name(dest.name + PART_SUFFIX)


def receive_file(
    channel: ChunkReader,
    dest: str | Path,
    size: int,
    chunk_size: int = DEFAULT_CHUNK_BYTES,
    timeout: float | None = None,
    on_bytes: Callable[[int], None] | None = None,
) -> int:
    """
    Consume exactly *size* payload bytes from *channel* into *dest*.

    ChannelTimeout / ConnectionClosed propagate after the partial file is
    removed. Local write errors do not stop the read loop; the remaining
    bytes are drained and FilesystemError is raised at the end.
    """
    dest = Path(dest)
    part = part_path(dest)
    received = 0
    write_error: OSError | None = None
    fh = None
    complete = False

    try:
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fh = open(part, "wb")
        except OSError as exc:
            write_error = exc

        for piece in channel.iter_chunks(size, chunk_size, timeout):
            received += len(piece)
            if fh is not None and write_error is None:
                try:
                    fh.write(piece)
                except OSError as exc:
                    write_error = exc
            if on_bytes is not None:
                on_bytes(len(piece))

        if fh is not None:
            try:
                fh.close()
            except OSError as exc:
                write_error = write_error or exc
            fh = None

        if write_error is not None:
            raise FilesystemError(
                f"Cannot write {dest.name}: {write_error.strerror or write_error}"
            ) from write_error

        try:
            os.replace(part, dest)
        except OSError as exc:
            raise FilesystemError(f"Cannot finalize {dest.name}: {exc.strerror or exc}") from exc
        complete = True
    finally:
        if fh is not None:
            try:
                fh.close()
            except OSError:
                pass
        if not complete:
            try:
                part.unlink(missing_ok=True)
            except OSError:
                log.debug("Could not remove partial file %s", part)

    return received


def read_dir_record(channel: ChunkReader, timeout: float | None = None) -> FileRecord:
    """Decode the (relative path, length) header preceding each file of a tree."""
    rel_path = channel.read_line(timeout)
    if not rel_path.strip():
        raise ProtocolViolation("Empty relative path in directory transfer", got=rel_path)
    size = parse_length(channel.read_line(timeout))
    return FileRecord(rel_path=rel_path, size=size)


def receive_tree(
    channel: ChunkReader,
    dest_dir: str | Path,
    count: int,
    descriptor: TransferDescriptor,
    chunk_size: int = DEFAULT_CHUNK_BYTES,
    timeout: float | None = None,
    on_bytes: Callable[[int], None] | None = None,
) -> TransferDescriptor:
    """
    Receive *count* file triples under *dest_dir*.

    Unsafe relative paths and local write failures are recorded on the
    descriptor and skipped after their bytes are drained. Connection-level
    errors propagate.
    """
    dest_dir = Path(dest_dir)
    for idx in range(count):
        record = read_dir_record(channel, timeout)
        descriptor.files.append(record)
        descriptor.total_bytes += record.size
        log.debug("Receiving [%d/%d] %s (%d bytes)", idx + 1, count, record.rel_path, record.size)

        try:
            target = PathSandbox.safe_join(dest_dir, record.rel_path)
        except PathRejected as exc:
            channel.drain(record.size, chunk_size, timeout, on_bytes)
            descriptor.bytes_moved += record.size
            descriptor.record_failure(record.rel_path, str(exc))
            continue

        try:
            moved = receive_file(channel, target, record.size, chunk_size, timeout, on_bytes)
        except FilesystemError as exc:
            descriptor.bytes_moved += record.size
            descriptor.record_failure(record.rel_path, str(exc))
            continue

        descriptor.bytes_moved += moved
        descriptor.files_ok += 1
    return descriptor
