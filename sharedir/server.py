"""
ShareDir server: accept loop and per-connection command dispatcher.

FileServer
----------
    Listens on (host, port) in a daemon thread with a 1 s accept timeout.
    Spawns one ServerConnection per accepted socket, each in its own
    daemon thread. Live connections are tracked in a registry so stop()
    can close them all.

ServerConnection
----------------
    Sends the banner, then loops: read one command line, dispatch, reply.
    Every path argument goes through the PathSandbox before the
    filesystem is touched. Path rejections and filesystem errors are
    answered with a line and the connection stays open; a dropped peer
    or a framing error ends it.
"""

from __future__ import annotations

import logging
import os
import shutil
import socket
import stat
import threading
import time
from pathlib import Path
from typing import Callable

from . import protocol as P
from .channel import FramedChannel, tune
from .errors import FilesystemError, PathRejected, ProtocolViolation, ShareDirError
from .protocol import Verb, parse_command, parse_count, parse_length
from .sandbox import PathSandbox, Resolution
from .transfer import (
    Direction,
    TransferDescriptor,
    Unit,
    receive_file,
    receive_tree,
    send_tree,
    stream_file,
    walk_tree,
)

log = logging.getLogger("sharedir.server")

RMDIR_ATTEMPTS = 3
RMDIR_RETRY_DELAY = 0.5


# ---------------------------------------------------------------------------
# Accept loop
# ---------------------------------------------------------------------------

class FileServer:
    """
    TCP server exposing *root* on (*host*, *port*).
    Each connection is handled in its own thread.
    """

    def __init__(
        self,
        root: str | Path,
        host: str = "0.0.0.0",
        port: int = P.DEFAULT_PORT,
        chunk_size: int = P.DEFAULT_CHUNK_BYTES,
        payload_timeout: float | None = 120.0,
        idle_timeout: float | None = None,
        backlog: int = 8,
    ) -> None:
        self._root = Path(root)
        self._host = host
        self._port = port
        self._chunk_size = chunk_size
        self._payload_timeout = payload_timeout
        self._idle_timeout = idle_timeout
        self._backlog = backlog
        self._sandbox: PathSandbox | None = None
        self._server_sock: socket.socket | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._connections: set[ServerConnection] = set()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def port(self) -> int:
        """Bound port; the real one once started with port 0."""
        return self._port

    @property
    def root(self) -> Path:
        return self._sandbox.root if self._sandbox else self._root

    @property
    def active_connections(self) -> int:
        with self._lock:
            return len(self._connections)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> FileServer:
        self._root.mkdir(parents=True, exist_ok=True)
        self._sandbox = PathSandbox(self._root)
        self._server_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server_sock.bind((self._host, self._port))
        self._server_sock.listen(self._backlog)
        self._server_sock.settimeout(1.0)
        self._port = self._server_sock.getsockname()[1]
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._accept_loop, daemon=True, name="sharedir-accept"
        )
        self._thread.start()
        log.info("Sharing %s on %s:%d", self._sandbox.root, self._host, self._port)
        return self

    def stop(self) -> None:
        self._stop_event.set()
        if self._server_sock:
            try:
                self._server_sock.close()
            except OSError:
                pass
        with self._lock:
            live = list(self._connections)
        for conn in live:
            conn.close()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        log.info("Server stopped (%d connection(s) closed)", len(live))

    def serve_forever(self) -> None:
        """Block until Ctrl-C or stop()."""
        if self._thread is None:
            self.start()
        try:
            self._stop_event.wait()
        except KeyboardInterrupt:
            self.stop()

    def __enter__(self) -> FileServer:
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _accept_loop(self) -> None:
        assert self._server_sock is not None
        while not self._stop_event.is_set():
            try:
                conn, addr = self._server_sock.accept()
            except TimeoutError:
                continue
            except OSError:
                break
            log.info("Incoming connection from %s:%d", *addr[:2])
            t = threading.Thread(
                target=self._handle_connection,
                args=(conn, addr),
                daemon=True,
                name=f"sharedir-conn-{addr[0]}:{addr[1]}",
            )
            t.start()

    def _handle_connection(self, conn: socket.socket, addr: tuple) -> None:
        assert self._sandbox is not None
        tune(conn)
        session = ServerConnection(
            conn,
            self._sandbox,
            peer=f"{addr[0]}:{addr[1]}",
            chunk_size=self._chunk_size,
            payload_timeout=self._payload_timeout,
            idle_timeout=self._idle_timeout,
        )
        with self._lock:
            self._connections.add(session)
        try:
            session.run()
        except ShareDirError as exc:
            # ConnectionClosed and idle ChannelTimeout end up here too
            log.info("Connection from %s ended: %s", addr[0], exc)
        except Exception as exc:
            log.error("Error handling %s: %s", addr[0], exc, exc_info=True)
        finally:
            session.close()
            with self._lock:
                self._connections.discard(session)


# ---------------------------------------------------------------------------
# Per-connection dispatcher
# ---------------------------------------------------------------------------

class ServerConnection:
    """
    Server side of one client connection.
    Runs synchronously in the calling thread; nothing here is shared.
    """

    def __init__(
        self,
        sock: socket.socket,
        sandbox: PathSandbox,
        peer: str = "?",
        chunk_size: int = P.DEFAULT_CHUNK_BYTES,
        payload_timeout: float | None = 120.0,
        idle_timeout: float | None = None,
    ) -> None:
        self._channel = FramedChannel(sock)
        self._sandbox = sandbox
        self._peer = peer
        self._chunk_size = chunk_size
        self._payload_timeout = payload_timeout
        self._idle_timeout = idle_timeout
        self._vdir = "/"
        self._handlers: dict[Verb, Callable[[str], None]] = {
            Verb.LIST: self._handle_list,
            Verb.CD: self._handle_cd,
            Verb.CDUP: self._handle_cdup,
            Verb.MKDIR: self._handle_mkdir,
            Verb.GET: self._handle_get,
            Verb.GETDIR: self._handle_getdir,
            Verb.PUT: self._handle_put,
            Verb.PUTDIR: self._handle_putdir,
            Verb.DELETE: self._handle_delete,
            Verb.RMDIR: self._handle_rmdir,
            Verb.NOOP: self._handle_noop,
        }

    def run(self) -> None:
        self._reply(P.BANNER)
        while True:
            line = self._channel.read_line(self._idle_timeout)
            command = parse_command(line)
            if command.verb is None:
                log.info("[%s] invalid command %r", self._peer, command.raw_verb)
                self._reply(P.INVALID_COMMAND)
                continue

            log.info("[%s] %s %s", self._peer, command.verb.value, command.argument)
            if command.verb is Verb.QUIT:
                self._reply(P.BYE)
                return
            self._handlers[command.verb](command.argument)

    def close(self) -> None:
        self._channel.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reply(self, *lines: str) -> None:
        self._channel.send_lines(*lines)

    def _resolve(self, argument: str = "") -> Resolution | None:
        """Resolve against the current directory; answer the rejection line on failure."""
        try:
            return self._sandbox.resolve(self._vdir, argument)
        except PathRejected as exc:
            log.warning("[%s] %s", self._peer, exc)
            self._reply(P.PATH_REJECTED)
            return None

    @staticmethod
    def _strerror(exc: OSError) -> str:
        return exc.strerror or exc.__class__.__name__

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def _handle_list(self, argument: str) -> None:
        res = self._resolve()
        if res is None:
            self._reply(P.END_OF_LIST)
            return
        try:
            with os.scandir(res.real_path) as it:
                items = list(it)
            folders = sorted(e.name for e in items if e.is_dir())
            files = sorted(e.name for e in items if e.is_file())
        except PermissionError:
            self._reply(P.LIST_ACCESS_DENIED, P.END_OF_LIST)
            return
        except OSError as exc:
            self._reply(P.LIST_FAILED + self._strerror(exc), P.END_OF_LIST)
            return

        lines = [P.LIST_HEADER]
        for name in folders:
            lines.append(P.FOLDER_PREFIX + name)
        for name in files:
            lines.append(P.FILE_PREFIX + name)
        lines = [ln for ln in lines if "\n" not in ln and "\r" not in ln]
        lines.append(P.END_OF_LIST)
        self._reply(*lines)

    def _handle_cd(self, argument: str) -> None:
        if not argument.strip():
            self._reply(P.MISSING_DIR_NAME)
            return
        res = self._resolve(argument)
        if res is None:
            return
        if not res.real_path.is_dir():
            self._reply(P.CD_FAILED)
            return
        self._vdir = res.virtual_path
        self._reply(P.format_virtual_ok(self._vdir))

    def _handle_cdup(self, argument: str) -> None:
        try:
            res = self._sandbox.resolve(PathSandbox.parent(self._vdir))
        except ShareDirError as exc:
            self._reply(P.CDUP_FAILED + str(exc))
            return
        self._vdir = res.virtual_path
        self._reply(P.format_virtual_ok(self._vdir))

    def _handle_mkdir(self, argument: str) -> None:
        if not argument.strip():
            self._reply(P.MISSING_DIR_NAME)
            return
        res = self._resolve(argument)
        if res is None:
            return
        try:
            res.real_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._reply(P.MKDIR_FAILED + self._strerror(exc))
            return
        log.info("[%s] created %s", self._peer, res.virtual_path)
        self._reply(P.DIR_CREATED)

    def _handle_noop(self, argument: str) -> None:
        self._reply(P.OK)

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    def _handle_get(self, argument: str) -> None:
        if not argument.strip():
            self._reply(P.MISSING_FILE_NAME)
            return
        res = self._resolve(argument)
        if res is None:
            return
        path = res.real_path
        if not path.is_file() or not os.access(path, os.R_OK):
            self._reply(P.FILE_NOT_FOUND)
            return
        try:
            size = path.stat().st_size
        except OSError as exc:
            log.warning("[%s] cannot stat %s: %s", self._peer, res.virtual_path, exc)
            self._reply(P.FILE_NOT_FOUND)
            return

        started = time.monotonic()
        self._reply(P.SENDING_FILE, str(size))
        # a read failure past this point cannot be reported in-band
        stream_file(self._channel.write_bytes, path, size, self._chunk_size)
        self._reply(P.END_OF_FILE)
        log.info("[%s] sent %s (%d bytes, %.1fs)",
                 self._peer, res.virtual_path, size, time.monotonic() - started)

    def _handle_getdir(self, argument: str) -> None:
        if not argument.strip():
            self._reply(P.MISSING_DIR_NAME)
            return
        res = self._resolve(argument)
        if res is None:
            return
        if not res.real_path.is_dir():
            self._reply(P.DIR_NOT_FOUND)
            return
        try:
            entries = walk_tree(res.real_path)
        except (FilesystemError, OSError) as exc:
            log.warning("[%s] cannot enumerate %s: %s", self._peer, res.virtual_path, exc)
            self._reply(P.DIR_NOT_FOUND)
            return

        self._reply(P.SENDING_DIR, str(len(entries)))
        total = send_tree(self._channel.send_lines, self._channel.write_bytes,
                          entries, self._chunk_size)
        self._reply(P.END_OF_DIR)
        log.info("[%s] sent directory %s (%d files, %d bytes)",
                 self._peer, res.virtual_path, len(entries), total)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def _handle_put(self, argument: str) -> None:
        if not argument.strip():
            self._reply(P.MISSING_FILE_NAME)
            return
        res = self._resolve(argument)
        if res is None:
            return
        # the .part file must sit beside a file target inside the share
        if res.is_root:
            self._reply(P.PATH_REJECTED)
            return
        if res.real_path.is_dir():
            log.warning("[%s] PUT onto directory %s refused", self._peer, res.virtual_path)
            self._reply(P.PUT_SAVE_FAILED)
            return

        self._reply(P.SENDING_FILE)
        confirm = self._channel.read_line(self._payload_timeout)
        if confirm != P.SENDING_FILE:
            log.warning("[%s] PUT not confirmed, got %r", self._peer, confirm)
            self._reply(P.PUT_NOT_CONFIRMED)
            return
        try:
            size = parse_length(self._channel.read_line(self._payload_timeout))
        except ProtocolViolation:
            # the payload that follows has no usable length
            self._reply(P.PUT_BAD_SIZE)
            raise

        try:
            received = receive_file(self._channel, res.real_path, size,
                                    self._chunk_size, self._payload_timeout)
        except FilesystemError as exc:
            log.error("[%s] failed to save %s: %s", self._peer, res.virtual_path, exc)
            self._reply(P.PUT_SAVE_FAILED)
            return
        log.info("[%s] received %s (%d/%d bytes)", self._peer, res.virtual_path, received, size)
        self._reply(P.PUT_RECEIVED)

    def _handle_putdir(self, argument: str) -> None:
        if not argument.strip():
            self._reply(P.MISSING_DIR_NAME)
            return
        res = self._resolve(argument)
        if res is None:
            return
        try:
            res.real_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            log.error("[%s] cannot create %s: %s", self._peer, res.virtual_path, self._strerror(exc))
            self._reply(P.PUTDIR_MKDIR_FAILED)
            return

        self._reply(P.READY_FOR_DIR)
        confirm = self._channel.read_line(self._payload_timeout)
        if confirm != P.SENDING_DIR:
            log.warning("[%s] PUTDIR not confirmed, got %r", self._peer, confirm)
            self._reply(P.PUTDIR_NOT_CONFIRMED)
            return
        try:
            count = parse_count(self._channel.read_line(self._payload_timeout))
        except ProtocolViolation:
            self._reply(P.PUTDIR_BAD_COUNT)
            raise

        descriptor = TransferDescriptor(
            direction=Direction.UPLOAD, unit=Unit.DIRECTORY,
            name=res.virtual_path, file_count=count,
        )
        receive_tree(self._channel, res.real_path, count, descriptor,
                     self._chunk_size, self._payload_timeout)
        descriptor.finish()
        log.info("[%s] received directory %s: %d/%d files, %d bytes, %.1f KB/s",
                 self._peer, res.virtual_path, descriptor.files_ok, count,
                 descriptor.bytes_moved, descriptor.speed_kbps)
        self._reply(f"{P.PUTDIR_RECEIVED} ({descriptor.files_ok}/{count} files, "
                    f"{descriptor.speed_kbps:.1f} KB/s)")

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def _handle_delete(self, argument: str) -> None:
        if not argument.strip():
            self._reply(P.MISSING_FILE_NAME)
            return
        res = self._resolve(argument)
        if res is None:
            return
        path = res.real_path
        try:
            if path.is_file():
                path.unlink()
                log.info("[%s] deleted %s", self._peer, res.virtual_path)
                self._reply(P.FILE_DELETED, P.END_OF_FILE)
            else:
                self._reply(P.FILE_NOT_FOUND, P.END_OF_FILE)
        except OSError as exc:
            log.error("[%s] delete %s failed: %s", self._peer, res.virtual_path, exc)
            self._reply(P.DELETE_FAILED + self._strerror(exc))

    def _handle_rmdir(self, argument: str) -> None:
        if PathSandbox.is_root_reference(self._vdir, argument):
            log.warning("[%s] refused to remove the shared root (%r)", self._peer, argument)
            self._reply(P.ROOT_PROTECTED)
            return
        if not argument.strip():
            self._reply(P.MISSING_DIR_NAME)
            return
        res = self._resolve(argument)
        if res is None:
            return
        if res.is_root:
            self._reply(P.ROOT_PROTECTED)
            return
        if not res.real_path.is_dir():
            self._reply(P.DIR_NOT_FOUND)
            return

        if remove_tree(res.real_path):
            log.info("[%s] removed directory %s", self._peer, res.virtual_path)
            self._reply(P.DIR_DELETED)
        else:
            self._reply(P.RMDIR_FAILED)


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------

def _clear_readonly(path: Path) -> None:
    for dirpath, dirnames, filenames in os.walk(path):
        for name in dirnames + filenames:
            target = os.path.join(dirpath, name)
            try:
                mode = os.lstat(target).st_mode
                os.chmod(target, mode | stat.S_IREAD | stat.S_IWRITE | (stat.S_IEXEC if stat.S_ISDIR(mode) else 0))
            except OSError as exc:
                log.debug("chmod %s failed: %s", target, exc)
    try:
        os.chmod(path, os.stat(path).st_mode | stat.S_IREAD | stat.S_IWRITE | stat.S_IEXEC)
    except OSError as exc:
        log.debug("chmod %s failed: %s", path, exc)


def remove_tree(
    path: Path,
    attempts: int = RMDIR_ATTEMPTS,
    delay: float = RMDIR_RETRY_DELAY,
) -> bool:
    """Recursively delete *path*, clearing read-only bits between attempts."""
    for attempt in range(1, attempts + 1):
        try:
            shutil.rmtree(path)
            return True
        except FileNotFoundError:
            return True
        except OSError as exc:
            log.warning("Removing %s failed (attempt %d/%d): %s",
                        path.name, attempt, attempts, exc.strerror or exc)
            _clear_readonly(path)
            if attempt < attempts:
                time.sleep(delay)
    return not path.exists()
