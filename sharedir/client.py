"""
ShareDir client — the operation surface a UI or the CLI drives.

ShareClient
-----------
    Holds one Session at a time and serializes logical operations with an
    operation lock. Every public method returns an OperationResult; errors
    are turned into results here and nowhere deeper.

    Resilience:
      * download_file retries the whole download up to MAX_GET_ATTEMPTS
        times on ChannelTimeout, reconnecting and replaying the remote
        directory between attempts, then gives up with RetryExhausted.
      * Any other failed exchange runs one recovery pass: a LIST probe
        when the connection still looks alive, otherwise a reconnect with
        directory replay. The operation itself is not re-run.
      * A NOOP follows every completed transfer; if it fails, so does the
        operation.
      * keepalive() never waits behind a running operation, it skips.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from . import protocol as P
from .config import ClientSettings
from .errors import (
    ChannelTimeout,
    ConnectionClosed,
    FilesystemError,
    PathRejected,
    ProtocolViolation,
    RetryExhausted,
    ShareDirError,
)
from .protocol import (
    MAX_GET_ATTEMPTS,
    ListingEntry,
    Verb,
    expect,
    parse_count,
    parse_length,
    parse_listing_line,
    parse_virtual_ok,
)
from .session import ConnectionState, Session
from .transfer import (
    Direction,
    FileEntry,
    FileRecord,
    ProgressCallback,
    ProgressThrottle,
    TransferDescriptor,
    Unit,
    receive_file,
    receive_tree,
    send_tree,
    stream_file,
    walk_tree,
)

log = logging.getLogger("sharedir.client")

LogCallback = Callable[[str], None]
StateChangeCallback = Callable[[ConnectionState, "str | None"], None]

_PUTDIR_TALLY = re.compile(r"\((\d+)/(\d+) files")


@dataclass
class OperationResult:
    ok: bool
    message: str
    error: BaseException | None = None
    entries: list[ListingEntry] = field(default_factory=list)
    transfer: TransferDescriptor | None = None
    path: str | None = None

    def __bool__(self) -> bool:
        return self.ok


def _remote_error(reply: str) -> ShareDirError:
    """Map a server refusal line to the matching error kind."""
    if reply in (P.PATH_REJECTED, P.ROOT_PROTECTED):
        return PathRejected(reply)
    return FilesystemError(reply)


class ShareClient:
    """Collaborator-facing client for one ShareDir server.

    Thread-safety:
    - ``_op_lock`` admits one logical operation at a time.
    - The Session's write lock guards each individual write.
    - Callbacks run on whichever thread performed the operation.
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        on_log: LogCallback | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        self.settings = settings or ClientSettings()
        self._on_log = on_log
        self._on_state_change = on_state_change

        self._session: Session | None = None
        self._host: str | None = None
        self._port: int = self.settings.port
        self._virtual_path = "/"
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._op_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._keepalive_thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def connected(self) -> bool:
        session = self._session
        return session is not None and session.connected

    @property
    def virtual_path(self) -> str:
        return self._virtual_path

    def _set_state(self, new_state: ConnectionState, message: str | None = None) -> None:
        with self._state_lock:
            if new_state is self._state and message is None:
                return
            self._state = new_state
        log.debug("Connection state → %s%s", new_state.name, f" ({message})" if message else "")
        if self._on_state_change:
            try:
                self._on_state_change(new_state, message)
            except Exception:
                log.exception("Exception in on_state_change callback")

    def _log(self, message: str, level: int = logging.INFO) -> None:
        log.log(level, message)
        if self._on_log:
            try:
                self._on_log(message)
            except Exception:
                log.exception("Exception in on_log callback")

    def _ok(self, message: str, **kwargs) -> OperationResult:
        self._log(message)
        return OperationResult(True, message, **kwargs)

    def _fail(self, message: str, error: BaseException | None = None, **kwargs) -> OperationResult:
        self._log(message, logging.WARNING)
        return OperationResult(False, message, error=error, **kwargs)

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def connect(self, host: str, port: int = P.DEFAULT_PORT, timeout: float | None = None) -> OperationResult:
        with self._op_lock:
            if self._session is not None:
                self._session.close()
                self._session = None
            self._host, self._port = host, port
            self._virtual_path = "/"
            self._set_state(ConnectionState.CONNECTING)
            try:
                session = Session.open(
                    host, port,
                    connect_timeout=timeout if timeout is not None else self.settings.connect_timeout,
                    banner_timeout=self.settings.response_timeout,
                )
            except ShareDirError as exc:
                self._set_state(ConnectionState.ERROR, str(exc))
                return self._fail(f"Connect failed: {exc}", exc)
            self._session = session
            self._set_state(ConnectionState.CONNECTED, session.banner)
            return self._ok(f"Connected to {host}:{port}: {session.banner}", path="/")

    def disconnect(self) -> OperationResult:
        self.stop_keepalive()
        with self._op_lock:
            if self._session is not None:
                self._session.close(timeout=self.settings.noop_timeout)
                self._session = None
            self._host = None
            self._set_state(ConnectionState.DISCONNECTED)
        return self._ok("Disconnected")

    def __enter__(self) -> ShareClient:
        return self

    def __exit__(self, *exc) -> None:
        self.disconnect()

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def list_current_directory(self) -> OperationResult:
        return self._perform("LIST", self._list_once)

    def change_directory(self, name: str) -> OperationResult:
        return self._perform(f"CD {name}", lambda s: self._navigate(s, Verb.CD, name))

    def change_directory_up(self) -> OperationResult:
        return self._perform("CDUP", lambda s: self._navigate(s, Verb.CDUP))

    def make_directory(self, name: str) -> OperationResult:
        return self._perform(f"MKDIR {name}", lambda s: self._mkdir_once(s, name))

    def delete_remote(self, name: str, is_directory: bool) -> OperationResult:
        label = f"{'RMDIR' if is_directory else 'DELETE'} {name}"
        return self._perform(label, lambda s: self._delete_once(s, name, is_directory))

    def keepalive(self) -> OperationResult:
        """Send NOOP unless another operation is running; in that case skip."""
        return self._perform("NOOP", self._noop_once, blocking=False)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def download_file(
        self,
        name: str,
        dest_path: str | Path,
        progress: ProgressCallback | None = None,
    ) -> OperationResult:
        """Download *name* from the current remote directory to *dest_path*.

        If *dest_path* is an existing directory the file keeps its remote
        name inside it.
        """
        dest = Path(dest_path)
        if dest.is_dir():
            dest = dest / name.replace("\\", "/").rsplit("/", 1)[-1]
        return self._perform(f"GET {name}", lambda s: self._download_with_retry(s, name, dest, progress))

    def download_directory(
        self,
        name: str,
        dest_path: str | Path,
        progress: ProgressCallback | None = None,
    ) -> OperationResult:
        """Download the remote folder *name*; its contents land in *dest_path*."""
        return self._perform(
            f"GETDIR {name}", lambda s: self._download_dir_once(s, name, Path(dest_path), progress)
        )

    def upload_file(self, path: str | Path, progress: ProgressCallback | None = None) -> OperationResult:
        src = Path(path)
        if not src.is_file():
            return self._fail(f"PUT {src.name}: not a local file", FilesystemError(f"Not a file: {src}"))
        return self._perform(f"PUT {src.name}", lambda s: self._upload_once(s, src, progress))

    def upload_directory(self, path: str | Path, progress: ProgressCallback | None = None) -> OperationResult:
        src = Path(path)
        try:
            entries = walk_tree(src)
        except (FilesystemError, OSError) as exc:
            return self._fail(f"PUTDIR {src.name}: {exc}", exc)
        return self._perform(f"PUTDIR {src.name}", lambda s: self._upload_dir_once(s, src, entries, progress))

    # ------------------------------------------------------------------
    # Keep-alive timer
    # ------------------------------------------------------------------

    def start_keepalive(self, interval: float | None = None) -> None:
        """Run keepalive() every *interval* seconds on a daemon thread."""
        interval = self.settings.keepalive_interval if interval is None else interval
        if interval <= 0:
            return
        if self._keepalive_thread is not None and self._keepalive_thread.is_alive():
            return
        self._stop_event.clear()
        self._keepalive_thread = threading.Thread(
            target=self._keepalive_loop,
            args=(interval,),
            name=f"sharedir-keepalive-{self._host}",
            daemon=True,
        )
        self._keepalive_thread.start()

    def stop_keepalive(self) -> None:
        self._stop_event.set()
        thread = self._keepalive_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.settings.noop_timeout + 1)
        self._keepalive_thread = None

    def _keepalive_loop(self, interval: float) -> None:
        log.debug("Keep-alive thread started (every %.0fs)", interval)
        while not self._stop_event.wait(timeout=interval):
            if self._host is None:
                break
            self.keepalive()
        log.debug("Keep-alive thread exiting")

    # ------------------------------------------------------------------
    # Operation driver
    # ------------------------------------------------------------------

    def _perform(
        self,
        label: str,
        attempt: Callable[[Session], OperationResult],
        blocking: bool = True,
    ) -> OperationResult:
        if not self._op_lock.acquire(blocking=blocking):
            log.debug("%s skipped: another operation is in progress", label)
            return OperationResult(True, f"{label} skipped (operation in progress)")
        try:
            session = self._session
            if session is None or not session.connected:
                if self._host is None:
                    return self._fail(f"{label}: not connected", ConnectionClosed("Not connected"))
                if not self._reconnect():
                    return self._fail(f"{label}: connection lost", ConnectionClosed("Reconnect failed"))
                session = self._session
                assert session is not None
            try:
                return attempt(session)
            except ValueError as exc:
                # argument rejected before anything was written
                return self._fail(f"{label}: {exc}", exc)
            except RetryExhausted as exc:
                return self._fail(f"{label} failed: {exc}", exc)
            except ShareDirError as exc:
                self._log(f"{label} failed: {exc}", logging.WARNING)
                self._recover(exc)
                return OperationResult(False, f"{label} failed: {exc}", error=exc)
        finally:
            self._op_lock.release()

    def _recover(self, exc: BaseException) -> bool:
        """Bring the connection back to a usable state after a failed exchange."""
        session = self._session
        if (session is not None and session.connected
                and not isinstance(exc, (ChannelTimeout, ConnectionClosed))):
            if self._probe(session):
                return True
            session.teardown()
        return self._reconnect()

    def _probe(self, session: Session) -> bool:
        """Send LIST and read up to END_OF_LIST; any complete answer counts."""
        self._log("Testing connection with LIST…")
        try:
            session.send_command(Verb.LIST)
            line = session.read_line(self.settings.noop_timeout)
            while line != P.END_OF_LIST:
                line = session.read_line(self.settings.noop_timeout)
        except ShareDirError as exc:
            self._log(f"Connection probe failed: {exc}", logging.WARNING)
            return False
        self._log("Connection recovery successful")
        return True

    def _reconnect(self) -> bool:
        if self._host is None:
            return False
        if self._session is not None:
            self._session.teardown()
            self._session = None
        self._set_state(ConnectionState.RECONNECTING)
        self._log(f"Reconnecting to {self._host}:{self._port}…")
        time.sleep(self.settings.reconnect_delay)
        try:
            session = Session.open(
                self._host, self._port,
                connect_timeout=self.settings.reconnect_timeout,
                banner_timeout=self.settings.reconnect_timeout,
            )
        except ShareDirError as exc:
            self._set_state(ConnectionState.ERROR, str(exc))
            self._log(f"Reconnect failed: {exc}", logging.WARNING)
            return False
        self._session = session
        self._set_state(ConnectionState.CONNECTED, "reconnected")
        self._log(f"Reconnected: {session.banner}")
        self._replay(session, self._virtual_path)
        return True

    def _replay(self, session: Session, path: str) -> None:
        """Walk back to *path* one CD per segment."""
        for part in [p for p in path.split("/") if p]:
            try:
                session.send_command(Verb.CD, part)
                reply = session.read_line(self.settings.response_timeout)
            except ShareDirError as exc:
                self._log(f"Failed to restore {path}: {exc}", logging.WARNING)
                break
            new_path = parse_virtual_ok(reply)
            if new_path is None:
                self._log(f"Failed to restore {path}: {reply}", logging.WARNING)
                break
            session.virtual_path = new_path
        self._virtual_path = session.virtual_path
        if path != "/":
            self._log(f"Remote directory restored to {session.virtual_path}")

    def _confirm_alive(self, session: Session) -> None:
        session.send_command(Verb.NOOP)
        reply = session.read_line(self.settings.noop_timeout)
        if reply != P.OK:
            raise ProtocolViolation(f"Keep-alive answered {reply!r}", got=reply)

    # ------------------------------------------------------------------
    # Single exchanges
    # ------------------------------------------------------------------

    def _noop_once(self, session: Session) -> OperationResult:
        self._confirm_alive(session)
        log.debug("Keep-alive OK")
        return OperationResult(True, "Keep-alive OK")

    def _list_once(self, session: Session) -> OperationResult:
        timeout = self.settings.response_timeout
        session.send_command(Verb.LIST)
        first = session.read_line(timeout)
        if first != P.LIST_HEADER:
            line = first
            while line != P.END_OF_LIST:
                line = session.read_line(timeout)
            return self._fail(f"LIST {self._virtual_path}: {first}", _remote_error(first))

        entries: list[ListingEntry] = []
        problems: list[str] = []
        while True:
            line = session.read_line(timeout)
            if line == P.END_OF_LIST:
                break
            entry = parse_listing_line(line)
            if entry is None:
                problems.append(line)
            else:
                entries.append(entry)
        if problems:
            return self._fail(f"LIST {self._virtual_path}: {problems[0]}",
                              _remote_error(problems[0]), entries=entries)
        folders = sum(1 for e in entries if e.is_folder)
        return self._ok(
            f"Listed {self._virtual_path}: {folders} folder(s), {len(entries) - folders} file(s)",
            entries=entries, path=self._virtual_path,
        )

    def _navigate(self, session: Session, verb: Verb, name: str = "") -> OperationResult:
        session.send_command(verb, name)
        reply = session.read_line(self.settings.response_timeout)
        path = parse_virtual_ok(reply)
        if path is None:
            label = f"{verb.value} {name}".rstrip()
            return self._fail(f"{label}: {reply}", _remote_error(reply))
        session.virtual_path = path
        self._virtual_path = path
        return self._ok(f"Remote directory: {path}", path=path)

    def _mkdir_once(self, session: Session, name: str) -> OperationResult:
        session.send_command(Verb.MKDIR, name)
        reply = session.read_line(self.settings.response_timeout)
        if reply != P.DIR_CREATED:
            return self._fail(f"MKDIR {name}: {reply}", _remote_error(reply))
        return self._ok(f"Created remote folder {name}")

    def _delete_once(self, session: Session, name: str, is_directory: bool) -> OperationResult:
        timeout = self.settings.response_timeout
        if is_directory:
            session.send_command(Verb.RMDIR, name)
            reply = session.read_line(timeout)
            if reply != P.DIR_DELETED:
                return self._fail(f"RMDIR {name}: {reply}", _remote_error(reply))
            return self._ok(f"Deleted remote folder {name}")

        session.send_command(Verb.DELETE, name)
        reply = session.read_line(timeout)
        if reply in (P.FILE_DELETED, P.FILE_NOT_FOUND):
            expect(session.read_line(timeout), P.END_OF_FILE)
        if reply != P.FILE_DELETED:
            return self._fail(f"DELETE {name}: {reply}", _remote_error(reply))
        return self._ok(f"Deleted remote file {name}")

    def _download_with_retry(
        self,
        session: Session,
        name: str,
        dest: Path,
        progress: ProgressCallback | None,
    ) -> OperationResult:
        last_exc: ChannelTimeout | None = None
        attempt = 0
        for attempt in range(1, MAX_GET_ATTEMPTS + 1):
            if attempt > 1:
                self._log(f"Downloading {name} (attempt {attempt}/{MAX_GET_ATTEMPTS})")
            try:
                return self._download_once(session, name, dest, progress)
            except ChannelTimeout as exc:
                last_exc = exc
                self._log(f"Timeout downloading {name} (attempt {attempt}/{MAX_GET_ATTEMPTS}): {exc}",
                          logging.WARNING)
                if attempt == MAX_GET_ATTEMPTS or not self._reconnect():
                    break
                assert self._session is not None
                session = self._session

        if self._session is not None:
            self._session.teardown()
        self._set_state(ConnectionState.ERROR, "download retries exhausted")
        raise RetryExhausted(f"Download of {name} gave up after {attempt} attempt(s)", attempt) from last_exc

    def _download_once(
        self,
        session: Session,
        name: str,
        dest: Path,
        progress: ProgressCallback | None,
    ) -> OperationResult:
        timeout = self.settings.get_timeout
        session.send_command(Verb.GET, name)
        reply = session.read_line(timeout)
        if reply != P.SENDING_FILE:
            return self._fail(f"GET {name}: {reply}", _remote_error(reply))
        size = parse_length(session.read_line(timeout))

        descriptor = TransferDescriptor(Direction.DOWNLOAD, Unit.FILE, name, total_bytes=size)
        throttle = ProgressThrottle(progress, size, self.settings.progress_interval)
        local_error: FilesystemError | None = None
        try:
            descriptor.bytes_moved = receive_file(
                session, dest, size, self.settings.chunk_size, timeout, throttle.advance
            )
        except FilesystemError as exc:
            local_error = exc
        expect(session.read_line(timeout), P.END_OF_FILE)
        throttle.finish()
        descriptor.finish()
        if local_error is not None:
            return self._fail(f"GET {name}: {local_error}", local_error, transfer=descriptor)

        descriptor.files_ok = 1
        self._confirm_alive(session)
        return self._ok(f"Downloaded {descriptor.summary()} → {dest}", transfer=descriptor)

    def _download_dir_once(
        self,
        session: Session,
        name: str,
        dest: Path,
        progress: ProgressCallback | None,
    ) -> OperationResult:
        timeout = self.settings.dir_timeout
        session.send_command(Verb.GETDIR, name)
        reply = session.read_line(timeout)
        if reply != P.SENDING_DIR:
            return self._fail(f"GETDIR {name}: {reply}", _remote_error(reply))
        count = parse_count(session.read_line(timeout))
        self._log(f"Receiving folder {name}: {count} file(s)")

        descriptor = TransferDescriptor(Direction.DOWNLOAD, Unit.DIRECTORY, name, file_count=count)
        throttle = ProgressThrottle(progress, 0, self.settings.progress_interval)

        def on_bytes(n: int) -> None:
            throttle.total = descriptor.total_bytes
            throttle.advance(n)

        receive_tree(session, dest, count, descriptor, self.settings.chunk_size, timeout, on_bytes)
        expect(session.read_line(timeout), P.END_OF_DIR)
        throttle.total = descriptor.total_bytes
        throttle.finish()
        descriptor.finish()
        self._confirm_alive(session)

        if descriptor.failures:
            rel, reason = descriptor.failures[0]
            return self._fail(
                f"Downloaded {descriptor.summary()}; first failure {rel}: {reason}",
                FilesystemError(reason), transfer=descriptor,
            )
        return self._ok(f"Downloaded {descriptor.summary()} → {dest}", transfer=descriptor)

    def _upload_once(self, session: Session, src: Path, progress: ProgressCallback | None) -> OperationResult:
        timeout = self.settings.put_timeout
        try:
            size = src.stat().st_size
        except OSError as exc:
            return self._fail(f"PUT {src.name}: {exc.strerror or exc}", FilesystemError(str(exc)))

        session.send_command(Verb.PUT, src.name)
        reply = session.read_line(timeout)
        if reply != P.SENDING_FILE:
            return self._fail(f"PUT {src.name}: {reply}", _remote_error(reply))

        descriptor = TransferDescriptor(Direction.UPLOAD, Unit.FILE, src.name, total_bytes=size)
        throttle = ProgressThrottle(progress, size, self.settings.progress_interval)
        session.send_lines(P.SENDING_FILE, str(size))
        try:
            descriptor.bytes_moved = stream_file(
                session.write_chunk, src, size, self.settings.chunk_size, throttle.advance
            )
        except FilesystemError:
            # the server is still waiting for the announced bytes
            session.teardown()
            raise
        throttle.finish()

        reply = session.read_line(timeout)
        descriptor.finish()
        if reply != P.PUT_RECEIVED:
            return self._fail(f"PUT {src.name}: {reply}", _remote_error(reply), transfer=descriptor)
        descriptor.files_ok = 1
        self._confirm_alive(session)
        return self._ok(f"Uploaded {descriptor.summary()}", transfer=descriptor)

    def _upload_dir_once(
        self,
        session: Session,
        src: Path,
        entries: list[FileEntry],
        progress: ProgressCallback | None,
    ) -> OperationResult:
        timeout = self.settings.dir_timeout
        session.send_command(Verb.PUTDIR, src.name)
        reply = session.read_line(timeout)
        if reply != P.READY_FOR_DIR:
            return self._fail(f"PUTDIR {src.name}: {reply}", _remote_error(reply))

        total = sum(e.size for e in entries)
        descriptor = TransferDescriptor(
            Direction.UPLOAD, Unit.DIRECTORY, src.name,
            total_bytes=total, file_count=len(entries),
            files=[FileRecord(e.rel_path, e.size) for e in entries],
        )
        throttle = ProgressThrottle(progress, total, self.settings.progress_interval)
        session.send_lines(P.SENDING_DIR, str(len(entries)))
        try:
            descriptor.bytes_moved = send_tree(
                session.send_lines, session.write_chunk, entries,
                self.settings.chunk_size, throttle.advance,
            )
        except FilesystemError:
            session.teardown()
            raise
        throttle.finish()

        reply = session.read_line(timeout)
        descriptor.finish()
        if not reply.startswith(P.PUTDIR_RECEIVED):
            return self._fail(f"PUTDIR {src.name}: {reply}", _remote_error(reply), transfer=descriptor)
        match = _PUTDIR_TALLY.search(reply)
        descriptor.files_ok = int(match.group(1)) if match else len(entries)
        self._confirm_alive(session)

        if descriptor.files_ok < len(entries):
            return self._fail(f"PUTDIR {src.name}: {reply}",
                              FilesystemError(reply), transfer=descriptor)
        return self._ok(f"Uploaded {descriptor.summary()}", transfer=descriptor)
