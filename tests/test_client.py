"""Tests for sharedir/client.py and sharedir/session.py.

Round-trips run against a real FileServer on localhost; failure paths use
the scripted peers from conftest.
"""

from __future__ import annotations

import os
import socket
import threading
from dataclasses import replace
from pathlib import Path

import pytest

from sharedir import protocol as P
from sharedir.channel import FramedChannel
from sharedir.client import ShareClient
from sharedir.config import ClientSettings
from sharedir.errors import (
    ConnectionClosed,
    FilesystemError,
    PathRejected,
    ProtocolViolation,
    RetryExhausted,
)
from sharedir.server import FileServer
from sharedir.session import ConnectionState, Session
from sharedir.transfer import walk_tree

HOST = "127.0.0.1"


def answer_basics(ch: FramedChannel, line: str) -> bool:
    """Reply to LIST / NOOP / CD / QUIT the way a healthy server would."""
    if line == "LIST":
        ch.send_lines(P.LIST_HEADER, P.END_OF_LIST)
    elif line == "NOOP":
        ch.send_line(P.OK)
    elif line.startswith("CD "):
        ch.send_line("OK:/" + line[3:])
    elif line == "QUIT":
        ch.send_line(P.BYE)
    else:
        return False
    return True


def serve_basics(ch: FramedChannel) -> None:
    """Banner, then healthy answers until the client hangs up."""
    ch.send_line(P.BANNER)
    while True:
        answer_basics(ch, ch.read_line(None))


def free_port() -> int:
    with socket.socket() as s:
        s.bind((HOST, 0))
        return s.getsockname()[1]


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------


class TestConnect:
    def test_connect_reports_banner_and_states(self, server: FileServer, fast_settings: ClientSettings) -> None:
        states: list[ConnectionState] = []
        c = ShareClient(fast_settings, on_state_change=lambda s, m: states.append(s))
        result = c.connect(HOST, server.port)
        try:
            assert result.ok
            assert P.BANNER in result.message
            assert c.connected
            assert c.virtual_path == "/"
            assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        finally:
            c.disconnect()
        assert c.state is ConnectionState.DISCONNECTED
        assert not c.connected

    def test_connect_refused(self, fast_settings: ClientSettings) -> None:
        c = ShareClient(fast_settings)
        result = c.connect(HOST, free_port())
        assert not result.ok
        assert isinstance(result.error, ConnectionClosed)
        assert c.state is ConnectionState.ERROR

    def test_operation_without_connection(self, fast_settings: ClientSettings) -> None:
        result = ShareClient(fast_settings).list_current_directory()
        assert not result.ok
        assert isinstance(result.error, ConnectionClosed)

    def test_context_manager_disconnects(self, server: FileServer, fast_settings: ClientSettings) -> None:
        with ShareClient(fast_settings) as c:
            assert c.connect(HOST, server.port).ok
        assert c.state is ConnectionState.DISCONNECTED

    def test_log_callback(self, server: FileServer, fast_settings: ClientSettings) -> None:
        messages: list[str] = []
        c = ShareClient(fast_settings, on_log=messages.append)
        c.connect(HOST, server.port)
        c.disconnect()
        assert any("Connected" in m for m in messages)


# ---------------------------------------------------------------------------
# Navigation and removal
# ---------------------------------------------------------------------------


class TestNavigation:
    def test_mkdir_cd_list_up(self, client: ShareClient, shared_root: Path) -> None:
        assert client.make_directory("docs").ok
        (shared_root / "docs" / "inside.txt").write_text("x")
        assert client.change_directory("docs").path == "/docs"
        assert client.virtual_path == "/docs"

        listing = client.list_current_directory()
        assert listing.ok
        assert [(e.name, e.is_folder) for e in listing.entries] == [("inside.txt", False)]

        assert client.change_directory_up().path == "/"
        assert client.change_directory_up().path == "/"

    def test_cd_missing(self, client: ShareClient) -> None:
        result = client.change_directory("nowhere")
        assert not result.ok
        assert isinstance(result.error, FilesystemError)
        assert client.virtual_path == "/"

    def test_cd_escape(self, client: ShareClient) -> None:
        result = client.change_directory("../..")
        assert not result.ok
        assert isinstance(result.error, PathRejected)
        assert client.list_current_directory().ok

    def test_newline_in_name_rejected_locally(self, client: ShareClient) -> None:
        result = client.make_directory("bad\nLIST")
        assert not result.ok
        assert isinstance(result.error, ValueError)
        assert client.list_current_directory().ok

    def test_delete_file(self, client: ShareClient, shared_root: Path) -> None:
        (shared_root / "old.txt").write_text("x")
        assert client.delete_remote("old.txt", is_directory=False).ok
        assert not (shared_root / "old.txt").exists()

    def test_delete_missing_file(self, client: ShareClient) -> None:
        result = client.delete_remote("ghost.txt", is_directory=False)
        assert not result.ok
        assert P.FILE_NOT_FOUND in result.message
        assert client.list_current_directory().ok

    def test_delete_directory(self, client: ShareClient, shared_root: Path) -> None:
        (shared_root / "tmp" / "x").mkdir(parents=True)
        assert client.delete_remote("tmp", is_directory=True).ok
        assert not (shared_root / "tmp").exists()

    def test_delete_root_refused(self, client: ShareClient, shared_root: Path) -> None:
        result = client.delete_remote("/", is_directory=True)
        assert not result.ok
        assert P.ROOT_PROTECTED in result.message
        assert isinstance(result.error, PathRejected)
        assert shared_root.is_dir()


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------


class TestTransfers:
    @pytest.mark.parametrize("size", [0, 1, 65536, 10_000_000])
    def test_file_round_trip(self, client: ShareClient, shared_root: Path, tmp_path: Path, size: int) -> None:
        payload = os.urandom(size)
        src = tmp_path / "src" / f"blob{size}.bin"
        src.parent.mkdir()
        src.write_bytes(payload)

        up_calls: list[tuple[int, int]] = []
        up = client.upload_file(src, progress=lambda d, t: up_calls.append((d, t)))
        assert up.ok, up.message
        assert up.transfer.bytes_moved == size
        assert (shared_root / src.name).read_bytes() == payload
        assert up_calls[-1] == (size, size)

        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()
        down_calls: list[tuple[int, int]] = []
        down = client.download_file(src.name, dest_dir, progress=lambda d, t: down_calls.append((d, t)))
        assert down.ok, down.message
        assert down.transfer.bytes_moved == size
        assert (dest_dir / src.name).read_bytes() == payload
        assert not (dest_dir / (src.name + ".part")).exists()
        assert down_calls[-1] == (size, size)

    def test_download_to_explicit_path(self, client: ShareClient, shared_root: Path, tmp_path: Path) -> None:
        (shared_root / "a.txt").write_bytes(b"abc")
        assert client.download_file("a.txt", tmp_path / "renamed.txt").ok
        assert (tmp_path / "renamed.txt").read_bytes() == b"abc"

    def test_download_missing(self, client: ShareClient, tmp_path: Path) -> None:
        result = client.download_file("nope.txt", tmp_path)
        assert not result.ok
        assert isinstance(result.error, FilesystemError)
        assert not (tmp_path / "nope.txt").exists()
        assert client.list_current_directory().ok

    def test_upload_missing_local_file(self, client: ShareClient, tmp_path: Path) -> None:
        result = client.upload_file(tmp_path / "absent.bin")
        assert not result.ok
        assert isinstance(result.error, FilesystemError)

    def test_upload_into_current_directory(self, client: ShareClient, shared_root: Path, tmp_path: Path) -> None:
        client.make_directory("inbox")
        client.change_directory("inbox")
        src = tmp_path / "note.txt"
        src.write_text("hello")
        assert client.upload_file(src).ok
        assert (shared_root / "inbox" / "note.txt").read_text() == "hello"

    def test_directory_round_trip(self, client: ShareClient, shared_root: Path, tmp_path: Path) -> None:
        album = tmp_path / "album"
        (album / "2024" / "summer").mkdir(parents=True)
        (album / "cover.jpg").write_bytes(os.urandom(5000))
        (album / "2024" / "a.jpg").write_bytes(os.urandom(70000))
        (album / "2024" / "summer" / "b.jpg").write_bytes(b"")

        up = client.upload_directory(album)
        assert up.ok, up.message
        assert up.transfer.files_ok == 3
        assert (shared_root / "album" / "2024" / "a.jpg").read_bytes() == (album / "2024" / "a.jpg").read_bytes()

        copy = tmp_path / "copy"
        down = client.download_directory("album", copy)
        assert down.ok, down.message
        assert down.transfer.files_ok == 3
        assert down.transfer.bytes_moved == 75000
        expected = {(e.rel_path, e.size) for e in walk_tree(album)}
        assert {(e.rel_path, e.size) for e in walk_tree(copy)} == expected

    def test_download_missing_directory(self, client: ShareClient, tmp_path: Path) -> None:
        result = client.download_directory("ghost", tmp_path / "out")
        assert not result.ok
        assert P.DIR_NOT_FOUND in result.message

    def test_upload_directory_not_a_directory(self, client: ShareClient, tmp_path: Path) -> None:
        f = tmp_path / "file.txt"
        f.write_text("x")
        result = client.upload_directory(f)
        assert not result.ok
        assert isinstance(result.error, FilesystemError)


# ---------------------------------------------------------------------------
# Resilience
# ---------------------------------------------------------------------------


class TestResilience:
    def test_drop_mid_download(self, scripted_server, fast_settings: ClientSettings, tmp_path: Path) -> None:
        def script(ch: FramedChannel, index: int) -> None:
            if index > 0:
                serve_basics(ch)
                return
            ch.send_line(P.BANNER)
            ch.read_line(5)
            ch.send_lines(P.SENDING_FILE, "1000")
            ch.write_bytes(b"x" * 300)

        srv = scripted_server(script)
        c = ShareClient(fast_settings)
        assert c.connect(HOST, srv.port).ok
        try:
            result = c.download_file("big.bin", tmp_path)
            assert not result.ok
            assert isinstance(result.error, ConnectionClosed)
            assert result.error.received == 300
            assert not (tmp_path / "big.bin").exists()
            assert not (tmp_path / "big.bin.part").exists()
            # recovery reconnected
            assert srv.accepted == 2
            assert c.state is ConnectionState.CONNECTED
        finally:
            c.disconnect()

    def test_get_timeout_retries_then_gives_up(self, scripted_server, fast_settings: ClientSettings,
                                               tmp_path: Path) -> None:
        commands: dict[int, list[str]] = {}

        def script(ch: FramedChannel, index: int) -> None:
            seen = commands.setdefault(index, [])
            ch.send_line(P.BANNER)
            while True:
                line = ch.read_line(None)
                seen.append(line)
                # GET is never answered
                answer_basics(ch, line)

        srv = scripted_server(script)
        settings = replace(fast_settings, get_timeout=0.3)
        c = ShareClient(settings)
        assert c.connect(HOST, srv.port).ok
        assert c.change_directory("docs").ok
        try:
            result = c.download_file("slow.bin", tmp_path)
            assert not result.ok
            assert isinstance(result.error, RetryExhausted)
            assert result.error.attempts == 3
            assert srv.accepted == 3
            assert c.state is ConnectionState.ERROR
            assert not (tmp_path / "slow.bin").exists()
            # each reconnect walked back into /docs before retrying
            assert commands[1][:2] == ["CD docs", "GET slow.bin"]
            assert commands[2][:2] == ["CD docs", "GET slow.bin"]
        finally:
            c.disconnect()

    def test_failed_keepalive_after_transfer_fails_operation(self, scripted_server, fast_settings: ClientSettings,
                                                            tmp_path: Path) -> None:
        def script(ch: FramedChannel, index: int) -> None:
            ch.send_line(P.BANNER)
            while True:
                line = ch.read_line(None)
                if line == "GET a.bin":
                    ch.send_lines(P.SENDING_FILE, "2")
                    ch.write_bytes(b"ab")
                    ch.send_line(P.END_OF_FILE)
                elif line == "NOOP":
                    ch.send_line("???")
                else:
                    answer_basics(ch, line)

        srv = scripted_server(script)
        c = ShareClient(fast_settings)
        assert c.connect(HOST, srv.port).ok
        try:
            result = c.download_file("a.bin", tmp_path)
            assert not result.ok
            assert isinstance(result.error, ProtocolViolation)
            # the LIST probe succeeded, so the same connection was kept
            assert srv.accepted == 1
            assert c.connected
        finally:
            c.disconnect()

    def test_reconnect_replays_directory(self, client: ShareClient, shared_root: Path) -> None:
        (shared_root / "docs" / "deep").mkdir(parents=True)
        (shared_root / "docs" / "deep" / "f.txt").write_text("x")
        client.change_directory("docs")
        client.change_directory("deep")

        client._session.teardown()
        assert not client.connected

        listing = client.list_current_directory()
        assert listing.ok, listing.message
        assert [e.name for e in listing.entries] == ["f.txt"]
        assert client.virtual_path == "/docs/deep"
        assert client.state is ConnectionState.CONNECTED

    def test_replay_stops_at_missing_segment(self, client: ShareClient, shared_root: Path) -> None:
        (shared_root / "docs" / "deep").mkdir(parents=True)
        client.change_directory("docs")
        client.change_directory("deep")
        (shared_root / "docs" / "deep").rmdir()

        client._session.teardown()
        assert client.list_current_directory().ok
        assert client.virtual_path == "/docs"

    def test_keepalive(self, client: ShareClient) -> None:
        assert client.keepalive().ok

    def test_keepalive_skips_while_busy(self, client: ShareClient) -> None:
        client._op_lock.acquire()
        try:
            result = client.keepalive()
        finally:
            client._op_lock.release()
        assert result.ok
        assert "skipped" in result.message

    def test_keepalive_timer_stops(self, client: ShareClient) -> None:
        client.start_keepalive(0.05)
        threading.Event().wait(0.2)
        client.stop_keepalive()
        assert client.connected
        assert client.list_current_directory().ok


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class TestSession:
    def test_writes_never_interleave(self, scripted_server) -> None:
        received: list[str] = []
        done = threading.Event()

        def script(ch: FramedChannel, index: int) -> None:
            ch.send_line(P.BANNER)
            try:
                while True:
                    received.append(ch.read_line(None))
            finally:
                done.set()

        srv = scripted_server(script)
        session = Session.open(HOST, srv.port)
        chunk_line = "DATA" * 1000

        def headers() -> None:
            for _ in range(200):
                session.send_lines(P.SENDING_FILE, "1234567890")

        def chunks() -> None:
            for _ in range(200):
                session.write_chunk((chunk_line + "\n").encode())

        def noops() -> None:
            for _ in range(200):
                session.send_command(P.Verb.NOOP)

        workers = [threading.Thread(target=fn) for fn in (headers, chunks, noops)]
        for w in workers:
            w.start()
        for w in workers:
            w.join(timeout=10)
        session.teardown()
        assert done.wait(5)

        assert len(received) == 800
        assert set(received) == {P.SENDING_FILE, "1234567890", chunk_line, "NOOP"}
        for i, line in enumerate(received):
            if line == P.SENDING_FILE:
                assert received[i + 1] == "1234567890"

    def test_read_timeout_tears_down(self, scripted_server) -> None:
        srv = scripted_server(lambda ch, i: serve_basics(ch))
        session = Session.open(HOST, srv.port)
        session.send_command(P.Verb.GET, "x")
        with pytest.raises(TimeoutError):
            session.read_line(0.1)
        assert not session.connected

    def test_close_says_goodbye(self, scripted_server) -> None:
        commands: list[str] = []

        def script(ch: FramedChannel, index: int) -> None:
            ch.send_line(P.BANNER)
            while True:
                line = ch.read_line(None)
                commands.append(line)
                answer_basics(ch, line)

        srv = scripted_server(script)
        session = Session.open(HOST, srv.port)
        assert session.banner == P.BANNER
        session.close()
        assert not session.connected
        assert commands == ["QUIT"]
