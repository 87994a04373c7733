"""
ShareDir CLI entry point.

Usage:
    python -m sharedir serve [--root DIR] [--host H] [--port N] [--config FILE]
    python -m sharedir shell HOST [--port N] [--config FILE] [--quiet]
    python -m sharedir get HOST NAME [--dir] [--dest PATH] [--port N] [--quiet]
    python -m sharedir put HOST PATH [--port N] [--quiet]
"""

from __future__ import annotations

import argparse
import logging
import shlex
import sys
from pathlib import Path
from typing import Callable

from .client import OperationResult, ShareClient
from .config import ClientSettings, load_settings
from .progress import NullProgress, ProgressTracker
from .server import FileServer
from .transfer import ProgressCallback


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def _setup_logging(verbose: bool, default: int = logging.WARNING) -> None:
    level = logging.DEBUG if verbose else default
    logging.basicConfig(
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        level=level,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _client_settings(args: argparse.Namespace) -> ClientSettings:
    _, settings = load_settings(args.config)
    return settings


def _run_transfer(
    quiet: bool,
    peer: str,
    direction: str,
    name: str,
    fn: Callable[[ProgressCallback | None], OperationResult],
) -> OperationResult:
    """Run *fn* with a fresh progress bar (or none when quiet)."""
    tracker: ProgressTracker | NullProgress
    tracker = NullProgress() if quiet else ProgressTracker(peer_name=peer, direction=direction)
    with tracker, tracker.transfer(name) as bar:
        return fn(bar)


def _confirm(prompt: str) -> bool:
    try:
        answer = input(f"  {prompt} [y/N] ").strip().lower()
    except EOFError:
        return False
    return answer in ("y", "yes")


def _print_listing(result: OperationResult) -> None:
    if not result.entries:
        print("  (empty)")
        return
    for entry in result.entries:
        kind = "DIR " if entry.is_folder else "FILE"
        print(f"  {kind}  {entry.name}")


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------

def cmd_serve(args: argparse.Namespace) -> int:
    """Share a directory until Ctrl-C."""
    settings, _ = load_settings(args.config)
    root = args.root or settings.root
    server = FileServer(
        root=root,
        host=args.host or settings.host,
        port=args.port if args.port is not None else settings.port,
        chunk_size=settings.chunk_size,
        payload_timeout=settings.payload_timeout,
        idle_timeout=settings.idle_timeout,
    )
    try:
        server.start()
    except OSError as exc:
        print(f"[ShareDir] Cannot listen: {exc}", file=sys.stderr)
        return 1

    print(f"[ShareDir] Sharing {server.root} on port {server.port}")
    print("[ShareDir] Press Ctrl-C to stop.\n")
    try:
        server.serve_forever()
    finally:
        server.stop()
    return 0


def cmd_get(args: argparse.Namespace) -> int:
    """Download one file or folder and exit."""
    settings = _client_settings(args)
    port = args.port or settings.port
    with ShareClient(settings) as client:
        result = client.connect(args.host, port)
        if not result:
            print(f"[ShareDir] {result.message}", file=sys.stderr)
            return 1

        peer = f"{args.host}:{port}"
        if args.dir:
            dest = Path(args.dest or Path(args.name).name)
            result = _run_transfer(args.quiet, peer, "↓ GETDIR", args.name,
                                   lambda bar: client.download_directory(args.name, dest, bar))
        else:
            dest = Path(args.dest or ".")
            result = _run_transfer(args.quiet, peer, "↓ GET", args.name,
                                   lambda bar: client.download_file(args.name, dest, bar))

    print(f"[ShareDir] {'✓' if result else '✗'} {result.message}",
          file=sys.stdout if result else sys.stderr)
    return 0 if result else 1


def cmd_put(args: argparse.Namespace) -> int:
    """Upload one file or folder into the shared root and exit."""
    settings = _client_settings(args)
    port = args.port or settings.port
    src = Path(args.path)
    if not src.exists():
        print(f"[ShareDir] No such file or directory: {src}", file=sys.stderr)
        return 1

    with ShareClient(settings) as client:
        result = client.connect(args.host, port)
        if not result:
            print(f"[ShareDir] {result.message}", file=sys.stderr)
            return 1

        peer = f"{args.host}:{port}"
        if src.is_dir():
            result = _run_transfer(args.quiet, peer, "↑ PUTDIR", src.name,
                                   lambda bar: client.upload_directory(src, bar))
        else:
            result = _run_transfer(args.quiet, peer, "↑ PUT", src.name,
                                   lambda bar: client.upload_file(src, bar))

    print(f"[ShareDir] {'✓' if result else '✗'} {result.message}",
          file=sys.stdout if result else sys.stderr)
    return 0 if result else 1


_SHELL_HELP = """\
  ls                      List the current remote directory
  cd <dir>                Enter a remote directory
  up                      Go to the parent remote directory
  pwd                     Show the current remote directory
  mkdir <dir>             Create a remote directory
  get <file> [local]      Download a file (default: into the current folder)
  getdir <dir> [local]    Download a folder (default: ./<dir>)
  put <path>              Upload a local file
  putdir <path>           Upload a local folder
  rm <file>               Delete a remote file
  rmdir <dir>             Delete a remote folder
  noop                    Check that the connection is alive
  help                    Show this help
  exit                    Disconnect and quit"""


def _remote_names(client: ShareClient) -> set[str]:
    listing = client.list_current_directory()
    return {e.name for e in listing.entries}


def cmd_shell(args: argparse.Namespace) -> int:
    """Interactive session against one server."""
    settings = _client_settings(args)
    port = args.port or settings.port
    peer = f"{args.host}:{port}"
    quiet = args.quiet

    client = ShareClient(settings, on_log=lambda msg: print(f"  {msg}"))
    if not client.connect(args.host, port):
        return 1
    client.start_keepalive()
    print("Type 'help' for commands.\n")

    try:
        while True:
            try:
                line = input(f"sharedir:{client.virtual_path}> ").strip()
            except EOFError:
                break
            except KeyboardInterrupt:
                break

            if not line:
                continue

            try:
                parts = shlex.split(line)
            except ValueError as e:
                print(f"  Parse error: {e}"); continue

            cmd = parts[0].lower()
            rest = parts[1:]
            arg = " ".join(rest)

            if cmd in ("exit", "quit", "q"):
                break

            elif cmd in ("help", "h", "?"):
                print(_SHELL_HELP)

            elif cmd in ("ls", "dir"):
                result = client.list_current_directory()
                if result:
                    _print_listing(result)

            elif cmd == "cd":
                if not arg:
                    print("  Usage: cd <dir>"); continue
                client.change_directory(arg)

            elif cmd in ("up", "cdup", ".."):
                client.change_directory_up()

            elif cmd == "pwd":
                print(f"  {client.virtual_path}")

            elif cmd == "mkdir":
                if not arg:
                    print("  Usage: mkdir <dir>"); continue
                client.make_directory(arg)

            elif cmd == "get":
                if not rest:
                    print("  Usage: get <file> [local]"); continue
                name = rest[0]
                dest = Path(rest[1]) if len(rest) > 1 else Path(".")
                target = dest / Path(name).name if dest.is_dir() else dest
                if target.exists() and not _confirm(f"Overwrite local {target}?"):
                    continue
                _run_transfer(quiet, peer, "↓ GET", name,
                              lambda bar: client.download_file(name, dest, bar))

            elif cmd == "getdir":
                if not rest:
                    print("  Usage: getdir <dir> [local]"); continue
                name = rest[0]
                dest = Path(rest[1]) if len(rest) > 1 else Path(Path(name).name)
                if dest.exists() and any(dest.iterdir()) and not _confirm(f"Merge into existing {dest}?"):
                    continue
                _run_transfer(quiet, peer, "↓ GETDIR", name,
                              lambda bar: client.download_directory(name, dest, bar))

            elif cmd in ("put", "putdir"):
                if not arg:
                    print(f"  Usage: {cmd} <path>"); continue
                src = Path(arg)
                if src.name in _remote_names(client) and not _confirm(f"Overwrite remote {src.name}?"):
                    continue
                if cmd == "putdir":
                    _run_transfer(quiet, peer, "↑ PUTDIR", src.name,
                                  lambda bar: client.upload_directory(src, bar))
                else:
                    _run_transfer(quiet, peer, "↑ PUT", src.name,
                                  lambda bar: client.upload_file(src, bar))

            elif cmd in ("rm", "del"):
                if not arg:
                    print("  Usage: rm <file>"); continue
                if _confirm(f"Delete remote file {arg}?"):
                    client.delete_remote(arg, is_directory=False)

            elif cmd == "rmdir":
                if not arg:
                    print("  Usage: rmdir <dir>"); continue
                if _confirm(f"Delete remote folder {arg} and everything in it?"):
                    client.delete_remote(arg, is_directory=True)

            elif cmd == "noop":
                result = client.keepalive()
                print(f"  {result.message}")

            else:
                print(f"  Unknown command: '{cmd}'  (type 'help')")

    except KeyboardInterrupt:
        pass
    finally:
        client.disconnect()

    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sharedir",
        description="ShareDir — browse and transfer files on a remote shared folder")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    # --- serve ---
    p_serve = sub.add_parser("serve", help="Share a directory")
    p_serve.add_argument("--root", default=None,
                         help="Directory to share (default from config: ./shared)")
    p_serve.add_argument("--host", default=None,
                         help="Interface to bind (default 0.0.0.0)")
    p_serve.add_argument("--port", type=int, default=None,
                         help="TCP port to listen on (default 2121)")
    p_serve.add_argument("--config", default=None, help="JSON settings file")

    # --- shell ---
    p_shell = sub.add_parser("shell", help="Interactive session with a server")
    p_shell.add_argument("host", help="Server hostname or IP address")
    p_shell.add_argument("--port", type=int, default=None, help="Server port (default 2121)")
    p_shell.add_argument("--config", default=None, help="JSON settings file")
    p_shell.add_argument("--quiet", action="store_true", help="No progress bars")

    # --- get ---
    p_get = sub.add_parser("get", help="Download a file or folder")
    p_get.add_argument("host", help="Server hostname or IP address")
    p_get.add_argument("name", help="Remote file (or folder with --dir), relative to the shared root")
    p_get.add_argument("--dir", action="store_true", help="NAME is a folder")
    p_get.add_argument("--dest", default=None, help="Local destination")
    p_get.add_argument("--port", type=int, default=None, help="Server port (default 2121)")
    p_get.add_argument("--config", default=None, help="JSON settings file")
    p_get.add_argument("--quiet", action="store_true", help="No progress bars")

    # --- put ---
    p_put = sub.add_parser("put", help="Upload a file or folder into the shared root")
    p_put.add_argument("host", help="Server hostname or IP address")
    p_put.add_argument("path", help="Local file or folder")
    p_put.add_argument("--port", type=int, default=None, help="Server port (default 2121)")
    p_put.add_argument("--config", default=None, help="JSON settings file")
    p_put.add_argument("--quiet", action="store_true", help="No progress bars")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, logging.INFO if args.command == "serve" else logging.WARNING)

    handlers = {
        "serve": cmd_serve,
        "shell": cmd_shell,
        "get":   cmd_get,
        "put":   cmd_put,
    }
    sys.exit(handlers[args.command](args))


if __name__ == "__main__":
    main()
