"""
Progress rendering for CLI transfers.

    with ProgressTracker(peer_name="fileserver:2121", direction="↓ GET") as tracker:
        with tracker.transfer("video.mp4") as bar:
            client.download_file("video.mp4", ".", progress=bar)

The bar is a ``(bytes_done, bytes_total)`` callable, the shape ShareClient
reports through its throttle. Directory downloads only learn their total
file by file, so the bar total grows with what has been seen.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Column


class TransferBar:
    def __init__(self, progress: Progress, task_id: TaskID) -> None:
        self._progress = progress
        self._task_id = task_id
        self._done = 0

    def __call__(self, done: int, total: int) -> None:
        self._done = done
        self._progress.update(self._task_id, completed=done, total=max(total, done, 1))

    def close(self) -> None:
        self._progress.update(self._task_id, completed=self._done, total=max(self._done, 1))


class ProgressTracker:
    """Rich live display for transfers against one server."""

    def __init__(self, peer_name: str, direction: str = "↓", console: Console | None = None) -> None:
        self.peer_name = peer_name
        self.direction = direction
        self._progress = Progress(
            TextColumn("[bold cyan]{task.fields[op]}[/] {task.description}",
                       table_column=Column(ratio=2, no_wrap=True)),
            BarColumn(bar_width=None, table_column=Column(ratio=3)),
            TaskProgressColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(compact=True),
            console=console or Console(stderr=True),
            expand=True,
        )

    def __enter__(self) -> ProgressTracker:
        self._progress.start()
        return self

    def __exit__(self, *exc) -> None:
        self._progress.stop()

    @contextmanager
    def transfer(self, name: str, total: int = 0) -> Generator[TransferBar, None, None]:
        task_id = self._progress.add_task(
            f"{name} [dim]@ {self.peer_name}[/]", total=max(total, 1), op=self.direction,
        )
        bar = TransferBar(self._progress, task_id)
        try:
            yield bar
        finally:
            bar.close()
            self._progress.remove_task(task_id)


class NullProgress:
    """Used for --quiet: no display, and no callback for the client."""

    def __enter__(self) -> NullProgress:
        return self

    def __exit__(self, *exc) -> None:
        return None

    @contextmanager
    def transfer(self, name: str, total: int = 0) -> Generator[None, None, None]:
        yield None
