"""Structured progress events for long extraction runs.

ProgressReporter wraps whatever callback the caller handed in. A broken
callback is logged and ignored; it never interrupts extraction.
RichProgressSink is the callback the CLI uses to drive a rich progress
bar.
"""

from __future__ import annotations

import logging
from typing import Callable, Union

from rich.progress import BarColumn, Progress, TaskID, TextColumn, TimeElapsedColumn

from blunder_miner.models import ProgressEvent

logger = logging.getLogger(__name__)

PHASES = ("evaluating", "confirming", "building")

ProgressCallback = Callable[[ProgressEvent], None]


def fraction(event: ProgressEvent) -> float:
    """Overall completion in [0, 1] across all games of the run."""
    if event.game_count <= 0:
        return 0.0
    within = event.ply / event.ply_count if event.ply_count > 0 else 1.0
    within = min(max(within, 0.0), 1.0)
    return min(1.0, (event.game_index + within) / event.game_count)


class ProgressReporter:
    """Emits ProgressEvents to an optional callback."""

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback
        self.last_event: ProgressEvent | None = None

    @classmethod
    def wrap(cls, target: Union[ProgressReporter, ProgressCallback, None]) -> ProgressReporter:
        if isinstance(target, ProgressReporter):
            return target
        return cls(target)

    def emit(self, event: ProgressEvent) -> None:
        self.last_event = event
        if self._callback is None:
            return
        try:
            self._callback(event)
        except Exception:
            logger.exception("Progress callback failed for %s", event)

    def ply(
        self,
        game_id: str,
        game_index: int,
        game_count: int,
        ply: int,
        ply_count: int,
        phase: str = "evaluating",
    ) -> None:
        self.emit(
            ProgressEvent(
                game_id=game_id,
                game_index=game_index,
                game_count=game_count,
                ply=ply,
                ply_count=ply_count,
                phase=phase,
            )
        )


class RichProgressSink:
    """Progress callback rendering one rich task per run.

    Usage:
        with RichProgressSink(console) as sink:
            await extract(..., on_progress=sink)
    """

    def __init__(self, console=None, description: str = "Mining") -> None:
        self._progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TextColumn("{task.fields[detail]}"),
            TimeElapsedColumn(),
            console=console,
            transient=False,
        )
        self._description = description
        self._task: TaskID | None = None

    def __enter__(self) -> RichProgressSink:
        self._progress.start()
        self._task = self._progress.add_task(self._description, total=1.0, detail="")
        return self

    def __exit__(self, *exc_info) -> None:
        self._progress.stop()

    def __call__(self, event: ProgressEvent) -> None:
        if self._task is None:
            return
        detail = (
            f"game {event.game_index + 1}/{event.game_count} "
            f"{event.phase} ply {event.ply}/{event.ply_count}"
        )
        self._progress.update(self._task, completed=fraction(event), detail=detail)
