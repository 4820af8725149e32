"""Progress reporting from the engine to whatever renders it.

The engine only writes to a sink and must never wait on it: sinks buffer,
and drop messages when their buffer is full.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusUpdate:
    """Title/description pair shown for the step or recipe being processed."""

    message: str
    details: str = ""
    error: str | None = None
    completed: bool = False
    should_quit: bool = False


@dataclass(frozen=True)
class ProgressUpdate:
    """Fraction of all scheduled steps completed so far, in [0, 1]."""

    fraction: float


class ProgressSink(Protocol):
    def status(self, update: StatusUpdate) -> None: ...

    def progress(self, fraction: float) -> None: ...


class NullProgressSink:
    """Sink that discards everything."""

    def status(self, update: StatusUpdate) -> None:
        pass

    def progress(self, fraction: float) -> None:
        pass


class QueueProgressSink:
    """Buffers updates in an asyncio queue for a consumer task.

    Usage:
        sink = QueueProgressSink(maxsize=100)
        consumer = asyncio.create_task(render(sink.queue))
    """

    def __init__(self, maxsize: int = 100):
        self.queue: asyncio.Queue[StatusUpdate | ProgressUpdate] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, item: StatusUpdate | ProgressUpdate) -> None:
        try:
            self.queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug(f"Progress queue full, dropped {type(item).__name__}")

    def status(self, update: StatusUpdate) -> None:
        self._offer(update)

    def progress(self, fraction: float) -> None:
        self._offer(ProgressUpdate(min(1.0, max(0.0, fraction))))
