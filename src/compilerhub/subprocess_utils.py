"""Subprocess output utilities.

- StreamCapture: drain a stream to EOF, keeping at most N bytes
- drain_subprocess_output: concurrent stdout/stderr draining (prevents 64KB pipe deadlock)
- log_task_exception: done-callback for background tasks
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from compilerhub._logging import get_logger

if TYPE_CHECKING:
    from compilerhub.platform_utils import ProcessWrapper

logger = get_logger(__name__)

_CHUNK_SIZE = 64 * 1024


class StreamCapture:
    """Bytes kept from a stream plus whether anything was dropped.

    Data is accumulated in place, so whatever was read before a reader task
    got cancelled is still available.
    """

    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        self.truncated = False
        self._buf = bytearray()

    @property
    def data(self) -> bytes:
        return bytes(self._buf)

    def text(self) -> str:
        return self._buf.decode("utf-8", errors="replace")

    async def consume(self, stream: asyncio.StreamReader | None) -> None:
        """Read stream until EOF.

        Reading continues past the cap (discarding data) so the writer never
        blocks on a full pipe.
        """
        if stream is None:
            return
        while True:
            chunk = await stream.read(_CHUNK_SIZE)
            if not chunk:
                return
            room = self.max_bytes - len(self._buf)
            if room <= 0:
                self.truncated = True
            elif len(chunk) > room:
                self._buf.extend(chunk[:room])
                self.truncated = True
            else:
                self._buf.extend(chunk)


async def drain_subprocess_output(
    process: ProcessWrapper,
    stdout: StreamCapture,
    stderr: StreamCapture,
) -> None:
    """Drain stdout and stderr concurrently into the given captures.

    Without concurrent draining a child writing to both pipes can deadlock
    once one 64KB pipe buffer fills while the reader waits on the other.
    """
    async with asyncio.TaskGroup() as tg:
        tg.create_task(stdout.consume(process.stdout))
        tg.create_task(stderr.consume(process.stderr))


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks (use with Task.add_done_callback)."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
