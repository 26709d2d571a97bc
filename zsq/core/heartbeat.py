"""
VisibilityHeartbeat — async context manager that keeps a message hidden.

A worker whose job may outlast the queue's visibility timeout wraps its work
in VisibilityHeartbeat. Every ``interval`` it pushes the message's deadline
``vt`` seconds into the future, so no other consumer receives it meanwhile.

Usage
-----
    async with MessageQueue(store) as q:
        message = await q.receive_message("videos", vt=30)
        if message is not None:
            async with VisibilityHeartbeat(q, "videos", message.id, vt=30):
                await transcode(message.body)
            await q.delete_message("videos", message.id)

If the worker raises, the heartbeat task is cancelled and the message becomes
visible again once the last extension runs out.

VisibilityHeartbeat is typed against the structural Protocol
_HasVisibility, so anything with a matching change_message_visibility works.
"""

from __future__ import annotations

import asyncio
import dataclasses
from datetime import timedelta
from types import TracebackType
from typing import Protocol

import structlog

from zsq.domain.errors import ZsqError

logger = structlog.get_logger(__name__)


class _HasVisibility(Protocol):
    """Structural Protocol — any object with change_message_visibility."""

    async def change_message_visibility(
        self, queue: str, message_id: str, vt: int
    ) -> bool: ...


@dataclasses.dataclass
class VisibilityHeartbeat:
    """
    Periodically extends the visibility timeout of one message.

    Parameters
    ----------
    queue      : any object with async change_message_visibility(queue, id, vt)
    queue_name : the queue holding the message
    message_id : the message to keep hidden
    vt         : seconds of visibility granted by each extension (default 30)
    interval   : time between extensions (default 10 seconds); keep it
                 well below vt
    """

    queue: _HasVisibility
    queue_name: str
    message_id: str
    vt: int = 30
    interval: timedelta = timedelta(seconds=10)

    _task: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.interval.total_seconds() >= self.vt:
            raise ValueError(
                f"interval {self.interval} must be shorter than vt={self.vt}s"
            )

    async def __aenter__(self) -> VisibilityHeartbeat:
        self._task = asyncio.create_task(
            self._beat(), name=f"zsq-heartbeat-{self.message_id}"
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            try:
                extended = await self.queue.change_message_visibility(
                    self.queue_name, self.message_id, self.vt
                )
            except ZsqError as exc:
                logger.warning(
                    "heartbeat stopped", id=self.message_id, error=str(exc)
                )
                return
            if not extended:
                # Deleted or popped by someone else.
                return
