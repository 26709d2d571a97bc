"""
QueueRegistry — create, inspect, reconfigure and delete queues.

Queue metadata lives in the store as integer fields (vt, delay, maxsize,
created, modified, totalrecv, totalsent). Creation writes each core field
with set-if-absent semantics, so two concurrent creators of the same name
cannot overwrite each other: exactly one of them wins and the other gets
QueueExistsError.
"""

from __future__ import annotations

import dataclasses

import structlog

from zsq.core import codec, validation
from zsq.domain.errors import QueueExistsError, QueueNotFoundError, StoreError, ValidationError
from zsq.domain.models import (
    DEFAULT_DELAY,
    DEFAULT_VT,
    UNLIMITED,
    QueueAttributes,
    QueueConfig,
)
from zsq.ports.store import QueueStorePort

logger = structlog.get_logger(__name__)


@dataclasses.dataclass
class QueueRegistry:
    """Queue lifecycle and configuration on top of a QueueStorePort."""

    store: QueueStorePort

    async def create_queue(
        self,
        name: str,
        vt: int = DEFAULT_VT,
        delay: int = DEFAULT_DELAY,
        maxsize: int = UNLIMITED,
    ) -> bool:
        """Create a queue. Raises QueueExistsError if it already exists."""
        validation.validate_queue_name(name)
        validation.validate_seconds("vt", vt)
        validation.validate_seconds("delay", delay)
        validation.validate_maxsize(maxsize)

        seconds, _ = await self.store.time()
        created = await self.store.create_queue(
            name,
            {
                "vt": vt,
                "delay": delay,
                "maxsize": maxsize,
                "created": seconds,
                "modified": seconds,
            },
        )
        if not created:
            raise QueueExistsError(name)
        logger.info("queue created", queue=name, vt=vt, delay=delay, maxsize=maxsize)
        return True

    async def list_queues(self) -> list[str]:
        """All queue names. Store failures degrade to an empty list."""
        try:
            return await self.store.queue_names()
        except StoreError as exc:
            logger.warning("list_queues failed", error=str(exc))
            return []

    async def delete_queue(self, name: str) -> None:
        """Delete a queue together with all of its messages."""
        validation.validate_queue_name(name)
        if not await self.store.delete_queue(name):
            raise QueueNotFoundError(name)
        logger.info("queue deleted", queue=name)

    async def get_queue_attributes(self, name: str) -> QueueAttributes:
        validation.validate_queue_name(name)
        fields, (seconds, micros) = await self.store.read_queue(name)
        if fields is None:
            raise QueueNotFoundError(name)
        now = codec.to_score(seconds, micros)
        msgs, hidden = await self.store.count_messages(name, now)
        return QueueAttributes(**fields, msgs=msgs, hiddenmsgs=hidden)

    async def set_queue_attributes(
        self,
        name: str,
        vt: int | None = None,
        delay: int | None = None,
        maxsize: int | None = None,
    ) -> QueueAttributes:
        """
        Update the supplied fields only; ``modified`` is always refreshed.

        Returns the attribute snapshot read after the update.
        """
        validation.validate_queue_name(name)
        if vt is not None:
            validation.validate_seconds("vt", vt)
        if delay is not None:
            validation.validate_seconds("delay", delay)
        if maxsize is not None:
            validation.validate_maxsize(maxsize)

        config = await self.load(name)
        fields = {"modified": config.seconds}
        for key, value in (("vt", vt), ("delay", delay), ("maxsize", maxsize)):
            if value is not None:
                fields[key] = value
        if not await self.store.update_queue(name, fields):
            # Deleted after load().
            raise QueueNotFoundError(name)
        logger.info("queue attributes updated", queue=name, **fields)
        return await self.get_queue_attributes(name)

    async def queue_exists(self, name: str) -> bool:
        """Existence probe. Never raises."""
        try:
            validation.validate_queue_name(name)
            fields, _ = await self.store.read_queue(name)
        except ValidationError:
            return False
        except StoreError as exc:
            logger.warning("queue_exists failed", queue=name, error=str(exc))
            return False
        return fields is not None

    async def load(self, name: str) -> QueueConfig:
        """Queue settings plus the server time, read in one transaction."""
        validation.validate_queue_name(name)
        fields, (seconds, micros) = await self.store.read_queue(name)
        if fields is None:
            raise QueueNotFoundError(name)
        return QueueConfig(
            vt=fields["vt"],
            delay=fields["delay"],
            maxsize=fields["maxsize"],
            seconds=seconds,
            micros=micros,
        )
