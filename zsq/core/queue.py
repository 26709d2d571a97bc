"""
MessageQueue — the public send / receive / pop / delete API.

Every operation validates its arguments, loads the queue's config together
with the store's clock, and then performs one store call. Claims go through
the store's AtomicOperations, so any number of MessageQueue instances (in
any number of processes) can consume the same queue without ever handing
the same message to two consumers at once.

Usage
-----
    from zsq import InMemoryStore, MessageQueue

    async with MessageQueue(InMemoryStore()) as q:
        await q.create_queue("jobs", vt=30)
        await q.send_message("jobs", '{"task": "resize", "id": 7}')

        message = await q.receive_message("jobs")
        if message is not None:
            handle(message.body)
            await q.delete_message("jobs", message.id)

Failure semantics
-----------------
Write paths (create, delete, send, delete_message, change visibility, ...)
raise StoreConnectionError once the store has failed twice in a row.
receive_message and pop_message are polled in loops, so they log the failure
and return None instead, which is the same "nothing ready" result a caller
already handles. The same goes for CASConflictError, raised by the
WATCH/MULTI strategy when other consumers keep winning the race.
"""

from __future__ import annotations

import dataclasses
from types import TracebackType
from typing import TYPE_CHECKING

import structlog

from zsq.core import codec, validation
from zsq.core.registry import QueueRegistry
from zsq.domain.errors import (
    CASConflictError,
    MessageTooLargeError,
    StoreConnectionError,
)
from zsq.domain.models import (
    DEFAULT_DELAY,
    DEFAULT_VT,
    UNLIMITED,
    Message,
    QueueAttributes,
)
from zsq.ports.store import Claim, QueueStorePort

if TYPE_CHECKING:
    from zsq.config import QueueSettings

logger = structlog.get_logger(__name__)


@dataclasses.dataclass
class MessageQueue:
    """
    Queue and message operations on top of a QueueStorePort.

    Parameters
    ----------
    store : any QueueStorePort implementation; the MessageQueue owns it and
            closes it on ``__aexit__``
    """

    store: QueueStorePort

    _registry: QueueRegistry = dataclasses.field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._registry = QueueRegistry(self.store)

    @classmethod
    def from_settings(cls, settings: "QueueSettings | None" = None) -> "MessageQueue":
        """Build a Redis-backed MessageQueue from environment configuration."""
        from zsq.adapters.store.redis import RedisStore

        return cls(RedisStore.from_settings(settings))

    async def __aenter__(self) -> "MessageQueue":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.store.close()

    # ------------------------------------------------------------------ #
    # Queue operations (delegated to QueueRegistry)                       #
    # ------------------------------------------------------------------ #

    async def create_queue(
        self,
        name: str,
        vt: int = DEFAULT_VT,
        delay: int = DEFAULT_DELAY,
        maxsize: int = UNLIMITED,
    ) -> bool:
        return await self._registry.create_queue(name, vt=vt, delay=delay, maxsize=maxsize)

    async def list_queues(self) -> list[str]:
        return await self._registry.list_queues()

    async def delete_queue(self, name: str) -> None:
        await self._registry.delete_queue(name)

    async def get_queue_attributes(self, name: str) -> QueueAttributes:
        return await self._registry.get_queue_attributes(name)

    async def set_queue_attributes(
        self,
        name: str,
        vt: int | None = None,
        delay: int | None = None,
        maxsize: int | None = None,
    ) -> QueueAttributes:
        return await self._registry.set_queue_attributes(
            name, vt=vt, delay=delay, maxsize=maxsize
        )

    async def queue_exists(self, name: str) -> bool:
        return await self._registry.queue_exists(name)

    # ------------------------------------------------------------------ #
    # Message operations                                                  #
    # ------------------------------------------------------------------ #

    async def send_message(
        self, queue: str, body: str, delay: int | None = None
    ) -> str:
        """
        Enqueue body. Returns the new message id.

        The message becomes claimable ``delay`` seconds from now (the queue's
        default delay when omitted).
        """
        validation.validate_queue_name(queue)
        if delay is not None:
            validation.validate_seconds("delay", delay)
        if not isinstance(body, str):
            raise TypeError(f"body must be str, got {type(body).__name__}")

        config = await self._registry.load(queue)
        if not config.unlimited() and len(body) > config.maxsize:
            raise MessageTooLargeError(queue, len(body), config.maxsize)

        message_id = codec.make_id(config.seconds, config.micros)
        effective_delay = config.delay if delay is None else delay
        await self.store.add_message(
            queue, message_id, body, config.ts + effective_delay * 1000
        )
        logger.debug("message sent", queue=queue, id=message_id, delay=effective_delay)
        return message_id

    async def receive_message(self, queue: str, vt: int | None = None) -> Message | None:
        """
        Claim the oldest visible message and hide it for ``vt`` seconds.

        Returns None when no message is ready. The message becomes visible
        again unless it is deleted before the timeout elapses.
        """
        validation.validate_queue_name(queue)
        if vt is not None:
            validation.validate_seconds("vt", vt)

        try:
            config = await self._registry.load(queue)
            effective_vt = config.vt if vt is None else vt
            claim = await self.store.claim_for_receive(
                queue, config.ts, config.ts + effective_vt * 1000
            )
        except (StoreConnectionError, CASConflictError) as exc:
            logger.warning("receive_message degraded to empty", queue=queue, error=str(exc))
            return None
        if claim is None:
            return None
        message = _to_message(claim)
        logger.debug("message received", queue=queue, id=message.id, rc=message.rc)
        return message

    async def pop_message(self, queue: str) -> Message | None:
        """Claim and delete the oldest visible message in one step."""
        validation.validate_queue_name(queue)

        try:
            config = await self._registry.load(queue)
            claim = await self.store.claim_for_pop(queue, config.ts)
        except (StoreConnectionError, CASConflictError) as exc:
            logger.warning("pop_message degraded to empty", queue=queue, error=str(exc))
            return None
        if claim is None:
            return None
        message = _to_message(claim)
        logger.debug("message popped", queue=queue, id=message.id, rc=message.rc)
        return message

    async def delete_message(self, queue: str, message_id: str) -> bool:
        """Delete a message. True only if it existed."""
        validation.validate_queue_name(queue)
        validation.validate_message_id(message_id)

        deleted = await self.store.remove_message(queue, message_id)
        logger.debug("message deleted", queue=queue, id=message_id, deleted=deleted)
        return deleted

    async def change_message_visibility(
        self, queue: str, message_id: str, vt: int
    ) -> bool:
        """
        Make message_id visible again ``vt`` seconds from now.

        Works whether the message is currently hidden or visible. Returns
        False if the message no longer exists.
        """
        validation.validate_queue_name(queue)
        validation.validate_message_id(message_id)
        validation.validate_seconds("vt", vt)

        config = await self._registry.load(queue)
        return await self.store.extend_visibility(
            queue, message_id, config.ts + vt * 1000
        )


def _to_message(claim: Claim) -> Message:
    message_id, body, rc, fr = claim
    return Message(id=message_id, body=body, rc=rc, fr=fr, sent=codec.sent_at(message_id))
