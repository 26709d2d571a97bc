"""
Store ports — the structural Protocols the zsq core is written against.

Any object satisfying QueueStorePort can back a MessageQueue. No base class
or registration is required.

AtomicOperations
----------------
The three operations that must run as one indivisible step against the
store, because several consumers race for the same visible message:

  claim_for_receive  — claim the oldest eligible message and hide it
  claim_for_pop      — claim the oldest eligible message and delete it
  extend_visibility  — move a known message's score

Claims return ``(id, body, rc, fr)`` or None when nothing is eligible.

Time
----
All scores are epoch milliseconds derived from ``time()``, the store's own
clock. Clients never score with their local wall clock.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol, runtime_checkable

Claim = tuple[str, str, int, int]


@runtime_checkable
class AtomicOperations(Protocol):
    """Claim and visibility primitives executed atomically by the store."""

    async def claim_for_receive(
        self, queue: str, now: int, new_score: int
    ) -> Claim | None:
        """
        Claim the message with the smallest score <= now.

        Sets its score to new_score, increments the queue's totalrecv and the
        message's rc. On the first claim fr is recorded as new_score; on later
        claims the stored fr is returned unchanged.
        """
        ...

    async def claim_for_pop(self, queue: str, now: int) -> Claim | None:
        """
        Claim the message with the smallest score <= now and delete it.

        fr is ``now`` when the message had never been received before.
        """
        ...

    async def extend_visibility(
        self, queue: str, message_id: str, new_score: int
    ) -> bool:
        """Set the score of message_id. False if it has no score entry."""
        ...


@runtime_checkable
class QueueStorePort(AtomicOperations, Protocol):
    """
    Everything the registry and the message facade need from a store.

    Implementing adapters (built-in):
      - RedisStore     — Lua scripts or WATCH/MULTI, reconnects once
      - InMemoryStore  — asyncio.Lock-based, for testing
    """

    async def time(self) -> tuple[int, int]:
        """Server time as (seconds, microseconds)."""
        ...

    async def create_queue(self, queue: str, fields: Mapping[str, int]) -> bool:
        """
        Set each field only if absent, then register the queue name.

        Returns False, without registering, when the queue was already there.
        """
        ...

    async def queue_names(self) -> list[str]:
        """All registered queue names, sorted."""
        ...

    async def delete_queue(self, queue: str) -> bool:
        """Remove messages, metadata and registration. False if absent."""
        ...

    async def read_queue(
        self, queue: str
    ) -> tuple[dict[str, int] | None, tuple[int, int]]:
        """
        Read metadata and server time in one transaction.

        Returns (fields, (seconds, micros)). fields is None if the queue does
        not exist; otherwise it holds vt, delay, maxsize, totalrecv,
        totalsent, created and modified.
        """
        ...

    async def count_messages(self, queue: str, now: int) -> tuple[int, int]:
        """(all messages, messages with a score greater than now)."""
        ...

    async def update_queue(self, queue: str, fields: Mapping[str, int]) -> bool:
        """
        Overwrite the given metadata fields, atomically and only while the
        queue exists. False (and no write) if the queue is gone.
        """
        ...

    async def add_message(
        self, queue: str, message_id: str, body: str, score: int
    ) -> None:
        """Schedule message_id at score, store its body, bump totalsent."""
        ...

    async def remove_message(self, queue: str, message_id: str) -> bool:
        """Delete a message and its side fields. True if it had a score entry."""
        ...

    async def close(self) -> None:
        """Release the underlying connection, if any."""
        ...
