"""
zsq — a visibility-timeout message queue on Redis sorted sets.

Each queue is a Redis sorted set whose scores are "eligible at" timestamps
taken from the Redis server clock. Sending schedules a message at
now + delay; receiving atomically claims the oldest eligible message and
moves its score to now + visibility timeout, so it reappears unless the
worker deletes it in time. This gives at-least-once delivery with receive
counts and first-receive timestamps, much like a small SQS.

Quick start
-----------
    import asyncio
    from zsq import MessageQueue, RedisStore

    async def main():
        async with MessageQueue(RedisStore("redis://localhost:6379/0")) as q:
            if not await q.queue_exists("emails"):
                await q.create_queue("emails", vt=60)

            await q.send_message("emails", '{"to": "user@example.com"}')

            message = await q.receive_message("emails")
            if message is not None:
                print(message.id, message.body, message.rc)
                await q.delete_message("emails", message.id)

    asyncio.run(main())

Store adapters
--------------
  - RedisStore     — Lua scripts (default) or WATCH/MULTI, reconnects once
  - InMemoryStore  — for tests and examples

Custom stores implement the QueueStorePort Protocol; the three operations
that must be atomic are grouped in AtomicOperations.

Architecture
------------
Follows the Ports & Adapters pattern:
  domain/   — pure value types (Message, QueueAttributes) and errors
  ports/    — Protocol interfaces (AtomicOperations, QueueStorePort)
  core/     — id codec, validation, QueueRegistry, MessageQueue
  adapters/ — concrete store implementations
"""
from __future__ import annotations

from zsq.adapters.store.memory import InMemoryStore
from zsq.adapters.store.redis import RedisStore
from zsq.core.heartbeat import VisibilityHeartbeat
from zsq.core.queue import MessageQueue
from zsq.core.registry import QueueRegistry
from zsq.domain.errors import (
    CASConflictError,
    MessageTooLargeError,
    QueueExistsError,
    QueueNotFoundError,
    StoreConnectionError,
    StoreError,
    ValidationError,
    ZsqError,
)
from zsq.domain.models import Message, QueueAttributes, QueueConfig
from zsq.ports.store import AtomicOperations, QueueStorePort

__all__ = [
    # Domain models
    "Message",
    "QueueAttributes",
    "QueueConfig",
    # Errors
    "ZsqError",
    "ValidationError",
    "QueueNotFoundError",
    "QueueExistsError",
    "MessageTooLargeError",
    "CASConflictError",
    "StoreError",
    "StoreConnectionError",
    # Ports (for typing custom stores)
    "AtomicOperations",
    "QueueStorePort",
    # High-level API
    "MessageQueue",
    "QueueRegistry",
    "VisibilityHeartbeat",
    # Built-in store adapters
    "InMemoryStore",
    "RedisStore",
]
