"""
InMemoryStore — asyncio.Lock-based store for testing and development.

Keeps every queue in plain dicts and serialises all operations with a single
asyncio.Lock, which gives the claim operations the same all-or-nothing
behaviour the Lua scripts have on Redis.

The clock is injectable so tests can move time forward instead of sleeping:

    clock = FakeClock(1_700_000_000.0)
    store = InMemoryStore(clock=clock)

Zero external dependencies. Safe for multiple concurrent coroutines in a
single event loop. NOT safe across processes or threads.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections.abc import Callable, Mapping

from zsq.ports.store import Claim


@dataclasses.dataclass
class _QueueData:
    meta: dict[str, int]
    scores: dict[str, int] = dataclasses.field(default_factory=dict)
    bodies: dict[str, str] = dataclasses.field(default_factory=dict)
    rc: dict[str, int] = dataclasses.field(default_factory=dict)
    fr: dict[str, int] = dataclasses.field(default_factory=dict)

    def earliest(self, now: int) -> str | None:
        """Eligible member with the lowest (score, id), like ZRANGEBYSCORE."""
        eligible = [(s, m) for m, s in self.scores.items() if s <= now]
        if not eligible:
            return None
        return min(eligible)[1]

    def discard(self, message_id: str) -> bool:
        existed = self.scores.pop(message_id, None) is not None
        self.bodies.pop(message_id, None)
        self.rc.pop(message_id, None)
        self.fr.pop(message_id, None)
        return existed


@dataclasses.dataclass
class InMemoryStore:
    """
    In-process QueueStorePort.

    Parameters
    ----------
    clock : returns the current epoch time in float seconds (default time.time)
    """

    clock: Callable[[], float] = time.time

    def __post_init__(self) -> None:
        self._queues: dict[str, _QueueData] = {}
        self._names: set[str] = set()
        self._lock: asyncio.Lock = asyncio.Lock()

    def _now(self) -> tuple[int, int]:
        seconds, micros = divmod(int(self.clock() * 1_000_000), 1_000_000)
        return seconds, micros

    async def time(self) -> tuple[int, int]:
        return self._now()

    async def create_queue(self, queue: str, fields: Mapping[str, int]) -> bool:
        async with self._lock:
            data = self._queues.setdefault(queue, _QueueData(meta={}))
            if "vt" in data.meta:
                return False
            for key, value in fields.items():
                data.meta.setdefault(key, value)
            self._names.add(queue)
            return True

    async def queue_names(self) -> list[str]:
        async with self._lock:
            return sorted(self._names)

    async def delete_queue(self, queue: str) -> bool:
        async with self._lock:
            self._names.discard(queue)
            return self._queues.pop(queue, None) is not None

    async def read_queue(
        self, queue: str
    ) -> tuple[dict[str, int] | None, tuple[int, int]]:
        async with self._lock:
            data = self._queues.get(queue)
            exists = data is not None and "vt" in data.meta
            return (dict(data.meta) if exists else None), self._now()

    async def count_messages(self, queue: str, now: int) -> tuple[int, int]:
        async with self._lock:
            data = self._queues.get(queue)
            if data is None:
                return 0, 0
            hidden = sum(1 for s in data.scores.values() if s > now)
            return len(data.scores), hidden

    async def update_queue(self, queue: str, fields: Mapping[str, int]) -> bool:
        async with self._lock:
            data = self._queues.get(queue)
            if data is None or "vt" not in data.meta:
                return False
            data.meta.update(fields)
            return True

    async def add_message(
        self, queue: str, message_id: str, body: str, score: int
    ) -> None:
        async with self._lock:
            data = self._queues.setdefault(queue, _QueueData(meta={}))
            data.scores[message_id] = score
            data.bodies[message_id] = body
            data.meta["totalsent"] = data.meta.get("totalsent", 0) + 1

    async def remove_message(self, queue: str, message_id: str) -> bool:
        async with self._lock:
            data = self._queues.get(queue)
            return data.discard(message_id) if data else False

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------ #
    # AtomicOperations                                                    #
    # ------------------------------------------------------------------ #

    async def claim_for_receive(
        self, queue: str, now: int, new_score: int
    ) -> Claim | None:
        async with self._lock:
            data = self._queues.get(queue)
            message_id = data.earliest(now) if data else None
            if data is None or message_id is None:
                return None
            data.scores[message_id] = new_score
            data.meta["totalrecv"] = data.meta.get("totalrecv", 0) + 1
            rc = data.rc[message_id] = data.rc.get(message_id, 0) + 1
            fr = data.fr.setdefault(message_id, new_score)
            return message_id, data.bodies.get(message_id, ""), rc, fr

    async def claim_for_pop(self, queue: str, now: int) -> Claim | None:
        async with self._lock:
            data = self._queues.get(queue)
            message_id = data.earliest(now) if data else None
            if data is None or message_id is None:
                return None
            data.meta["totalrecv"] = data.meta.get("totalrecv", 0) + 1
            rc = data.rc.get(message_id, 0) + 1
            fr = data.fr.get(message_id, now) if rc > 1 else now
            body = data.bodies.get(message_id, "")
            data.discard(message_id)
            return message_id, body, rc, fr

    async def extend_visibility(
        self, queue: str, message_id: str, new_score: int
    ) -> bool:
        async with self._lock:
            data = self._queues.get(queue)
            if data is None or message_id not in data.scores:
                return False
            data.scores[message_id] = new_score
            return True
