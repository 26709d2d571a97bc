"""
RedisStore — Redis adapter using redis-py's asyncio client.

Key layout
----------
  {ns}:QUEUES      set of queue names
  {ns}:{queue}     sorted set; member = message id, score = eligible-at (ms)
  {ns}:{queue}:Q   hash; queue metadata (vt, delay, maxsize, created,
                   modified, totalrecv, totalsent) and per message the body
                   under "{id}" plus "{id}:rc" and "{id}:fr"
  {ns}:rt:{queue}  pub/sub channel, receives the queue size after every send
                   when realtime=True

The layout matches the classic RSMQ one, so queues can be shared with RSMQ
clients in other languages.

Atomic operations
-----------------
scripting=True (default)
  claim_for_receive / claim_for_pop / extend_visibility / update_queue each
  run as one Lua script (EVALSHA, re-sent automatically on NOSCRIPT).

scripting=False
  For servers or proxies that disable EVAL. Each operation WATCHes the
  sorted-set key (the hash key for update_queue), reads, then commits with
  MULTI/EXEC. A WatchError means
  another client touched the queue in between; the operation retries with
  exponential back-off (10ms × 2**attempt) and raises CASConflictError after
  ``max_retries`` attempts.

Reconnects
----------
A ConnectionError or TimeoutError closes the client, opens a new one (and
re-registers the scripts), then retries the operation once. A second failure
raises StoreConnectionError. Use one RedisStore per worker; it is safe for
many coroutines on one event loop but must not be shared across threads.

The retry replays the whole operation. If the connection drops after EXEC
(or a script) committed but before the reply arrived, the replay runs the
write a second time:
  - add_message stores the same message id again and counts totalsent twice
  - claim_for_receive claims the next eligible message; the first claim stays
    hidden until its visibility timeout elapses, then is redelivered
  - claim_for_pop loses the first popped message
  - create_queue reports False, so the winning caller sees QueueExistsError
Delivery stays at-least-once for receive; callers needing exactly-once
sends must de-duplicate on their side.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, WatchError
from redis.exceptions import TimeoutError as RedisTimeoutError

from zsq.domain.errors import CASConflictError, StoreConnectionError, StoreError
from zsq.ports.store import Claim

if TYPE_CHECKING:
    from redis.asyncio.client import Pipeline
    from redis.commands.core import AsyncScript

    from zsq.config import QueueSettings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_TRANSIENT = (RedisConnectionError, RedisTimeoutError)

META_FIELDS = ("vt", "delay", "maxsize", "totalrecv", "totalsent", "created", "modified")

# KEYS[1] sorted set, KEYS[2] hash; ARGV[1] now, ARGV[2] new score
RECEIVE_SCRIPT = """
local msg = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1], "LIMIT", "0", "1")
if #msg == 0 then
    return {}
end
local id = msg[1]
redis.call("ZADD", KEYS[1], ARGV[2], id)
redis.call("HINCRBY", KEYS[2], "totalrecv", 1)
local body = redis.call("HGET", KEYS[2], id) or ""
local rc = redis.call("HINCRBY", KEYS[2], id .. ":rc", 1)
local fr
if rc == 1 then
    redis.call("HSET", KEYS[2], id .. ":fr", ARGV[2])
    fr = ARGV[2]
else
    fr = redis.call("HGET", KEYS[2], id .. ":fr")
end
return {id, body, rc, fr}
"""

# KEYS[1] sorted set, KEYS[2] hash; ARGV[1] now
POP_SCRIPT = """
local msg = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1], "LIMIT", "0", "1")
if #msg == 0 then
    return {}
end
local id = msg[1]
redis.call("HINCRBY", KEYS[2], "totalrecv", 1)
local body = redis.call("HGET", KEYS[2], id) or ""
local rc = redis.call("HINCRBY", KEYS[2], id .. ":rc", 1)
local fr
if rc == 1 then
    fr = ARGV[1]
else
    fr = redis.call("HGET", KEYS[2], id .. ":fr")
end
redis.call("ZREM", KEYS[1], id)
redis.call("HDEL", KEYS[2], id, id .. ":rc", id .. ":fr")
return {id, body, rc, fr}
"""

# KEYS[1] sorted set; ARGV[1] message id, ARGV[2] new score
VISIBILITY_SCRIPT = """
if not redis.call("ZSCORE", KEYS[1], ARGV[1]) then
    return 0
end
redis.call("ZADD", KEYS[1], ARGV[2], ARGV[1])
return 1
"""

# KEYS[1] hash; ARGV field, value, field, value, ...
UPDATE_SCRIPT = """
if redis.call("HEXISTS", KEYS[1], "vt") == 0 then
    return 0
end
for i = 1, #ARGV, 2 do
    redis.call("HSET", KEYS[1], ARGV[i], ARGV[i + 1])
end
return 1
"""

_SCRIPTS = {
    "receive": RECEIVE_SCRIPT,
    "pop": POP_SCRIPT,
    "visibility": VISIBILITY_SCRIPT,
    "update": UPDATE_SCRIPT,
}


@dataclasses.dataclass
class RedisStore:
    """
    Redis-backed QueueStorePort.

    Parameters
    ----------
    url            : Redis connection URL
    namespace      : key prefix shared by every queue (default "rsmq")
    realtime       : publish the queue size on {ns}:rt:{queue} after each send
    scripting      : use Lua scripts; False switches to WATCH/MULTI
    max_retries    : WATCH/MULTI attempts before CASConflictError
    socket_timeout : seconds, applied to connect and to every command
    client_factory : builds the client instead of Redis.from_url (tests,
                     custom connection pools)
    """

    url: str = "redis://localhost:6379/0"
    namespace: str = "rsmq"
    realtime: bool = False
    scripting: bool = True
    max_retries: int = 5
    socket_timeout: float = 2.0
    client_factory: Callable[[], Redis] | None = None

    _client: Redis | None = dataclasses.field(default=None, init=False, repr=False)
    _scripts: dict[str, AsyncScript] = dataclasses.field(
        default_factory=dict, init=False, repr=False
    )
    _generation: int = dataclasses.field(default=0, init=False, repr=False)
    _reconnect_lock: asyncio.Lock = dataclasses.field(
        default_factory=asyncio.Lock, init=False, repr=False
    )

    @classmethod
    def from_settings(cls, settings: QueueSettings | None = None) -> RedisStore:
        from zsq.config import get_settings

        settings = settings or get_settings()
        return cls(
            url=settings.redis_url,
            namespace=settings.namespace,
            realtime=settings.realtime,
            scripting=settings.scripting,
            max_retries=settings.max_retries,
            socket_timeout=settings.socket_timeout,
        )

    # ------------------------------------------------------------------ #
    # Connection handling                                                 #
    # ------------------------------------------------------------------ #

    def _connect(self) -> Redis:
        if self.client_factory is not None:
            client = self.client_factory()
        else:
            client = Redis.from_url(
                self.url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
        if self.scripting:
            self._scripts = {
                name: client.register_script(source) for name, source in _SCRIPTS.items()
            }
        self._client = client
        self._generation += 1
        return client

    def _current(self) -> tuple[Redis, int]:
        client = self._client if self._client is not None else self._connect()
        return client, self._generation

    async def _reconnect(self, failed_generation: int) -> Redis:
        """Replace the client, unless another coroutine already did."""
        async with self._reconnect_lock:
            if self._generation == failed_generation and self._client is not None:
                old, self._client = self._client, None
                try:
                    await old.aclose()
                except (RedisError, OSError) as exc:
                    logger.debug("closing broken redis client failed", error=str(exc))
                self._connect()
                logger.warning("redis client reconnected", url=self.url)
            client, _ = self._current()
            return client

    async def _execute(self, op: Callable[[Redis], Awaitable[T]]) -> T:
        client, generation = self._current()
        try:
            return await op(client)
        except _TRANSIENT as exc:
            logger.warning("redis command failed, reconnecting", error=str(exc))
        except RedisError as exc:
            raise StoreError("Redis command failed", exc) from exc

        client = await self._reconnect(generation)
        try:
            return await op(client)
        except _TRANSIENT as exc:
            raise StoreConnectionError("Redis unreachable after reconnect", exc) from exc
        except RedisError as exc:
            raise StoreError("Redis command failed", exc) from exc

    async def close(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()

    # ------------------------------------------------------------------ #
    # Keys                                                                #
    # ------------------------------------------------------------------ #

    @property
    def names_key(self) -> str:
        return f"{self.namespace}:QUEUES"

    def keys(self, queue: str) -> tuple[str, str]:
        """(sorted-set key, hash key) for a queue."""
        return f"{self.namespace}:{queue}", f"{self.namespace}:{queue}:Q"

    def channel(self, queue: str) -> str:
        return f"{self.namespace}:rt:{queue}"

    # ------------------------------------------------------------------ #
    # Registry and message storage                                        #
    # ------------------------------------------------------------------ #

    async def time(self) -> tuple[int, int]:
        async def _op(r: Redis) -> tuple[int, int]:
            seconds, micros = await r.time()
            return int(seconds), int(micros)

        return await self._execute(_op)

    async def create_queue(self, queue: str, fields: Mapping[str, int]) -> bool:
        _, qkey = self.keys(queue)

        async def _op(r: Redis) -> bool:
            async with r.pipeline(transaction=True) as pipe:
                for name, value in fields.items():
                    pipe.hsetnx(qkey, name, value)
                pipe.sadd(self.names_key, queue)
                results = await pipe.execute()
            # The first HSETNX decides who created the queue.
            return bool(results[0])

        return await self._execute(_op)

    async def queue_names(self) -> list[str]:
        async def _op(r: Redis) -> list[str]:
            return sorted(await r.smembers(self.names_key))

        return await self._execute(_op)

    async def delete_queue(self, queue: str) -> bool:
        key, qkey = self.keys(queue)

        async def _op(r: Redis) -> bool:
            async with r.pipeline(transaction=True) as pipe:
                pipe.delete(qkey, key)
                pipe.srem(self.names_key, queue)
                deleted, _ = await pipe.execute()
            return int(deleted) > 0

        return await self._execute(_op)

    async def read_queue(
        self, queue: str
    ) -> tuple[dict[str, int] | None, tuple[int, int]]:
        _, qkey = self.keys(queue)

        async def _op(r: Redis) -> tuple[dict[str, int] | None, tuple[int, int]]:
            async with r.pipeline(transaction=True) as pipe:
                pipe.hmget(qkey, META_FIELDS)
                pipe.time()
                values, (seconds, micros) = await pipe.execute()
            now = (int(seconds), int(micros))
            if values[0] is None:
                return None, now
            return {
                name: int(value) if value is not None else 0
                for name, value in zip(META_FIELDS, values)
            }, now

        return await self._execute(_op)

    async def count_messages(self, queue: str, now: int) -> tuple[int, int]:
        key, _ = self.keys(queue)

        async def _op(r: Redis) -> tuple[int, int]:
            async with r.pipeline(transaction=True) as pipe:
                pipe.zcard(key)
                pipe.zcount(key, f"({now}", "+inf")
                total, hidden = await pipe.execute()
            return int(total), int(hidden)

        return await self._execute(_op)

    async def update_queue(self, queue: str, fields: Mapping[str, int]) -> bool:
        _, qkey = self.keys(queue)
        if self.scripting:
            args = [item for pair in fields.items() for item in pair]
            reply = await self._execute(
                lambda r: self._scripts["update"](keys=[qkey], args=args, client=r)
            )
        else:
            reply = await self._execute(
                lambda r: self._optimistic(
                    r, qkey, lambda pipe: _update_cas(pipe, qkey, fields)
                )
            )
        return bool(int(reply))

    async def add_message(
        self, queue: str, message_id: str, body: str, score: int
    ) -> None:
        key, qkey = self.keys(queue)

        async def _op(r: Redis) -> None:
            async with r.pipeline(transaction=True) as pipe:
                pipe.zadd(key, {message_id: score})
                pipe.hset(qkey, message_id, body)
                pipe.hincrby(qkey, "totalsent", 1)
                if self.realtime:
                    pipe.zcard(key)
                results = await pipe.execute()
            if self.realtime:
                await r.publish(self.channel(queue), results[3])

        await self._execute(_op)

    async def remove_message(self, queue: str, message_id: str) -> bool:
        key, qkey = self.keys(queue)

        async def _op(r: Redis) -> bool:
            async with r.pipeline(transaction=True) as pipe:
                pipe.zrem(key, message_id)
                pipe.hdel(qkey, message_id, f"{message_id}:rc", f"{message_id}:fr")
                removed, _ = await pipe.execute()
            return int(removed) == 1

        return await self._execute(_op)

    # ------------------------------------------------------------------ #
    # AtomicOperations                                                    #
    # ------------------------------------------------------------------ #

    async def claim_for_receive(
        self, queue: str, now: int, new_score: int
    ) -> Claim | None:
        key, qkey = self.keys(queue)
        if self.scripting:
            reply = await self._execute(
                lambda r: self._scripts["receive"](
                    keys=[key, qkey], args=[now, new_score], client=r
                )
            )
        else:
            reply = await self._execute(
                lambda r: self._optimistic(
                    r, key, lambda pipe: _receive_cas(pipe, key, qkey, now, new_score)
                )
            )
        return _to_claim(reply)

    async def claim_for_pop(self, queue: str, now: int) -> Claim | None:
        key, qkey = self.keys(queue)
        if self.scripting:
            reply = await self._execute(
                lambda r: self._scripts["pop"](keys=[key, qkey], args=[now], client=r)
            )
        else:
            reply = await self._execute(
                lambda r: self._optimistic(
                    r, key, lambda pipe: _pop_cas(pipe, key, qkey, now)
                )
            )
        return _to_claim(reply)

    async def extend_visibility(
        self, queue: str, message_id: str, new_score: int
    ) -> bool:
        key, _ = self.keys(queue)
        if self.scripting:
            reply = await self._execute(
                lambda r: self._scripts["visibility"](
                    keys=[key], args=[message_id, new_score], client=r
                )
            )
        else:
            reply = await self._execute(
                lambda r: self._optimistic(
                    r, key, lambda pipe: _visibility_cas(pipe, key, message_id, new_score)
                )
            )
        return bool(int(reply))

    async def _optimistic(
        self,
        client: Redis,
        key: str,
        fn: Callable[[Pipeline], Awaitable[T]],
    ) -> T:
        """
        WATCH key, run fn, retry on WatchError.

        fn reads in immediate mode, calls pipe.multi(), queues its writes and
        executes them.
        """
        for attempt in range(self.max_retries):
            try:
                async with client.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    return await fn(pipe)
            except WatchError:
                if attempt == self.max_retries - 1:
                    break
                await asyncio.sleep(0.01 * 2**attempt)
        raise CASConflictError(
            f"{key} changed during each of {self.max_retries} attempts"
        )


async def _receive_cas(
    pipe: Pipeline, key: str, qkey: str, now: int, new_score: int
) -> list[Any]:
    ids = await pipe.zrangebyscore(key, "-inf", now, start=0, num=1)
    if not ids:
        return []
    message_id = ids[0]
    pipe.multi()
    pipe.zadd(key, {message_id: new_score})
    pipe.hincrby(qkey, "totalrecv", 1)
    pipe.hget(qkey, message_id)
    pipe.hincrby(qkey, f"{message_id}:rc", 1)
    pipe.hsetnx(qkey, f"{message_id}:fr", new_score)
    pipe.hget(qkey, f"{message_id}:fr")
    _, _, body, rc, _, fr = await pipe.execute()
    return [message_id, body, rc, fr]


async def _pop_cas(pipe: Pipeline, key: str, qkey: str, now: int) -> list[Any]:
    ids = await pipe.zrangebyscore(key, "-inf", now, start=0, num=1)
    if not ids:
        return []
    message_id = ids[0]
    body, rc, fr = await pipe.hmget(
        qkey, [message_id, f"{message_id}:rc", f"{message_id}:fr"]
    )
    pipe.multi()
    pipe.hincrby(qkey, "totalrecv", 1)
    pipe.zrem(key, message_id)
    pipe.hdel(qkey, message_id, f"{message_id}:rc", f"{message_id}:fr")
    await pipe.execute()
    rc = int(rc or 0) + 1
    return [message_id, body, rc, fr if rc > 1 and fr is not None else now]


async def _visibility_cas(
    pipe: Pipeline, key: str, message_id: str, new_score: int
) -> int:
    if await pipe.zscore(key, message_id) is None:
        return 0
    pipe.multi()
    pipe.zadd(key, {message_id: new_score})
    await pipe.execute()
    return 1


async def _update_cas(pipe: Pipeline, qkey: str, fields: Mapping[str, int]) -> int:
    if not await pipe.hexists(qkey, "vt"):
        return 0
    pipe.multi()
    pipe.hset(qkey, mapping=dict(fields))
    await pipe.execute()
    return 1


def _to_claim(reply: list[Any] | None) -> Claim | None:
    """Normalise a script or CAS reply into (id, body, rc, fr)."""
    if not reply:
        return None
    message_id, body, rc, fr = reply
    return str(message_id), body or "", int(rc), int(fr)
