import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, WatchError

from zsq.adapters.store.redis import RedisStore
from zsq.core import codec
from zsq.core.queue import MessageQueue
from zsq.domain.errors import (
    CASConflictError,
    QueueExistsError,
    StoreConnectionError,
    StoreError,
)
from zsq.ports.store import QueueStorePort

FIELDS = {"vt": 30, "delay": 0, "maxsize": -1, "created": 1, "modified": 1}

# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


def _factory(server: fakeredis.FakeServer) -> Callable[[], Redis]:
    return lambda: fakeredis.FakeAsyncRedis(server=server, decode_responses=True)


def _broken_client(exc: Exception) -> MagicMock:
    client = MagicMock()
    client.time = AsyncMock(side_effect=exc)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def raw(server: fakeredis.FakeServer) -> Redis:
    """Direct client on the same fake server, for inspecting keys."""
    return fakeredis.FakeAsyncRedis(server=server, decode_responses=True)


@pytest.fixture(params=[True, False], ids=["lua", "watch"])
def store(request: pytest.FixtureRequest, server: fakeredis.FakeServer) -> RedisStore:
    return RedisStore(scripting=request.param, client_factory=_factory(server))


async def _now(store: RedisStore) -> int:
    return codec.to_score(*await store.time())


# ---------------------------------------------------------------------------
# Basics
# ---------------------------------------------------------------------------


def test_satisfies_port(store: RedisStore) -> None:
    assert isinstance(store, QueueStorePort)


def test_key_layout() -> None:
    store = RedisStore(namespace="app")
    assert store.names_key == "app:QUEUES"
    assert store.keys("jobs") == ("app:jobs", "app:jobs:Q")
    assert store.channel("jobs") == "app:rt:jobs"


async def test_time_comes_from_server(store: RedisStore) -> None:
    seconds, micros = await store.time()
    assert seconds > 1_600_000_000
    assert 0 <= micros < 1_000_000


async def test_create_queue_writes_rsmq_layout(store: RedisStore, raw: Redis) -> None:
    assert await store.create_queue("jobs", FIELDS) is True
    assert await raw.hget("rsmq:jobs:Q", "vt") == "30"
    assert await raw.hget("rsmq:jobs:Q", "maxsize") == "-1"
    assert await raw.sismember("rsmq:QUEUES", "jobs")


async def test_create_queue_second_time_loses(store: RedisStore, raw: Redis) -> None:
    await store.create_queue("jobs", FIELDS)
    assert await store.create_queue("jobs", {**FIELDS, "vt": 5}) is False
    assert await raw.hget("rsmq:jobs:Q", "vt") == "30"


async def test_read_queue(store: RedisStore) -> None:
    await store.create_queue("jobs", FIELDS)
    fields, (seconds, _) = await store.read_queue("jobs")
    assert fields == {**FIELDS, "totalrecv": 0, "totalsent": 0}
    assert seconds > 0


async def test_read_missing_queue(store: RedisStore) -> None:
    fields, _ = await store.read_queue("missing")
    assert fields is None


async def test_delete_queue_removes_everything(store: RedisStore, raw: Redis) -> None:
    await store.create_queue("jobs", FIELDS)
    await store.add_message("jobs", "m1", "body", 0)
    assert await store.delete_queue("jobs") is True
    assert await raw.exists("rsmq:jobs", "rsmq:jobs:Q") == 0
    assert await store.queue_names() == []
    assert await store.delete_queue("jobs") is False


async def test_update_queue(store: RedisStore) -> None:
    await store.create_queue("jobs", FIELDS)
    assert await store.update_queue("jobs", {"vt": 9, "modified": 50}) is True
    fields, _ = await store.read_queue("jobs")
    assert fields is not None
    assert (fields["vt"], fields["modified"], fields["delay"]) == (9, 50, 0)


async def test_update_queue_does_not_resurrect_deleted_queue(
    store: RedisStore, raw: Redis
) -> None:
    await store.create_queue("jobs", FIELDS)
    await store.delete_queue("jobs")
    assert await store.update_queue("jobs", {"vt": 10, "modified": 50}) is False
    assert await raw.exists("rsmq:jobs:Q") == 0


async def test_create_queue_registers_name_atomically(
    server: fakeredis.FakeServer,
) -> None:
    client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    # A standalone SADD would fail and replay the whole creation.
    client.sadd = AsyncMock(side_effect=RedisConnectionError("reset"))  # type: ignore[method-assign]
    q = MessageQueue(RedisStore(client_factory=lambda: client))

    assert await q.create_queue("jobs") is True
    assert await q.list_queues() == ["jobs"]
    client.sadd.assert_not_awaited()


async def test_create_queue_retried_before_commit_still_wins(
    server: fakeredis.FakeServer,
) -> None:
    broken = MagicMock()
    broken.pipeline.side_effect = RedisConnectionError("reset")
    broken.aclose = AsyncMock()
    clients = iter([broken, fakeredis.FakeAsyncRedis(server=server, decode_responses=True)])
    store = RedisStore(client_factory=lambda: next(clients))

    assert await store.create_queue("jobs", FIELDS) is True
    assert await store.queue_names() == ["jobs"]


async def test_add_and_count_messages(store: RedisStore, raw: Redis) -> None:
    await store.create_queue("jobs", FIELDS)
    now = await _now(store)
    await store.add_message("jobs", "m1", "one", now)
    await store.add_message("jobs", "m2", "two", now + 60_000)
    assert await store.count_messages("jobs", now) == (2, 1)
    assert await raw.hget("rsmq:jobs:Q", "m1") == "one"
    assert await raw.hget("rsmq:jobs:Q", "totalsent") == "2"


async def test_remove_message(store: RedisStore, raw: Redis) -> None:
    await store.create_queue("jobs", FIELDS)
    await store.add_message("jobs", "m1", "one", 0)
    await store.claim_for_receive("jobs", 0, 10)
    assert await store.remove_message("jobs", "m1") is True
    assert await raw.hmget("rsmq:jobs:Q", ["m1", "m1:rc", "m1:fr"]) == [None, None, None]
    assert await store.remove_message("jobs", "m1") is False


# ---------------------------------------------------------------------------
# AtomicOperations
# ---------------------------------------------------------------------------


async def test_claim_for_receive(store: RedisStore, raw: Redis) -> None:
    await store.create_queue("jobs", FIELDS)
    await store.add_message("jobs", "m2", "second", 200)
    await store.add_message("jobs", "m1", "first", 100)

    assert await store.claim_for_receive("jobs", 150, 5000) == ("m1", "first", 1, 5000)
    assert await raw.zscore("rsmq:jobs", "m1") == 5000
    assert await raw.hget("rsmq:jobs:Q", "totalrecv") == "1"


async def test_claim_for_receive_nothing_eligible(store: RedisStore) -> None:
    await store.create_queue("jobs", FIELDS)
    await store.add_message("jobs", "m1", "first", 100)
    assert await store.claim_for_receive("jobs", 99, 5000) is None


async def test_claim_for_receive_keeps_first_fr(store: RedisStore) -> None:
    await store.create_queue("jobs", FIELDS)
    await store.add_message("jobs", "m1", "body", 100)
    await store.claim_for_receive("jobs", 100, 200)
    assert await store.claim_for_receive("jobs", 200, 900) == ("m1", "body", 2, 200)
    assert await store.claim_for_receive("jobs", 900, 1000) == ("m1", "body", 3, 200)


async def test_claim_for_pop(store: RedisStore, raw: Redis) -> None:
    await store.create_queue("jobs", FIELDS)
    await store.add_message("jobs", "m1", "body", 100)
    assert await store.claim_for_pop("jobs", 100) == ("m1", "body", 1, 100)
    assert await raw.zcard("rsmq:jobs") == 0
    assert not await raw.hexists("rsmq:jobs:Q", "m1")
    assert await raw.hget("rsmq:jobs:Q", "totalrecv") == "1"


async def test_claim_for_pop_after_receive(store: RedisStore, raw: Redis) -> None:
    await store.create_queue("jobs", FIELDS)
    await store.add_message("jobs", "m1", "body", 100)
    await store.claim_for_receive("jobs", 100, 300)
    assert await store.claim_for_pop("jobs", 300) == ("m1", "body", 2, 300)
    assert await raw.hmget("rsmq:jobs:Q", ["m1:rc", "m1:fr"]) == [None, None]


async def test_claim_for_pop_empty(store: RedisStore) -> None:
    await store.create_queue("jobs", FIELDS)
    assert await store.claim_for_pop("jobs", 100) is None


async def test_extend_visibility(store: RedisStore, raw: Redis) -> None:
    await store.create_queue("jobs", FIELDS)
    await store.add_message("jobs", "m1", "body", 100)
    assert await store.extend_visibility("jobs", "m1", 777) is True
    assert await raw.zscore("rsmq:jobs", "m1") == 777
    assert await store.extend_visibility("jobs", "gone", 777) is False
    assert await raw.zscore("rsmq:jobs", "gone") is None


async def test_concurrent_receives_single_winner(server: fakeredis.FakeServer) -> None:
    producer = RedisStore(client_factory=_factory(server))
    await producer.create_queue("jobs", FIELDS)
    await producer.add_message("jobs", "only", "body", 0)

    # One store per consumer, as workers would have.
    consumers = [
        RedisStore(scripting=i % 2 == 0, client_factory=_factory(server)) for i in range(10)
    ]
    claims = await asyncio.gather(
        *(c.claim_for_receive("jobs", 10, 10_000) for c in consumers),
        return_exceptions=True,
    )
    won = [c for c in claims if isinstance(c, tuple)]
    assert won == [("only", "body", 1, 10_000)]
    assert all(c is None or isinstance(c, (tuple, CASConflictError)) for c in claims)


# ---------------------------------------------------------------------------
# WATCH / MULTI retry
# ---------------------------------------------------------------------------


async def test_optimistic_retries_after_watch_error(server: fakeredis.FakeServer) -> None:
    store = RedisStore(scripting=False, client_factory=_factory(server))
    client, _ = store._current()
    attempts = 0

    async def _fn(pipe: object) -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise WatchError("key changed")
        return "done"

    assert await store._optimistic(client, "rsmq:jobs", _fn) == "done"
    assert attempts == 3


async def test_optimistic_gives_up_with_cas_conflict(
    server: fakeredis.FakeServer, raw: Redis
) -> None:
    store = RedisStore(scripting=False, max_retries=2, client_factory=_factory(server))
    client, _ = store._current()

    async def _clobbered(pipe) -> None:  # type: ignore[no-untyped-def]
        await raw.zadd("rsmq:jobs", {"intruder": 1})
        pipe.multi()
        pipe.zadd("rsmq:jobs", {"mine": 1})
        await pipe.execute()

    with pytest.raises(CASConflictError):
        await store._optimistic(client, "rsmq:jobs", _clobbered)
    assert await raw.zscore("rsmq:jobs", "mine") is None


# ---------------------------------------------------------------------------
# Reconnect policy
# ---------------------------------------------------------------------------


async def test_reconnects_once_and_retries(server: fakeredis.FakeServer) -> None:
    broken = _broken_client(RedisConnectionError("connection reset"))
    clients = iter([broken, fakeredis.FakeAsyncRedis(server=server, decode_responses=True)])
    store = RedisStore(client_factory=lambda: next(clients))

    seconds, _ = await store.time()

    assert seconds > 0
    broken.aclose.assert_awaited_once()


async def test_reconnect_replays_whole_operation_on_new_client(
    server: fakeredis.FakeServer,
) -> None:
    store = RedisStore(client_factory=_factory(server))
    seen: list[Redis] = []

    async def _op(r: Redis) -> str:
        seen.append(r)
        if len(seen) == 1:
            raise RedisConnectionError("reply lost")
        return "ok"

    assert await store._execute(_op) == "ok"
    assert len(seen) == 2
    assert seen[0] is not seen[1]


async def test_second_failure_raises_connection_error() -> None:
    calls = 0

    def _factory_fn() -> MagicMock:
        nonlocal calls
        calls += 1
        return _broken_client(RedisConnectionError("refused"))

    store = RedisStore(client_factory=_factory_fn)
    with pytest.raises(StoreConnectionError) as exc_info:
        await store.time()
    assert isinstance(exc_info.value.cause, RedisConnectionError)
    assert calls == 2


async def test_non_transient_error_is_not_retried() -> None:
    calls = 0

    def _factory_fn() -> MagicMock:
        nonlocal calls
        calls += 1
        return _broken_client(ResponseError("WRONGTYPE"))

    store = RedisStore(client_factory=_factory_fn)
    with pytest.raises(StoreError) as exc_info:
        await store.time()
    assert not isinstance(exc_info.value, StoreConnectionError)
    assert calls == 1


async def test_concurrent_failures_reconnect_once(server: fakeredis.FakeServer) -> None:
    created: list[object] = []

    def _factory_fn() -> object:
        client = (
            _broken_client(RedisConnectionError("reset"))
            if not created
            else fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
        )
        created.append(client)
        return client

    store = RedisStore(client_factory=_factory_fn)
    await asyncio.gather(store.time(), store.time(), store.time())
    assert len(created) == 2


async def test_scripts_registered_on_new_client(server: fakeredis.FakeServer) -> None:
    broken = _broken_client(RedisConnectionError("reset"))
    clients = iter([broken, fakeredis.FakeAsyncRedis(server=server, decode_responses=True)])
    store = RedisStore(client_factory=lambda: next(clients))
    await store.time()
    assert set(store._scripts) == {"receive", "pop", "visibility", "update"}
    assert all(s.registered_client is store._client for s in store._scripts.values())


async def test_close(server: fakeredis.FakeServer) -> None:
    store = RedisStore(client_factory=_factory(server))
    await store.time()
    await store.close()
    assert store._client is None
    await store.close()


# ---------------------------------------------------------------------------
# End to end through MessageQueue
# ---------------------------------------------------------------------------


async def test_message_queue_round_trip(store: RedisStore) -> None:
    async with MessageQueue(store) as q:
        await q.create_queue("jobs", vt=30)
        with pytest.raises(QueueExistsError):
            await q.create_queue("jobs")

        a = await q.send_message("jobs", "a")
        b = await q.send_message("jobs", "b")
        assert a < b

        first = await q.receive_message("jobs")
        second = await q.receive_message("jobs")
        assert first is not None and second is not None
        assert (first.body, second.body) == ("a", "b")
        assert await q.receive_message("jobs") is None

        attrs = await q.get_queue_attributes("jobs")
        assert (attrs.msgs, attrs.hiddenmsgs, attrs.totalrecv, attrs.totalsent) == (2, 2, 2, 2)

        assert await q.change_message_visibility("jobs", first.id, 0) is True
        again = await q.receive_message("jobs")
        assert again is not None
        assert (again.id, again.rc, again.fr) == (first.id, 2, first.fr)

        assert await q.delete_message("jobs", first.id) is True
        assert await q.delete_message("jobs", first.id) is False
        assert await q.list_queues() == ["jobs"]

        await q.delete_queue("jobs")
        assert await q.queue_exists("jobs") is False


async def test_message_queue_delay(store: RedisStore) -> None:
    q = MessageQueue(store)
    await q.create_queue("jobs")
    await q.send_message("jobs", "later", delay=60)
    assert await q.pop_message("jobs") is None
    attrs = await q.get_queue_attributes("jobs")
    assert (attrs.msgs, attrs.hiddenmsgs) == (1, 1)


async def test_realtime_publishes_queue_size(server: fakeredis.FakeServer) -> None:
    client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    client.publish = AsyncMock(return_value=0)  # type: ignore[method-assign]
    q = MessageQueue(RedisStore(realtime=True, client_factory=lambda: client))
    await q.create_queue("jobs")
    await q.send_message("jobs", "a")
    await q.send_message("jobs", "b")
    assert [c.args for c in client.publish.await_args_list] == [
        ("rsmq:rt:jobs", 1),
        ("rsmq:rt:jobs", 2),
    ]
