import asyncio
from contextlib import aclosing
from datetime import timedelta

import pytest

from errors import BackendError, KeyNotFoundError, WatchExistsError, WatchNotFoundError
from store import ClientOptions, CoordinationClient, MemoryCoordinationBackend


def make_client(backend=None) -> CoordinationClient:
    return CoordinationClient([], ClientOptions(backend="memory"), backend=backend)


async def eventually(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class FlakyBackend(MemoryCoordinationBackend):
    """Answers the first blocking query, then fails like a dropped connection"""

    def __init__(self):
        super().__init__()
        self.queries = 0

    async def wait_index(self, key, index, wait, recursive=False):
        self.queries += 1
        if self.queries > 1:
            raise BackendError("connection reset")
        return await super().wait_index(key, index, wait, recursive)


@pytest.mark.asyncio
async def test_watch_delivers_in_version_order_and_ends_on_latest():
    client = make_client()
    await client.put("cfg/a", b"v0")
    order = [b"v0", b"v1", b"v2"]
    seen = []

    task = asyncio.create_task(client.watch("cfg/a", 5, seen.append))
    await eventually(lambda: len(seen) >= 1)
    assert seen[0] == [b"v0"]

    await client.put("cfg/a", b"v1")
    await client.put("cfg/a", b"v2")
    await eventually(lambda: seen[-1] == [b"v2"])

    await client.cancel_watch("cfg/a")
    assert await asyncio.wait_for(task, timeout=1.0) is None

    positions = [order.index(values[0]) for values in seen]
    assert positions == sorted(positions)
    assert len(positions) == len(set(positions))


@pytest.mark.asyncio
async def test_cancel_interrupts_in_flight_long_poll():
    client = make_client()
    await client.put("slow", b"x")
    seen = []

    task = asyncio.create_task(client.watch("slow", timedelta(seconds=60), seen.append))
    await eventually(lambda: len(seen) == 1)

    loop = asyncio.get_running_loop()
    started = loop.time()
    await client.cancel_watch("/slow")
    await asyncio.wait_for(task, timeout=1.0)
    assert loop.time() - started < 1.0
    assert await client.active_watches() == []


@pytest.mark.asyncio
async def test_cancel_unknown_watch_raises():
    client = make_client()
    with pytest.raises(WatchNotFoundError):
        await client.cancel_watch("not/watched")
    with pytest.raises(WatchNotFoundError):
        await client.cancel_watch_range("not/watched")


@pytest.mark.asyncio
async def test_watch_range_reports_whole_subtree():
    client = make_client()
    await client.put("svc/a", b"A")
    await client.put("svc/b", b"B")
    seen = []

    task = asyncio.create_task(client.watch_range("svc/", 5, seen.append))
    await eventually(lambda: len(seen) >= 1)
    assert seen[0] == [b"A", b"B"]

    await client.put("svc/c", b"C")
    await eventually(lambda: seen[-1] == [b"A", b"B", b"C"])

    await client.delete("svc/a")
    await eventually(lambda: seen[-1] == [b"B", b"C"])

    await client.cancel_watch_range("svc/")
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_unrelated_writes_do_not_trigger_callback():
    client = make_client()
    await client.put("watched", b"1")
    seen = []

    task = asyncio.create_task(client.watch("watched", 5, seen.append))
    await eventually(lambda: len(seen) == 1)

    await client.put("elsewhere", b"noise")
    await asyncio.sleep(0.1)
    assert len(seen) == 1

    await client.cancel_watch("watched")
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_watch_on_missing_key_ends_with_not_found():
    client = make_client()
    with pytest.raises(KeyNotFoundError):
        await asyncio.wait_for(client.watch("absent", 5, lambda values: None), timeout=1.0)
    assert await client.active_watches() == []


@pytest.mark.asyncio
async def test_backend_error_terminates_watch_and_unregisters_it():
    client = make_client(FlakyBackend())
    await client.put("k", b"v")
    seen = []

    with pytest.raises(BackendError):
        await asyncio.wait_for(client.watch("k", 5, seen.append), timeout=1.0)

    assert seen == [[b"v"]]
    assert await client.active_watches() == []


@pytest.mark.asyncio
async def test_second_watch_on_same_target_is_rejected():
    client = make_client()
    await client.put("dup", b"x")
    seen = []

    task = asyncio.create_task(client.watch("dup", 5, seen.append))
    await eventually(lambda: len(seen) == 1)

    with pytest.raises(WatchExistsError):
        await client.watch("/dup", 5, seen.append)

    await client.cancel_watch("dup")
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_async_callback_is_awaited():
    client = make_client()
    await client.put("async/k", b"x")
    seen = []

    async def callback(values):
        await asyncio.sleep(0)
        seen.append(values)

    task = asyncio.create_task(client.watch("async/k", 5, callback))
    await eventually(lambda: len(seen) == 1)
    await client.cancel_watch("async/k")
    await asyncio.wait_for(task, timeout=1.0)
    assert seen == [[b"x"]]


@pytest.mark.asyncio
async def test_iter_watch_closes_watch_when_loop_exits():
    client = make_client()
    await client.put("lazy", b"first")

    async with aclosing(client.iter_watch("lazy", 5)) as updates:
        async for values in updates:
            assert values == [b"first"]
            assert await client.active_watches() == ["lazy"]
            break

    assert await client.active_watches() == []


@pytest.mark.asyncio
async def test_close_stops_running_watches():
    client = make_client()
    await client.put("a", b"1")
    seen = []

    task = asyncio.create_task(client.watch("a", 60, seen.append))
    await eventually(lambda: len(seen) == 1)

    await client.close()
    assert await asyncio.wait_for(task, timeout=1.0) is None


@pytest.mark.asyncio
async def test_writes_during_slow_callback_are_coalesced():
    client = make_client()
    await client.put("busy", b"v0")
    seen = []
    started = asyncio.Event()

    async def slow_callback(values):
        seen.append(values)
        started.set()
        await asyncio.sleep(0.2)

    task = asyncio.create_task(client.watch("busy", 5, slow_callback))
    await asyncio.wait_for(started.wait(), timeout=1.0)
    for i in range(1, 6):
        await client.put("busy", f"v{i}".encode())

    await eventually(lambda: len(seen) >= 2)
    # give any stale signal time to come through
    await asyncio.sleep(0.5)
    assert seen == [[b"v0"], [b"v5"]]

    await client.cancel_watch("busy")
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_cancelling_the_watching_task_propagates():
    client = make_client()
    await client.put("owned", b"x")
    seen = []

    task = asyncio.create_task(client.watch("owned", 60, seen.append))
    await eventually(lambda: len(seen) == 1)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, timeout=1.0)
    assert task.cancelled()
    assert await client.active_watches() == []
