"""
Watch Engine - turns blocking index queries into a stream of update batches

Each watch owns one poller task issuing blocking queries against the
backend. Whenever the reported index moves past the last one seen, the
poller pushes it on the watch's channel; the driving loop (the caller's
own task) re-reads the target and hands the values over, one batch at a
time. Signals that pile up while the consumer is busy collapse into a
single re-read, and a batch is only handed over when its version is
newer than the last one delivered. Cancelling a watch cancels the
poller, which interrupts the in-flight query instead of waiting for the
heartbeat to elapse.
"""
import asyncio
import inspect
import logging
from contextlib import aclosing
from datetime import timedelta
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple, Union

from errors import WatchExistsError, WatchNotFoundError
from .backend import CoordinationBackend
from .keys import format_key
from .models import Watch, WatchState
from .registry import WatchRegistry

logger = logging.getLogger(__name__)

WatchCallback = Callable[[List[bytes]], Optional[Awaitable[None]]]
Refresh = Callable[[str, bool], Awaitable[Tuple[List[bytes], int]]]
Heartbeat = Union[float, int, timedelta]

# pushed by the poller when it stops, after any pending index
_CLOSED = object()


def _seconds(heartbeat: Heartbeat) -> float:
    if isinstance(heartbeat, timedelta):
        return heartbeat.total_seconds()
    return float(heartbeat)


class WatchEngine:
    def __init__(self, backend: CoordinationBackend, refresh: Refresh):
        self._backend = backend
        self._refresh = refresh
        self._watches = WatchRegistry()

    def iter_watch(self, key: str, heartbeat: Heartbeat) -> AsyncIterator[List[bytes]]:
        """
        Yield the current value of key every time it changes. Stops when
        the watch is cancelled; raises when a backend read fails. Wrap in
        contextlib.aclosing() when leaving the loop early.
        """
        return self._iterate(format_key(key), _seconds(heartbeat), recursive=False)

    def iter_watch_range(self, prefix: str, heartbeat: Heartbeat) -> AsyncIterator[List[bytes]]:
        """Yield the values under prefix every time one of them changes."""
        return self._iterate(format_key(prefix), _seconds(heartbeat), recursive=True)

    async def watch(self, key: str, heartbeat: Heartbeat, callback: WatchCallback) -> None:
        async with aclosing(self.iter_watch(key, heartbeat)) as updates:
            await self._deliver(updates, callback)

    async def watch_range(self, prefix: str, heartbeat: Heartbeat, callback: WatchCallback) -> None:
        async with aclosing(self.iter_watch_range(prefix, heartbeat)) as updates:
            await self._deliver(updates, callback)

    async def _deliver(self, updates: AsyncIterator[List[bytes]], callback: WatchCallback) -> None:
        async for values in updates:
            result = callback(values)
            if inspect.isawaitable(result):
                await result

    async def cancel(self, key: str) -> None:
        target = format_key(key)
        watch = await self._watches.remove(target)
        if watch is None:
            logger.error(f"No watch registered for {target}")
            raise WatchNotFoundError(f"no watch registered for {target}")
        self._stop(watch)

    async def active_watches(self) -> List[str]:
        return await self._watches.keys()

    async def close(self) -> None:
        for watch in await self._watches.drain():
            self._stop(watch)

    @staticmethod
    def _stop(watch: Watch) -> None:
        watch.state = WatchState.CANCELLED
        if watch.task is not None:
            watch.task.cancel()

    async def _iterate(self, target: str, interval: float, recursive: bool) -> AsyncIterator[List[bytes]]:
        watch = Watch(target=target, recursive=recursive, interval=interval)
        if not await self._watches.insert(target, watch):
            raise WatchExistsError(f"already watching {target}")
        watch.task = asyncio.create_task(self._wait_for_change(watch))
        logger.info(f"Watch started on {target}", extra={"watch_target": target})

        delivered = 0
        pending = None
        try:
            while True:
                event = pending if pending is not None else await watch.channel.get()
                pending = None
                if event is _CLOSED or not watch.active:
                    return
                if isinstance(event, BaseException):
                    raise event

                # coalesce signals queued while the consumer was busy
                index = event
                while not watch.channel.empty():
                    queued = watch.channel.get_nowait()
                    if not isinstance(queued, int):
                        pending = queued
                        break
                    index = max(index, queued)
                if index <= delivered:
                    continue

                logger.debug(f"Watch triggered on {target} at index {index}", extra={"watch_target": target})
                try:
                    values, version = await self._refresh(target, recursive)
                except Exception as e:
                    logger.error(f"Cannot refresh {target}, cancelling watch: {e}", extra={"watch_target": target})
                    raise
                version = max(index, version)
                if version <= delivered:
                    continue
                delivered = version
                # the read already covers everything up to version
                watch.last_index = max(watch.last_index, version)
                yield values
        finally:
            self._stop(watch)
            await self._watches.remove(target, watch)
            try:
                await watch.task
            except asyncio.CancelledError:
                # the poller was cancelled above; only a cancel aimed at us propagates
                if asyncio.current_task().cancelling():
                    raise
            logger.info(f"Watch stopped on {target}", extra={"watch_target": target})

    async def _wait_for_change(self, watch: Watch) -> None:
        """Poller: long-poll the backend and signal every index advance"""
        try:
            while watch.active:
                index = await self._backend.wait_index(
                    watch.target,
                    watch.last_index,
                    watch.interval,
                    recursive=watch.recursive,
                )
                if asyncio.current_task().cancelling():
                    raise asyncio.CancelledError()
                if index > watch.last_index:
                    watch.last_index = index
                    watch.channel.put_nowait(index)
        except asyncio.CancelledError:
            logger.debug(f"Poller for {watch.target} cancelled", extra={"watch_target": watch.target})
            raise
        except Exception as e:
            logger.error(f"Discovery error on {watch.target}: {e}", extra={"watch_target": watch.target})
            watch.channel.put_nowait(e)
        finally:
            watch.channel.put_nowait(_CLOSED)
