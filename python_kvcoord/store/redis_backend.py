"""
Redis implementation of CoordinationBackend
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, List, Optional

from redis.asyncio import Redis, ConnectionPool
from redis.asyncio.client import Pipeline
from redis.exceptions import RedisError, WatchError
from uuid6 import uuid7

from errors import BackendError
from .backend import CoordinationBackend
from .models import KVPair

logger = logging.getLogger(__name__)

class RedisCoordinationBackend(CoordinationBackend):
    """
    Redis-based coordination backend.

    Layout under the namespace:
      <ns>:index            global modify index counter
      <ns>:kv:<key>         hash with value/create_index/modify_index/lock_index/session
      <ns>:keys             sorted set of live keys (lexicographic, score 0)
      <ns>:changes          hash key -> last index that touched it, survives deletes
      <ns>:changed          sorted set of every key in :changes (lexicographic, score 0)
      <ns>:tombstones       deleted keys still in :changes, scored by delete index
      <ns>:sessions         set of live session ids
      <ns>:session:<id>     set of keys acquired by the session

    Every mutation runs as a WATCH/MULTI/EXEC transaction on the index
    counter so indexes are assigned in commit order. Only the newest
    tombstone_limit deleted keys keep their change index; older ones are
    dropped as new deletes come in.
    """

    def __init__(
        self,
        redis_url: str,
        namespace: str = "kvcoord",
        poll_interval: float = 0.1,
        max_connections: Optional[int] = None,
        tombstone_limit: int = 1000,
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self.poll_interval = poll_interval
        self.tombstone_limit = tombstone_limit
        pool_kwargs = {"decode_responses": False}
        if max_connections:
            pool_kwargs["max_connections"] = max_connections
        self._pool = ConnectionPool.from_url(redis_url, **pool_kwargs)
        self._redis: Redis = Redis(connection_pool=self._pool)

    async def close(self):
        """Cleanup connections"""
        await self._redis.aclose()
        await self._pool.disconnect()

    @property
    def _index_key(self) -> str:
        return f"{self.namespace}:index"

    @property
    def _keys_key(self) -> str:
        return f"{self.namespace}:keys"

    @property
    def _changes_key(self) -> str:
        return f"{self.namespace}:changes"

    @property
    def _changed_key(self) -> str:
        return f"{self.namespace}:changed"

    @property
    def _tombstones_key(self) -> str:
        return f"{self.namespace}:tombstones"

    @property
    def _sessions_key(self) -> str:
        return f"{self.namespace}:sessions"

    def _kv_key(self, key: str) -> str:
        return f"{self.namespace}:kv:{key}"

    def _session_key(self, session_id: str) -> str:
        return f"{self.namespace}:session:{session_id}"

    @asynccontextmanager
    async def _translate_errors(self, op: str, key: str):
        try:
            yield
        except RedisError as e:
            logger.error(f"Redis {op} failed for {key}: {e}")
            raise BackendError(f"redis {op} failed for {key}", source=e) from e

    async def _atomic(self, watch_keys: List[str], body: Callable[[Pipeline], Awaitable[bool]]) -> bool:
        """
        Run body under WATCH on the index counter and watch_keys. body
        reads in immediate mode, calls pipe.multi() and queues its writes,
        then returns True; returning False aborts without writing.
        """
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self._index_key, *watch_keys)
                    applied = await body(pipe)
                    if not applied:
                        await pipe.unwatch()
                        return False
                    await pipe.execute()
                    return True
                except WatchError:
                    logger.debug(f"Transaction on {watch_keys} raced, retrying")
                    continue

    async def _next_index(self, pipe: Pipeline) -> int:
        current = await pipe.get(self._index_key)
        return int(current or 0) + 1

    def _queue_write(self, pipe: Pipeline, key: str, index: int, mapping: Dict[str, object]) -> None:
        kv_key = self._kv_key(key)
        pipe.set(self._index_key, index)
        pipe.hsetnx(kv_key, "create_index", index)
        pipe.hset(kv_key, mapping={**mapping, "modify_index": index})
        pipe.zadd(self._keys_key, {key: 0})
        pipe.zrem(self._tombstones_key, key)
        self._queue_change(pipe, key, index)

    def _queue_remove(self, pipe: Pipeline, key: str, index: int) -> None:
        pipe.set(self._index_key, index)
        pipe.delete(self._kv_key(key))
        pipe.zrem(self._keys_key, key)
        pipe.zadd(self._tombstones_key, {key: index})
        self._queue_change(pipe, key, index)

    def _queue_change(self, pipe: Pipeline, key: str, index: int) -> None:
        pipe.hset(self._changes_key, key, index)
        pipe.zadd(self._changed_key, {key: 0})

    async def _expired_tombstones(self, pipe: Pipeline, adding: int) -> List[bytes]:
        """Oldest tombstones that no longer fit once `adding` more are recorded"""
        overflow = await pipe.zcard(self._tombstones_key) + adding - self.tombstone_limit
        if overflow <= 0:
            return []
        return await pipe.zrange(self._tombstones_key, 0, overflow - 1)

    def _queue_prune(self, pipe: Pipeline, expired: List[bytes]) -> None:
        if not expired:
            return
        pipe.hdel(self._changes_key, *expired)
        pipe.zrem(self._changed_key, *expired)
        pipe.zrem(self._tombstones_key, *expired)

    @staticmethod
    def _to_pair(key: str, data: Dict[bytes, bytes]) -> KVPair:
        session = data.get(b"session") or b""
        return KVPair(
            key=key,
            value=data.get(b"value", b""),
            create_index=int(data.get(b"create_index", 0)),
            modify_index=int(data.get(b"modify_index", 0)),
            lock_index=int(data.get(b"lock_index", 0)),
            session=session.decode() or None,
        )

    async def get(self, key: str) -> Optional[KVPair]:
        async with self._translate_errors("get", key):
            data = await self._redis.hgetall(self._kv_key(key))
        if not data:
            return None
        return self._to_pair(key, data)

    async def _range_lex(self, zset: str, prefix: str) -> List[bytes]:
        if prefix:
            raw = prefix.encode()
            return await self._redis.zrangebylex(zset, b"[" + raw, b"[" + raw + b"\xff")
        return await self._redis.zrangebylex(zset, b"-", b"+")

    async def _list_keys(self, prefix: str) -> List[str]:
        return [m.decode() for m in await self._range_lex(self._keys_key, prefix)]

    async def list(self, prefix: str) -> List[KVPair]:
        async with self._translate_errors("list", prefix):
            keys = await self._list_keys(prefix)
            async with self._redis.pipeline(transaction=False) as pipe:
                for key in keys:
                    pipe.hgetall(self._kv_key(key))
                rows = await pipe.execute()
        # a key may vanish between the two reads
        return [self._to_pair(key, data) for key, data in zip(keys, rows) if data]

    async def put(self, key: str, value: bytes) -> None:
        async def body(pipe: Pipeline) -> bool:
            index = await self._next_index(pipe)
            pipe.multi()
            self._queue_write(pipe, key, index, {"value": value})
            return True

        async with self._translate_errors("put", key):
            await self._atomic([self._kv_key(key)], body)

    async def delete(self, key: str) -> None:
        async def body(pipe: Pipeline) -> bool:
            if not await pipe.exists(self._kv_key(key)):
                return False
            expired = await self._expired_tombstones(pipe, 1)
            index = await self._next_index(pipe)
            pipe.multi()
            self._queue_prune(pipe, expired)
            self._queue_remove(pipe, key, index)
            return True

        async with self._translate_errors("delete", key):
            await self._atomic([self._kv_key(key)], body)

    async def delete_tree(self, prefix: str) -> None:
        async def body(pipe: Pipeline) -> bool:
            keys = await self._list_keys(prefix)
            if not keys:
                return False
            expired = await self._expired_tombstones(pipe, len(keys))
            index = await self._next_index(pipe)
            pipe.multi()
            self._queue_prune(pipe, expired)
            for key in keys:
                self._queue_remove(pipe, key, index)
            return True

        async with self._translate_errors("delete_tree", prefix):
            await self._atomic([self._keys_key], body)

    async def cas(self, key: str, value: bytes, index: int) -> bool:
        async def body(pipe: Pipeline) -> bool:
            current = await pipe.hget(self._kv_key(key), "modify_index")
            if int(current or 0) != index:
                return False
            new_index = await self._next_index(pipe)
            pipe.multi()
            self._queue_write(pipe, key, new_index, {"value": value})
            return True

        async with self._translate_errors("cas", key):
            return await self._atomic([self._kv_key(key)], body)

    async def delete_cas(self, key: str, index: int) -> bool:
        missing = False

        async def body(pipe: Pipeline) -> bool:
            nonlocal missing
            current = await pipe.hget(self._kv_key(key), "modify_index")
            if current is None:
                missing = True
                return False
            if int(current) != index:
                return False
            expired = await self._expired_tombstones(pipe, 1)
            new_index = await self._next_index(pipe)
            pipe.multi()
            self._queue_prune(pipe, expired)
            self._queue_remove(pipe, key, new_index)
            return True

        async with self._translate_errors("delete_cas", key):
            applied = await self._atomic([self._kv_key(key)], body)
        return applied or missing

    async def _target_index(self, key: str, recursive: bool) -> int:
        if recursive:
            members = await self._range_lex(self._changed_key, key)
            indexes = await self._redis.hmget(self._changes_key, members) if members else []
            index = max((int(v) for v in indexes if v is not None), default=0)
        else:
            index = int(await self._redis.hget(self._changes_key, key) or 0)
        return max(index, 1)

    async def wait_index(self, key: str, index: int, wait: float, recursive: bool = False) -> int:
        """Poll the change index every poll_interval until it passes index or wait elapses"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait
        task = asyncio.current_task()
        async with self._translate_errors("wait_index", key):
            while True:
                current = await self._target_index(key, recursive)
                # redis-py may absorb a cancel that lands mid-command
                if task.cancelling():
                    raise asyncio.CancelledError()
                remaining = deadline - loop.time()
                if current > index or remaining <= 0:
                    return current
                await asyncio.sleep(min(self.poll_interval, remaining))

    async def create_session(self) -> str:
        session_id = str(uuid7())
        async with self._translate_errors("create_session", session_id):
            await self._redis.sadd(self._sessions_key, session_id)
        return session_id

    async def destroy_session(self, session_id: str) -> None:
        session_key = self._session_key(session_id)

        async def body(pipe: Pipeline) -> bool:
            held = [k.decode() for k in await pipe.smembers(session_key)]
            owned = []
            for key in held:
                holder = await pipe.hget(self._kv_key(key), "session")
                if holder == session_id.encode():
                    owned.append(key)
            index = await self._next_index(pipe)
            pipe.multi()
            for key in owned:
                pipe.hset(self._kv_key(key), mapping={"session": "", "modify_index": index})
                pipe.hset(self._changes_key, key, index)
            if owned:
                pipe.set(self._index_key, index)
            pipe.delete(session_key)
            pipe.srem(self._sessions_key, session_id)
            return True

        async with self._translate_errors("destroy_session", session_id):
            # held keys are re-read inside the transaction; watching the
            # session set is enough to catch a racing acquire
            await self._atomic([session_key], body)

    async def acquire(self, key: str, value: bytes, session_id: str) -> bool:
        """Session-tagged write, rejected while another live session holds key"""
        kv_key = self._kv_key(key)

        async def body(pipe: Pipeline) -> bool:
            if not await pipe.sismember(self._sessions_key, session_id):
                raise BackendError(f"invalid session {session_id}")
            holder = (await pipe.hget(kv_key, "session") or b"").decode()
            if holder and holder != session_id:
                return False
            lock_index = int(await pipe.hget(kv_key, "lock_index") or 0)
            index = await self._next_index(pipe)
            mapping = {"value": value, "session": session_id}
            if holder != session_id:
                mapping["lock_index"] = lock_index + 1
            pipe.multi()
            self._queue_write(pipe, key, index, mapping)
            pipe.sadd(self._session_key(session_id), key)
            return True

        async with self._translate_errors("acquire", key):
            return await self._atomic([kv_key, self._sessions_key], body)
