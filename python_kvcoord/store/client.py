"""
Coordination Client - uniform key-value, watch and lock API over a backend
"""
import logging
from typing import AsyncIterator, AsyncContextManager, List, Optional, Tuple

from common.config import AppConfig, get_settings
from errors import KeyModifiedError, KeyNotFoundError
from utils.logger import setup_logging
from .backend import CoordinationBackend
from .factory import REDIS_SCHEMES, create_backend
from .keys import format_key
from .lock import SessionLockManager
from .models import ClientOptions, VersionedValue
from .watch import Heartbeat, WatchCallback, WatchEngine

logger = logging.getLogger(__name__)

class CoordinationClient:
    """
    Handle over one coordination backend.

    CRUD and CAS calls are a single backend round trip each. watch() and
    watch_range() run until the watch is cancelled or a read fails, so
    callers wanting to keep going should run them in their own task.
    """

    def __init__(
        self,
        endpoints: List[str],
        options: Optional[ClientOptions] = None,
        backend: Optional[CoordinationBackend] = None,
    ):
        self.endpoints = list(endpoints)
        self.options = options or ClientOptions()
        self.backend = backend or create_backend(self.endpoints, self.options)
        self._watches = WatchEngine(self.backend, self._refresh)
        self._locks = SessionLockManager(self.backend)

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None, setup_logs: bool = False) -> "CoordinationClient":
        """
        Build a client from application settings (the process-wide ones by
        default). With setup_logs the [logger] section is applied to the
        root logger as well, which an embedding application may prefer to
        do itself.
        """
        config = config or get_settings()
        if setup_logs:
            setup_logging(
                level=config.logging.level,
                format_type=config.logging.format,
                node_id=config.node_id,
            )
        store = config.store
        endpoints = list(store.endpoints)
        if store.backend == "redis" and not (endpoints and endpoints[0].startswith(REDIS_SCHEMES)):
            endpoints = [config.redis.url]
        options = ClientOptions(
            backend=store.backend,
            timeout=store.timeout,
            tls=store.tls,
            token=store.token,
            datacenter=store.datacenter,
            namespace=store.namespace,
            poll_interval=store.poll_interval,
            max_connections=config.redis.pool_size,
        )
        return cls(endpoints, options)

    async def close(self):
        await self._watches.close()
        await self._locks.close()
        await self.backend.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # -- CRUD --

    async def get(self, key: str) -> VersionedValue:
        """Get the value at key with its version, for use with the atomic calls"""
        pair = await self.backend.get(format_key(key))
        if pair is None:
            raise KeyNotFoundError(f"key {key} not found")
        return VersionedValue(pair.value, pair.modify_index)

    async def put(self, key: str, value: bytes) -> None:
        await self.backend.put(format_key(key), value)

    async def delete(self, key: str) -> None:
        await self.backend.delete(format_key(key))

    async def exists(self, key: str) -> bool:
        """False when the key is missing; backend failures still raise"""
        try:
            await self.get(key)
        except KeyNotFoundError:
            return False
        return True

    async def get_range(self, prefix: str) -> List[bytes]:
        """Values under prefix in key order, without the prefix's own entry"""
        prefix = format_key(prefix)
        pairs = await self.backend.list(prefix)
        return [pair.value for pair in pairs if pair.key != prefix]

    async def delete_range(self, prefix: str) -> None:
        await self.backend.delete_tree(format_key(prefix))

    async def _refresh(self, target: str, recursive: bool) -> Tuple[List[bytes], int]:
        """Re-read a watch target; returns its values and the newest modify index among them"""
        if recursive:
            pairs = [pair for pair in await self.backend.list(target) if pair.key != target]
        else:
            pair = await self.backend.get(target)
            if pair is None:
                raise KeyNotFoundError(f"key {target} not found")
            pairs = [pair]
        return [pair.value for pair in pairs], max((pair.modify_index for pair in pairs), default=0)

    # -- Watch --

    async def watch(self, key: str, heartbeat: Heartbeat, callback: WatchCallback) -> None:
        await self._watches.watch(key, heartbeat, callback)

    async def watch_range(self, prefix: str, heartbeat: Heartbeat, callback: WatchCallback) -> None:
        await self._watches.watch_range(prefix, heartbeat, callback)

    def iter_watch(self, key: str, heartbeat: Heartbeat) -> AsyncIterator[List[bytes]]:
        return self._watches.iter_watch(key, heartbeat)

    def iter_watch_range(self, prefix: str, heartbeat: Heartbeat) -> AsyncIterator[List[bytes]]:
        return self._watches.iter_watch_range(prefix, heartbeat)

    async def cancel_watch(self, key: str) -> None:
        await self._watches.cancel(key)

    async def cancel_watch_range(self, prefix: str) -> None:
        await self._watches.cancel(prefix)

    async def active_watches(self) -> List[str]:
        return await self._watches.active_watches()

    # -- Locks --

    async def create_session(self) -> str:
        return await self._locks.create_session()

    async def acquire(self, key: str, value: bytes, session_id: Optional[str] = None) -> str:
        return await self._locks.acquire(key, value, session_id)

    async def release(self, session_id: str) -> None:
        await self._locks.release(session_id)

    def lock(self, key: str, value: bytes) -> AsyncContextManager[str]:
        return self._locks.lock(key, value)

    async def sessions(self) -> List[str]:
        return await self._locks.sessions()

    # -- CAS --

    async def atomic_put(self, key: str, expected_version: int, new_value: bytes) -> bool:
        """Put new_value if key is still at expected_version (0 = only if absent)"""
        if not await self.backend.cas(format_key(key), new_value, expected_version):
            raise KeyModifiedError(f"key {key} was modified")
        return True

    async def atomic_delete(self, key: str, expected_version: int) -> bool:
        if not await self.backend.delete_cas(format_key(key), expected_version):
            raise KeyModifiedError(f"key {key} was modified")
        return True
