"""
In-memory implementation of CoordinationBackend
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set

from uuid6 import uuid7

from errors import BackendError
from .backend import CoordinationBackend
from .models import KVPair

logger = logging.getLogger(__name__)

class MemoryCoordinationBackend(CoordinationBackend):
    """
    Single-process backend with the same index and session semantics
    as the networked backends. Useful for local development and testing.
    """

    def __init__(self):
        self._index = 0
        self._pairs: Dict[str, KVPair] = {}
        # last index that touched each key, kept after deletes
        self._changes: Dict[str, int] = {}
        self._sessions: Dict[str, Set[str]] = {}
        self._cond = asyncio.Condition()

    def _bump(self, key: str) -> int:
        self._index += 1
        self._changes[key] = self._index
        return self._index

    def _target_index(self, key: str, recursive: bool) -> int:
        if recursive:
            index = max((i for k, i in self._changes.items() if k.startswith(key)), default=0)
        else:
            index = self._changes.get(key, 0)
        return max(index, 1)

    def _write(self, key: str, value: bytes, session: Optional[str] = None) -> None:
        existing = self._pairs.get(key)
        index = self._bump(key)
        if existing is None:
            self._pairs[key] = KVPair(
                key=key,
                value=value,
                create_index=index,
                modify_index=index,
                lock_index=1 if session else 0,
                session=session,
            )
            return

        update = {"value": value, "modify_index": index}
        if session is not None:
            update["session"] = session
            if existing.session != session:
                update["lock_index"] = existing.lock_index + 1
        self._pairs[key] = existing.model_copy(update=update)

    def _remove(self, key: str) -> None:
        if self._pairs.pop(key, None) is not None:
            self._bump(key)

    async def get(self, key: str) -> Optional[KVPair]:
        async with self._cond:
            pair = self._pairs.get(key)
            return pair.model_copy() if pair else None

    async def list(self, prefix: str) -> List[KVPair]:
        async with self._cond:
            return [
                self._pairs[k].model_copy()
                for k in sorted(self._pairs)
                if k.startswith(prefix)
            ]

    async def put(self, key: str, value: bytes) -> None:
        async with self._cond:
            self._write(key, value)
            self._cond.notify_all()

    async def delete(self, key: str) -> None:
        async with self._cond:
            self._remove(key)
            self._cond.notify_all()

    async def delete_tree(self, prefix: str) -> None:
        async with self._cond:
            for key in [k for k in self._pairs if k.startswith(prefix)]:
                self._remove(key)
            self._cond.notify_all()

    async def cas(self, key: str, value: bytes, index: int) -> bool:
        async with self._cond:
            existing = self._pairs.get(key)
            current = existing.modify_index if existing else 0
            if current != index:
                return False
            self._write(key, value)
            self._cond.notify_all()
            return True

    async def delete_cas(self, key: str, index: int) -> bool:
        async with self._cond:
            existing = self._pairs.get(key)
            if existing is None:
                return True
            if existing.modify_index != index:
                return False
            self._remove(key)
            self._cond.notify_all()
            return True

    async def wait_index(self, key: str, index: int, wait: float, recursive: bool = False) -> int:
        async with self._cond:
            try:
                await asyncio.wait_for(
                    self._cond.wait_for(lambda: self._target_index(key, recursive) > index),
                    timeout=wait,
                )
            except asyncio.TimeoutError:
                pass
            return self._target_index(key, recursive)

    async def create_session(self) -> str:
        async with self._cond:
            session_id = str(uuid7())
            self._sessions[session_id] = set()
            return session_id

    async def destroy_session(self, session_id: str) -> None:
        async with self._cond:
            held = self._sessions.pop(session_id, set())
            for key in held:
                pair = self._pairs.get(key)
                if pair is not None and pair.session == session_id:
                    index = self._bump(key)
                    self._pairs[key] = pair.model_copy(update={"session": None, "modify_index": index})
            self._cond.notify_all()

    async def acquire(self, key: str, value: bytes, session_id: str) -> bool:
        async with self._cond:
            if session_id not in self._sessions:
                raise BackendError(f"invalid session {session_id}")
            existing = self._pairs.get(key)
            if existing is not None and existing.session not in (None, session_id):
                return False
            self._write(key, value, session=session_id)
            self._sessions[session_id].add(key)
            self._cond.notify_all()
            return True
