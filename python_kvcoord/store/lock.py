import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from errors import CannotLockError, SessionUndefinedError
from .backend import CoordinationBackend
from .keys import format_key
from .models import SessionHandle
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

class SessionLockManager:
    """
    Session-scoped exclusive locks.

    A lock is a key written with a session attached; the backend refuses
    the write while another live session holds the key. Sessions carry
    no health checks, so they live until released here or expired by
    the backend. Tracking is local to this instance: a session created
    elsewhere is unknown even if it is live on the backend.
    """

    def __init__(self, backend: CoordinationBackend):
        self._backend = backend
        self._sessions = SessionRegistry()

    async def create_session(self) -> str:
        session_id = await self._backend.create_session()
        await self._sessions.insert(session_id, SessionHandle(id=session_id))
        logger.info(f"Created session {session_id}", extra={"session_id": session_id})
        return session_id

    async def acquire(self, key: str, value: bytes, session_id: Optional[str] = None) -> str:
        """
        Acquire the lock on key and return the holding session id.

        Without session_id a fresh session is created and destroyed again
        if the key is already held. A caller-supplied session is kept on
        failure so the caller can retry with it.
        """
        key = format_key(key)
        owned = session_id is None
        if owned:
            session_id = await self.create_session()
        else:
            handle = await self._sessions.lookup(session_id)
            if handle is None:
                raise SessionUndefinedError(f"session {session_id} does not exist")

        try:
            acquired = await self._backend.acquire(key, value, session_id)
        except Exception:
            if owned:
                await self._discard(session_id)
            raise

        if not acquired:
            logger.warning(f"Cannot lock {key}, held by another session", extra={"session_id": session_id})
            if owned:
                await self._discard(session_id)
            raise CannotLockError(f"cannot lock {key}")

        handle = await self._sessions.lookup(session_id)
        if handle is not None:
            handle.held_locks.add(key)
        return session_id

    async def release(self, session_id: str) -> None:
        handle = await self._sessions.lookup(session_id)
        if handle is None:
            logger.error(f"Lock session {session_id} does not exist")
            raise SessionUndefinedError(f"session {session_id} does not exist")
        # forget the session only once the backend has let go of it
        await self._backend.destroy_session(session_id)
        await self._sessions.remove(session_id, handle)
        logger.info(
            f"Destroyed session {session_id}, released {sorted(handle.held_locks)}",
            extra={"session_id": session_id},
        )

    async def _discard(self, session_id: str) -> None:
        await self._backend.destroy_session(session_id)
        await self._sessions.remove(session_id)
        logger.info(f"Destroyed unused session {session_id}", extra={"session_id": session_id})

    @asynccontextmanager
    async def lock(self, key: str, value: bytes) -> AsyncIterator[str]:
        session_id = await self.acquire(key, value)
        try:
            yield session_id
        finally:
            await self.release(session_id)

    async def sessions(self) -> List[str]:
        return await self._sessions.keys()

    async def close(self) -> None:
        """Destroy every session still tracked by this instance"""
        for session_id in await self._sessions.keys():
            handle = await self._sessions.lookup(session_id)
            if handle is None:
                continue
            await self._backend.destroy_session(handle.id)
            await self._sessions.remove(handle.id, handle)
            logger.info(f"Destroyed session {handle.id} on close", extra={"session_id": handle.id})
