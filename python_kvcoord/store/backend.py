"""
Coordination Backend - Abstract interface for distributed coordination
"""
from abc import ABC, abstractmethod
from typing import Optional, List

from .models import KVPair

class CoordinationBackend(ABC):
    """
    Abstract backend for distributed coordination operations.
    Provides versioned key-value storage, blocking index queries,
    conditional writes and session-tagged locks.

    Indexes reported by a backend are always >= 1 so that a watcher
    starting from 0 observes the current state on its first query.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[KVPair]:
        """Get the pair stored at key, None if absent"""
        pass

    @abstractmethod
    async def list(self, prefix: str) -> List[KVPair]:
        """List every pair under prefix in key order"""
        pass

    @abstractmethod
    async def put(self, key: str, value: bytes) -> None:
        """Unconditionally write value at key"""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key, absent keys are ignored"""
        pass

    @abstractmethod
    async def delete_tree(self, prefix: str) -> None:
        """Delete every key under prefix"""
        pass

    @abstractmethod
    async def cas(self, key: str, value: bytes, index: int) -> bool:
        """Write value if the key's modify index equals index (0 = create only)"""
        pass

    @abstractmethod
    async def delete_cas(self, key: str, index: int) -> bool:
        """Delete key if its modify index equals index"""
        pass

    @abstractmethod
    async def wait_index(self, key: str, index: int, wait: float, recursive: bool = False) -> int:
        """Block until the index of key (or prefix) passes index or wait seconds elapse"""
        pass

    @abstractmethod
    async def create_session(self) -> str:
        """Create a session with no health checks attached"""
        pass

    @abstractmethod
    async def destroy_session(self, session_id: str) -> None:
        """Destroy session, releasing every key it holds"""
        pass

    @abstractmethod
    async def acquire(self, key: str, value: bytes, session_id: str) -> bool:
        """Write value at key tagged with session, only if no other session holds it"""
        pass

    async def close(self) -> None:
        """Cleanup connections"""
        pass
