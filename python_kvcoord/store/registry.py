from __future__ import annotations

import asyncio
from typing import Dict, Generic, List, Optional, TypeVar

from .models import SessionHandle, Watch

T = TypeVar("T")


class Registry(Generic[T]):
    """Lock-guarded map shared between the public API and background watch loops."""

    def __init__(self) -> None:
        self._items: Dict[str, T] = {}
        self._lock = asyncio.Lock()

    async def insert(self, key: str, item: T) -> bool:
        """Insert item unless key is taken; returns False when it is."""
        async with self._lock:
            if key in self._items:
                return False
            self._items[key] = item
            return True

    async def lookup(self, key: str) -> Optional[T]:
        async with self._lock:
            return self._items.get(key)

    async def remove(self, key: str, item: Optional[T] = None) -> Optional[T]:
        """Remove key, only if it still maps to item when one is given."""
        async with self._lock:
            current = self._items.get(key)
            if current is None or (item is not None and current is not item):
                return None
            return self._items.pop(key)

    async def keys(self) -> List[str]:
        async with self._lock:
            return list(self._items)

    async def drain(self) -> List[T]:
        async with self._lock:
            items = list(self._items.values())
            self._items.clear()
            return items


class WatchRegistry(Registry[Watch]):
    pass


class SessionRegistry(Registry[SessionHandle]):
    pass
