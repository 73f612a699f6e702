from .backend import CoordinationBackend
from .client import CoordinationClient
from .consul_backend import ConsulCoordinationBackend
from .keys import format_key
from .lock import SessionLockManager
from .memory_backend import MemoryCoordinationBackend
from .models import ClientOptions, KVPair, VersionedValue, Watch, WatchState, SessionHandle
from .redis_backend import RedisCoordinationBackend
from .watch import WatchEngine

__all__ = [
    'CoordinationBackend',
    'CoordinationClient',
    'ConsulCoordinationBackend',
    'MemoryCoordinationBackend',
    'RedisCoordinationBackend',
    'SessionLockManager',
    'WatchEngine',
    'ClientOptions',
    'KVPair',
    'VersionedValue',
    'Watch',
    'WatchState',
    'SessionHandle',
    'format_key',
]
