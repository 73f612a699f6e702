from .error import (
    StoreError, KeyNotFoundError, KeyModifiedError, CannotLockError, SessionUndefinedError,
    WatchNotFoundError, WatchExistsError, BackendError, ConfigError
)
