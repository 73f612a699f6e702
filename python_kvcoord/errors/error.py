class StoreError(Exception):
    """Base error for kvcoord"""
    def __init__(self, message: str = None, source: Exception = None):
        self.message = message
        self.source = source
        super().__init__(self.__str__())

    def __str__(self):
        msg = self.message or self.__class__.__name__
        if self.source:
            return f"{msg}: {self.source}"
        return msg

class KeyNotFoundError(StoreError):
    pass

class KeyModifiedError(StoreError):
    pass

class CannotLockError(StoreError):
    pass

class SessionUndefinedError(StoreError):
    pass

class WatchNotFoundError(StoreError):
    pass

class WatchExistsError(StoreError):
    pass

class BackendError(StoreError):
    """Transport or connectivity failure reported by a coordination backend"""
    pass

class ConfigError(StoreError):
    pass
