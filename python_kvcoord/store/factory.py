from typing import List

from errors import ConfigError
from .backend import CoordinationBackend
from .models import ClientOptions

REDIS_SCHEMES = ("redis://", "rediss://", "unix://")


def create_backend(endpoints: List[str], options: ClientOptions) -> CoordinationBackend:
    """Pick the backend implementation named by options.backend"""
    if options.backend == "memory":
        from .memory_backend import MemoryCoordinationBackend
        return MemoryCoordinationBackend()

    if not endpoints:
        raise ConfigError(f"{options.backend} backend needs at least one endpoint")

    if options.backend == "redis":
        from .redis_backend import RedisCoordinationBackend
        url = endpoints[0]
        if not url.startswith(REDIS_SCHEMES):
            scheme = "rediss://" if options.tls is not None else "redis://"
            url = f"{scheme}{url}"
        return RedisCoordinationBackend(
            url,
            namespace=options.namespace,
            poll_interval=options.poll_interval,
            max_connections=options.max_connections,
        )

    if options.backend == "consul":
        from .consul_backend import ConsulCoordinationBackend
        return ConsulCoordinationBackend(
            endpoints,
            timeout=options.timeout,
            tls=options.tls,
            token=options.token,
            datacenter=options.datacenter,
        )

    raise ConfigError(f"unsupported backend {options.backend}")
