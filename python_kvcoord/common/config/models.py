from typing import Literal, Optional, List
from urllib.parse import quote
from pydantic_settings import BaseSettings, SettingsConfigDict

class TLSConfig(BaseSettings):
    ca_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    verify: bool = True

    model_config = SettingsConfigDict(env_prefix="KVCOORD_TLS_")

class RedisConfig(BaseSettings):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    username: Optional[str] = None
    password: Optional[str] = None
    pool_size: Optional[int] = None

    @property
    def url(self) -> str:
        auth = ""
        if self.username or self.password:
            auth = f"{quote(self.username or '', safe='')}:{quote(self.password or '', safe='')}@"
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"

    model_config = SettingsConfigDict(env_prefix="REDIS_")

class StoreConfig(BaseSettings):
    backend: Literal["consul", "redis", "memory"] = "consul"
    endpoints: List[str] = ["127.0.0.1:8500"]
    timeout: Optional[float] = None
    token: Optional[str] = None
    datacenter: Optional[str] = None
    namespace: str = "kvcoord"
    poll_interval: float = 0.1
    tls: Optional[TLSConfig] = None

    model_config = SettingsConfigDict(env_prefix="KVCOORD_")

class LoggingConfig(BaseSettings):
    level: str = "INFO"
    format: str = "json"

    model_config = SettingsConfigDict(env_prefix="LOG_")

class AppConfig(BaseSettings):
    name: str = "kvcoord"
    node_id: str = "node-1"

    store: StoreConfig = StoreConfig()
    redis: RedisConfig = RedisConfig()
    logging: LoggingConfig = LoggingConfig()

    model_config = SettingsConfigDict(env_file=".env", env_nested_delimiter="__")
