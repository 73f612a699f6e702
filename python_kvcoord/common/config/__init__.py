from .models import AppConfig, StoreConfig, RedisConfig, LoggingConfig, TLSConfig
from pathlib import Path
import tomllib

from pydantic import ValidationError

from errors import ConfigError

# Global Config Instance (Initial load from Env)
def _deep_update(base: dict, updates: dict) -> dict:
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _map_toml_config(data: dict) -> dict:
    mapped: dict = {}

    for key in ["name", "node_id"]:
        if key in data:
            mapped[key] = data[key]

    store_cfg = data.get("store", {})
    if store_cfg:
        mapped.setdefault("store", {})
        for key in [
            "backend",
            "endpoints",
            "timeout",
            "token",
            "datacenter",
            "namespace",
            "poll_interval",
        ]:
            if key in store_cfg:
                mapped["store"][key] = store_cfg[key]

        # [store.tls] table, absent means plain http
        tls_cfg = store_cfg.get("tls")
        if isinstance(tls_cfg, dict):
            mapped["store"]["tls"] = {
                k: tls_cfg[k] for k in ["ca_file", "cert_file", "key_file", "verify"] if k in tls_cfg
            }

    redis_cfg = data.get("redis", {})
    if redis_cfg:
        mapped["redis"] = {
            k: redis_cfg[k]
            for k in ["host", "port", "db", "username", "password", "pool_size"]
            if k in redis_cfg
        }

    logger_cfg = data.get("logger", {})
    if logger_cfg:
        mapped.setdefault("logging", {})
        if "level" in logger_cfg:
            mapped["logging"]["level"] = logger_cfg["level"].upper()
        if "format" in logger_cfg:
            mapped["logging"]["format"] = logger_cfg["format"].lower()

    return mapped


def load_config(config_path: Path) -> AppConfig:
    with open(config_path, "rb") as f:
        raw = tomllib.load(f)

    base = AppConfig().model_dump()
    mapped = _map_toml_config(raw)
    merged = _deep_update(base, mapped)
    try:
        return AppConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"invalid settings in {config_path}", source=e) from e


def _load_from_toml() -> AppConfig:
    candidates = [
        Path.cwd() / "config.toml",
        Path(__file__).resolve().parents[2] / "config.toml",
    ]
    config_path = next((p for p in candidates if p.exists()), None)
    if not config_path:
        return AppConfig()
    return load_config(config_path)


settings = _load_from_toml()

def get_settings() -> AppConfig:
    return settings

def update_settings(new_settings: AppConfig):
    global settings
    settings = new_settings
