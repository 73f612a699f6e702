from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, NamedTuple, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator

from common.config import TLSConfig


class KVPair(BaseModel):
    """A single key as reported by a coordination backend."""

    model_config = ConfigDict(populate_by_name=True)

    key: str = Field(alias="Key")
    value: bytes = Field(default=b"", alias="Value")
    create_index: int = Field(default=0, alias="CreateIndex")
    modify_index: int = Field(default=0, alias="ModifyIndex")
    lock_index: int = Field(default=0, alias="LockIndex")
    flags: int = Field(default=0, alias="Flags")
    session: Optional[str] = Field(default=None, alias="Session")

    @field_validator("value", mode="before")
    @classmethod
    def _decode_value(cls, v):
        # Consul sends base64 text, or null for an empty value
        if v is None:
            return b""
        if isinstance(v, str):
            return base64.b64decode(v)
        return v


class VersionedValue(NamedTuple):
    value: bytes
    version: int


class WatchState(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


@dataclass
class Watch:
    target: str
    recursive: bool
    interval: float
    last_index: int = 0
    state: WatchState = WatchState.ACTIVE
    channel: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self.state is WatchState.ACTIVE


@dataclass
class SessionHandle:
    id: str
    held_locks: Set[str] = field(default_factory=set)


class ClientOptions(BaseModel):
    """Recognized options for building a coordination client."""

    backend: Literal["consul", "redis", "memory"] = "consul"
    timeout: Optional[float] = None
    tls: Optional[TLSConfig] = None
    token: Optional[str] = None
    datacenter: Optional[str] = None
    namespace: str = "kvcoord"
    poll_interval: float = 0.1
    # redis connection pool ceiling, unbounded when unset
    max_connections: Optional[int] = None
