"""
Consul implementation of CoordinationBackend, over the HTTP API
"""
import logging
import ssl
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import httpx

from common.config import TLSConfig
from errors import BackendError, ConfigError
from .backend import CoordinationBackend
from .models import KVPair

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
INDEX_HEADER = "X-Consul-Index"
TOKEN_HEADER = "X-Consul-Token"


def build_ssl_context(tls: TLSConfig) -> Union[ssl.SSLContext, bool]:
    """Translate TLS settings into something httpx accepts for `verify`"""
    if not tls.verify:
        return False
    context = ssl.create_default_context(cafile=tls.ca_file)
    if tls.cert_file:
        context.load_cert_chain(tls.cert_file, tls.key_file)
    return context


class ConsulCoordinationBackend(CoordinationBackend):
    """Consul-based coordination backend"""

    def __init__(
        self,
        endpoints: List[str],
        timeout: Optional[float] = None,
        tls: Optional[TLSConfig] = None,
        token: Optional[str] = None,
        datacenter: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not endpoints:
            raise ConfigError("consul backend needs at least one endpoint")
        if len(endpoints) > 1:
            logger.info(f"Consul backend uses the first endpoint only, ignoring {endpoints[1:]}")

        self.scheme = "https" if tls is not None else "http"
        self.address = endpoints[0]
        self.timeout = timeout or DEFAULT_TIMEOUT
        self.datacenter = datacenter

        headers = {TOKEN_HEADER: token} if token else None
        client_kwargs: Dict[str, Any] = {
            "base_url": f"{self.scheme}://{self.address}",
            "timeout": self.timeout,
            "headers": headers,
        }
        if tls is not None:
            client_kwargs["verify"] = build_ssl_context(tls)
        if transport is not None:
            client_kwargs["transport"] = transport
        self._client = httpx.AsyncClient(**client_kwargs)

    async def close(self):
        """Cleanup connections"""
        await self._client.aclose()

    def _params(self, **extra: Any) -> Dict[str, Any]:
        params = {k: v for k, v in extra.items() if v is not None}
        if self.datacenter:
            params["dc"] = self.datacenter
        return params

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        content: Optional[bytes] = None,
        json: Any = None,
        timeout: Optional[float] = None,
        allow_missing: bool = False,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                content=content,
                json=json,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as e:
            logger.error(f"Consul {method} {path} failed: {e}")
            raise BackendError(f"consul {method} {path} failed", source=e) from e

        if allow_missing and response.status_code == 404:
            return response
        if response.status_code >= 400:
            raise BackendError(f"consul {method} {path} returned {response.status_code}: {response.text}")
        return response

    @staticmethod
    def _kv_path(key: str) -> str:
        return f"/v1/kv/{quote(key)}"

    @staticmethod
    def _index_of(response: httpx.Response) -> int:
        try:
            index = int(response.headers.get(INDEX_HEADER, "0"))
        except ValueError:
            index = 0
        return max(index, 1)

    @staticmethod
    def _applied(response: httpx.Response) -> bool:
        return response.text.strip() == "true"

    async def get(self, key: str) -> Optional[KVPair]:
        response = await self._request("GET", self._kv_path(key), params=self._params(), allow_missing=True)
        if response.status_code == 404:
            return None
        pairs = response.json() or []
        return KVPair.model_validate(pairs[0]) if pairs else None

    async def list(self, prefix: str) -> List[KVPair]:
        response = await self._request(
            "GET", self._kv_path(prefix), params=self._params(recurse="true"), allow_missing=True
        )
        if response.status_code == 404:
            return []
        return [KVPair.model_validate(p) for p in response.json() or []]

    async def put(self, key: str, value: bytes) -> None:
        await self._request("PUT", self._kv_path(key), params=self._params(), content=value)

    async def delete(self, key: str) -> None:
        await self._request("DELETE", self._kv_path(key), params=self._params())

    async def delete_tree(self, prefix: str) -> None:
        await self._request("DELETE", self._kv_path(prefix), params=self._params(recurse="true"))

    async def cas(self, key: str, value: bytes, index: int) -> bool:
        response = await self._request("PUT", self._kv_path(key), params=self._params(cas=index), content=value)
        return self._applied(response)

    async def delete_cas(self, key: str, index: int) -> bool:
        response = await self._request("DELETE", self._kv_path(key), params=self._params(cas=index))
        return self._applied(response)

    async def wait_index(self, key: str, index: int, wait: float, recursive: bool = False) -> int:
        """Blocking query; Consul adds up to wait/16 of jitter, so the read timeout allows for it"""
        params = self._params(
            index=index,
            wait=f"{max(int(wait * 1000), 1)}ms",
            recurse="true" if recursive else None,
        )
        response = await self._request(
            "GET",
            self._kv_path(key),
            params=params,
            timeout=self.timeout + wait + wait / 16,
            allow_missing=True,
        )
        return self._index_of(response)

    async def create_session(self) -> str:
        response = await self._request("PUT", "/v1/session/create", params=self._params(), json={"Checks": []})
        return response.json()["ID"]

    async def destroy_session(self, session_id: str) -> None:
        await self._request("PUT", f"/v1/session/destroy/{session_id}", params=self._params())

    async def acquire(self, key: str, value: bytes, session_id: str) -> bool:
        response = await self._request(
            "PUT", self._kv_path(key), params=self._params(acquire=session_id), content=value
        )
        return self._applied(response)
