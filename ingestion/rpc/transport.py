"""ingestion/rpc/transport.py

JSON-RPC 2.0 transport over aiohttp.

Failures are tagged with an ErrorKind right here, where they are observed:
- asyncio / aiohttp timeouts -> TIMEOUT
- HTTP 401/403/429/5xx       -> UNAUTHORIZED/FORBIDDEN/RATE_LIMITED/TRANSPORT
- connection errors, bad JSON -> TRANSPORT
- JSON-RPC error objects      -> by error code (see errors.kind_for_rpc_error)
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Callable, List, Optional

import aiohttp

from .errors import (
    ClassifiedError,
    ErrorKind,
    NetworkError,
    error_for_kind,
    kind_for_http_status,
    kind_for_rpc_error,
)

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT_MS = 8000


class Transport:
    """Minimal interface every endpoint transport implements."""

    url: str

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class JsonRpcTransport(Transport):
    """
    JSON-RPC client bound to one endpoint URL.

    The aiohttp session is created lazily and owned by the transport unless
    one is passed in.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = url
        self.timeout_ms = timeout_ms
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "JsonRpcTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_ms / 1000.0)
            )
            self._owns_session = True
        return self._session

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Send one JSON-RPC request and return its `result`.

        Raises:
            NetworkError: endpoint-level failure.
            DomainError: the node rejected the call.
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        session = self._get_session()

        try:
            async with session.post(self.url, json=payload) as response:
                if response.status >= 400:
                    kind = kind_for_http_status(response.status)
                    logger.debug(f"[rpc] {method} on {self.url} -> HTTP {response.status} ({kind.value})")
                    raise NetworkError(
                        f"HTTP {response.status} for {method}",
                        kind=kind,
                        endpoint=self.url,
                    )
                text = await response.text()
        except ClassifiedError:
            raise
        except asyncio.TimeoutError:
            raise NetworkError(f"{method} timed out", kind=ErrorKind.TIMEOUT, endpoint=self.url)
        except aiohttp.ClientError as e:
            raise NetworkError(f"{method} failed: {e}", kind=ErrorKind.TRANSPORT, endpoint=self.url)

        return parse_response(text, method=method, endpoint=self.url)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


def parse_response(text: str, *, method: str, endpoint: Optional[str] = None) -> Any:
    """Decode a JSON-RPC response body into its result.

    Shape is validated once; anything unrecognized is a transport failure of
    the endpoint, not of the call.
    """
    try:
        body = json.loads(text)
    except json.JSONDecodeError as e:
        raise NetworkError(f"invalid JSON for {method}: {e}", kind=ErrorKind.TRANSPORT, endpoint=endpoint)

    if not isinstance(body, dict):
        raise NetworkError(f"unexpected response shape for {method}", kind=ErrorKind.TRANSPORT, endpoint=endpoint)

    error = body.get("error")
    if error is not None:
        if not isinstance(error, dict):
            raise NetworkError(f"malformed error object for {method}", kind=ErrorKind.TRANSPORT, endpoint=endpoint)
        data = error.get("data")
        kind = kind_for_rpc_error(error.get("code"), data)
        err = error_for_kind(kind, f"{method}: {error.get('message', 'rpc error')}", endpoint)
        err.data = data
        raise err

    if "result" not in body:
        raise NetworkError(f"response for {method} has no result", kind=ErrorKind.TRANSPORT, endpoint=endpoint)
    return body["result"]


TransportFactory = Callable[[str, int], Transport]


def default_transport_factory(url: str, timeout_ms: int) -> Transport:
    return JsonRpcTransport(url, timeout_ms=timeout_ms)


__all__ = [
    "Transport",
    "JsonRpcTransport",
    "TransportFactory",
    "default_transport_factory",
    "parse_response",
]
