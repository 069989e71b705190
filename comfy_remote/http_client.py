"""
Comfy Remote - Async HTTP Client
=================================

Async HTTP client over httpx used for all render backend traffic.

Features:
- Connection pooling (shared pool for the configured backend)
- Timeouts and limits from settings
- Pluggable transport (httpx.MockTransport in tests)
- Connection failures mapped to BackendConnectionError

Usage:
    async with AsyncHttpClient(base_url="http://localhost:8188") as client:
        response = await client.get("/history")

    # Shared per-URL instances for the web layer
    client = get_async_http_client("http://localhost:8188")
    ...
    await close_all_clients()
"""

from typing import Any

import httpx

from .config import settings
from .exceptions import BackendConnectionError
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "AsyncHttpClient",
    "get_async_http_client",
    "close_all_clients",
]


class AsyncHttpClient:
    """
    Async HTTP client using httpx.

    Usage:
        async with AsyncHttpClient(base_url="http://localhost:8188") as client:
            response = await client.post("/prompt", json=payload)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize async HTTP client.

        Args:
            base_url: Base URL for all requests
            timeout: Default read timeout in seconds
            transport: Optional httpx transport (tests inject MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.http.read_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        logger.debug("AsyncHttpClient initialized", extra={"base_url": self.base_url})

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-initialize the underlying async client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(
                    connect=settings.http.connect_timeout,
                    read=self.timeout,
                    write=settings.http.write_timeout,
                    pool=settings.http.pool_timeout,
                ),
                http2=settings.http.http2,
                limits=httpx.Limits(
                    max_connections=settings.http.max_connections,
                    max_keepalive_connections=settings.http.max_keepalive_connections,
                    keepalive_expiry=settings.http.keepalive_expiry,
                ),
                transport=self._transport,
            )
        return self._client

    async def request(
        self, method: str, endpoint: str, timeout: float | None = None, **kwargs: Any
    ) -> httpx.Response:
        """Make an async HTTP request, mapping transport failures."""
        _timeout = timeout or self.timeout
        try:
            return await self.client.request(method, endpoint, timeout=_timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise BackendConnectionError(
                f"Request to {self.base_url}{endpoint} timed out after {_timeout}s",
                url=self.base_url,
                cause=e,
            ) from e
        except httpx.ConnectError as e:
            raise BackendConnectionError(
                f"Failed to connect to {self.base_url}: {e}",
                url=self.base_url,
                cause=e,
            ) from e
        except httpx.TransportError as e:
            # protocol/read/write errors and unsupported schemes
            raise BackendConnectionError(
                f"Transport error talking to {self.base_url}{endpoint}: {e}",
                url=self.base_url,
                cause=e,
            ) from e

    async def get(self, endpoint: str, **kwargs: Any) -> httpx.Response:
        """Make a GET request."""
        return await self.request("GET", endpoint, **kwargs)

    async def post(self, endpoint: str, **kwargs: Any) -> httpx.Response:
        """Make a POST request."""
        return await self.request("POST", endpoint, **kwargs)

    async def close(self):
        """Close the underlying client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False


# =============================================================================
# SHARED CLIENTS
# =============================================================================

_async_clients: dict[str, AsyncHttpClient] = {}


def get_async_http_client(base_url: str | None = None) -> AsyncHttpClient:
    """
    Get a shared async HTTP client for a backend URL.

    Args:
        base_url: Backend URL (default: settings.backend.url)
    """
    url = (base_url or settings.backend.url).rstrip("/")
    if url not in _async_clients:
        _async_clients[url] = AsyncHttpClient(base_url=url)
    return _async_clients[url]


async def close_all_clients():
    """Close all shared HTTP clients."""
    clients = list(_async_clients.values())
    _async_clients.clear()
    for client in clients:
        await client.close()
