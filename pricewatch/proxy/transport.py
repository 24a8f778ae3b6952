"""
PriceWatch — Proxy Transport Dispatch

The one place that knows how each ProxyType is spoken to. HTTP/HTTPS
proxies use httpx's native proxy support; SOCKS4/SOCKS5 go through an
httpx-socks transport. Both the fetcher and the health checker build their
clients here.
"""

from __future__ import annotations

import httpx
from httpx_socks import AsyncProxyTransport

from pricewatch.config import ProxyType
from pricewatch.proxy import ProxySnapshot


def build_async_client(
    proxy: ProxySnapshot | None,
    timeout_seconds: float,
    headers: dict[str, str] | None = None,
) -> httpx.AsyncClient:
    """
    Create an AsyncClient that egresses through the given proxy.

    Args:
        proxy: Proxy to route through, or None for a direct connection.
        timeout_seconds: Total request timeout.
        headers: Default headers for every request on this client.

    Returns:
        An unopened httpx.AsyncClient; use it as an async context manager.
    """
    timeout = httpx.Timeout(timeout_seconds)
    common = {"timeout": timeout, "headers": headers, "follow_redirects": True}

    if proxy is None:
        return httpx.AsyncClient(**common)

    if proxy.proxy_type in (ProxyType.HTTP, ProxyType.HTTPS):
        return httpx.AsyncClient(proxy=proxy.proxy_url, **common)

    if proxy.proxy_type in (ProxyType.SOCKS4, ProxyType.SOCKS5):
        transport = AsyncProxyTransport.from_url(proxy.proxy_url)
        return httpx.AsyncClient(transport=transport, **common)

    raise ValueError(f"Unsupported proxy type: {proxy.proxy_type!r}")
