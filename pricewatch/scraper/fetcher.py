"""
PriceWatch — Proxy-Aware Fetcher

Performs one page GET through the proxy pool:

1. Select a proxy (excluding ones already tried for this URL).
2. GET with the command's user-agent/header profile and the proxy's timeout.
3. Record exactly one success or failure against that proxy.
4. On failure, wait the fixed retry delay and try a different proxy, up to
   max_retries extra attempts.

When every attempt fails the last FetchError is raised with its category,
code and HTTP status intact. With the pool disabled, requests go direct.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from pricewatch.config import ErrorCategory, ProxyPoolConfig
from pricewatch.errors import FetchError, PoolExhaustedError, ScrapeError
from pricewatch.pipeline.messages import ScrapingProfile
from pricewatch.proxy import ProxySnapshot
from pricewatch.proxy.pool import ProxyPoolManager
from pricewatch.proxy.transport import build_async_client

logger = structlog.get_logger(__name__)

_DEFAULT_HEADERS: dict[str, str] = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


class FetchResponse(BaseModel):
    """A 2xx page body plus where and how it was fetched."""

    model_config = ConfigDict(frozen=True)

    url: str
    status_code: int
    content: str
    headers: dict[str, str] = Field(default_factory=dict)
    response_time_ms: float
    proxy_id: uuid.UUID | None = None
    proxy_used: str | None = None
    attempts: int = 1


class ProxyAwareFetcher:
    """
    HTTP GET with retry across proxies.

    Usage:
        fetcher = ProxyAwareFetcher(pool, settings.proxy_pool_config())
        response = await fetcher.fetch(url, profile)
    """

    def __init__(
        self,
        pool: ProxyPoolManager,
        config: ProxyPoolConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.pool = pool
        self._config = config
        self._sleep = sleep

    @property
    def config(self) -> ProxyPoolConfig:
        return self._config or self.pool.config

    def max_duration_seconds(self, proxy_timeout_seconds: float | None = None) -> float:
        """Worst-case wall time of one fetch() call: every attempt times out."""
        cfg = self.config
        per_attempt = proxy_timeout_seconds or cfg.request_timeout_seconds
        attempts = cfg.max_retries + 1
        return per_attempt * attempts + (cfg.retry_delay_ms / 1000) * cfg.max_retries

    @staticmethod
    def _build_headers(profile: ScrapingProfile | None) -> dict[str, str]:
        headers = dict(_DEFAULT_HEADERS)
        if profile is not None:
            if profile.user_agent:
                headers["User-Agent"] = profile.user_agent
            headers.update(profile.headers)
        return headers

    async def fetch(self, url: str, profile: ScrapingProfile | None = None) -> FetchResponse:
        """
        Fetch a page, retrying on a different proxy after each failure.

        Args:
            url: Page to GET.
            profile: User-agent and extra headers for the request.

        Returns:
            FetchResponse for the first 2xx response.

        Raises:
            FetchError: Network, timeout or non-2xx failure on the last attempt.
            PoolExhaustedError: No eligible proxy on the last attempt.
        """
        cfg = self.config
        headers = self._build_headers(profile)
        tried: list[uuid.UUID] = []
        last_error: ScrapeError | None = None

        for attempt in range(cfg.max_retries + 1):
            if attempt > 0:
                await self._sleep(cfg.retry_delay_ms / 1000)

            proxy: ProxySnapshot | None = None
            if cfg.enabled:
                try:
                    proxy = await self.pool.select(exclude=tried)
                except PoolExhaustedError as e:
                    last_error = e
                    logger.warning(
                        "fetch_pool_exhausted",
                        url=url,
                        attempt=attempt + 1,
                        source="fetcher",
                    )
                    continue
                tried.append(proxy.id)

            try:
                response = await self._attempt(url, headers, proxy, attempts=attempt + 1)
            except FetchError as e:
                last_error = e
                logger.warning(
                    "fetch_attempt_failed",
                    url=url,
                    attempt=attempt + 1,
                    proxy=proxy.display_name if proxy else None,
                    error_code=e.code,
                    http_status=e.http_status,
                    error=e.message,
                    source="fetcher",
                )
                if proxy is not None:
                    await self.pool.record_failure(proxy.id, e.message, e.code)
                continue

            if proxy is not None:
                await self.pool.record_success(proxy.id, latency_ms=response.response_time_ms)
            logger.info(
                "fetch_success",
                url=url,
                status_code=response.status_code,
                attempts=attempt + 1,
                proxy=response.proxy_used,
                response_time_ms=round(response.response_time_ms, 1),
                source="fetcher",
            )
            return response

        assert last_error is not None
        logger.error(
            "fetch_retries_exhausted",
            url=url,
            attempts=cfg.max_retries + 1,
            error_code=last_error.code,
            error_category=last_error.category.value,
            source="fetcher",
        )
        raise last_error

    async def _attempt(
        self,
        url: str,
        headers: dict[str, str],
        proxy: ProxySnapshot | None,
        attempts: int,
    ) -> FetchResponse:
        timeout = proxy.timeout_seconds if proxy else self.config.request_timeout_seconds
        start = time.perf_counter()
        try:
            async with build_async_client(proxy, timeout, headers) as client:
                response = await client.get(url)
        except httpx.TimeoutException as e:
            raise FetchError(
                f"Request timed out after {timeout}s ({type(e).__name__})",
                category=ErrorCategory.TIMEOUT,
                code="TIMEOUT",
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(
                f"{type(e).__name__}: {e}",
                category=ErrorCategory.NETWORK,
                code="NETWORK_ERROR",
            ) from e

        elapsed_ms = (time.perf_counter() - start) * 1000
        if not response.is_success:
            raise FetchError(
                f"HTTP {response.status_code}",
                category=ErrorCategory.NETWORK,
                code="HTTP_ERROR",
                http_status=response.status_code,
            )

        return FetchResponse(
            url=str(response.url),
            status_code=response.status_code,
            content=response.text,
            headers=dict(response.headers),
            response_time_ms=elapsed_ms,
            proxy_id=proxy.id if proxy else None,
            proxy_used=proxy.display_name if proxy else None,
            attempts=attempts,
        )
