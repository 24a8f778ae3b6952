"""
PriceWatch — Proxy Health Monitor

ProxyHealthChecker probes one proxy against a fixed test endpoint and
reports liveness + latency. ProxyHealthMonitor runs in the background:
every check interval it tests all active proxies whose last test is older
than the max-age window (or never happened), a bounded number at a time,
and feeds each result back through ProxyPoolManager.

A passing check resets the proxy's consecutive-failure counter, which is
the only way an excluded proxy becomes eligible again.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone

import httpx
import structlog

from pricewatch.config import HealthMonitorConfig
from pricewatch.proxy import ProxySnapshot
from pricewatch.proxy.pool import ProxyHealthResult, ProxyPoolManager
from pricewatch.proxy.transport import build_async_client
from pricewatch.repositories.proxies import ProxyRepository

logger = structlog.get_logger(__name__)


class ProxyHealthChecker:
    """Single-proxy liveness probe."""

    def __init__(self, config: HealthMonitorConfig) -> None:
        self.config = config

    async def check(self, proxy: ProxySnapshot) -> ProxyHealthResult:
        """
        GET the test URL through the proxy.

        Args:
            proxy: Proxy to probe.

        Returns:
            ProxyHealthResult; healthy only on a 2xx within the timeout.
        """
        start = time.perf_counter()
        try:
            async with build_async_client(proxy, self.config.timeout_seconds) as client:
                response = await client.get(self.config.test_url)
        except httpx.TimeoutException:
            return ProxyHealthResult(
                proxy_id=proxy.id,
                healthy=False,
                error_message=f"Health check timed out after {self.config.timeout_seconds}s",
                error_code="TIMEOUT",
            )
        except httpx.HTTPError as e:
            return ProxyHealthResult(
                proxy_id=proxy.id,
                healthy=False,
                error_message=str(e) or type(e).__name__,
                error_code=type(e).__name__,
            )

        latency_ms = (time.perf_counter() - start) * 1000
        if not response.is_success:
            return ProxyHealthResult(
                proxy_id=proxy.id,
                healthy=False,
                latency_ms=latency_ms,
                status_code=response.status_code,
                error_message=f"HTTP {response.status_code}",
                error_code="HTTP_ERROR",
            )

        return ProxyHealthResult(
            proxy_id=proxy.id,
            healthy=True,
            latency_ms=latency_ms,
            status_code=response.status_code,
        )


class ProxyHealthMonitor:
    """
    Background loop that keeps proxy health stats fresh.

    Shares the Scheduler shutdown pattern: an asyncio.Event ends the loop,
    and a failed cycle waits error_backoff_minutes instead of the full
    interval before retrying.
    """

    def __init__(
        self,
        pool: ProxyPoolManager,
        config: HealthMonitorConfig,
        checker: ProxyHealthChecker | None = None,
    ) -> None:
        self.pool = pool
        self.config = config
        self.checker = checker or ProxyHealthChecker(config)
        self._shutdown_event = asyncio.Event()

    async def shutdown(self) -> None:
        logger.info("health_monitor_shutdown_requested", source="health_monitor")
        self._shutdown_event.set()

    async def _proxies_due(self) -> list[ProxySnapshot]:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.config.max_age_minutes)
        async with self.pool.session_factory() as session:
            rows = await ProxyRepository(session).list_needing_health_check(cutoff)
        return [ProxySnapshot.from_row(row) for row in rows]

    async def run_once(self) -> list[ProxyHealthResult]:
        """
        Test every proxy due for a check, at most `concurrency` at a time.

        Returns:
            One result per proxy tested.
        """
        proxies = await self._proxies_due()
        if not proxies:
            logger.info("health_check_nothing_due", source="health_monitor")
            return []

        semaphore = asyncio.Semaphore(max(1, self.config.concurrency))

        async def _check_and_record(proxy: ProxySnapshot) -> ProxyHealthResult:
            async with semaphore:
                result = await self.checker.check(proxy)
            await self.pool.record_health_result(result)
            return result

        results = await asyncio.gather(*(_check_and_record(p) for p in proxies))
        healthy = sum(1 for r in results if r.healthy)
        logger.info(
            "health_check_cycle_complete",
            tested=len(results),
            healthy=healthy,
            unhealthy=len(results) - healthy,
            source="health_monitor",
        )
        return list(results)

    async def run(self) -> None:
        """Main loop. Runs until shutdown() or cancellation."""
        if not self.config.enabled:
            logger.info("health_monitor_disabled", source="health_monitor")
            return

        logger.info(
            "health_monitor_started",
            interval_minutes=self.config.check_interval_minutes,
            max_age_minutes=self.config.max_age_minutes,
            test_url=self.config.test_url,
            source="health_monitor",
        )

        try:
            while not self._shutdown_event.is_set():
                wait_minutes = self.config.check_interval_minutes
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error(
                        "health_check_cycle_failed",
                        error=str(e),
                        error_type=type(e).__name__,
                        source="health_monitor",
                    )
                    wait_minutes = self.config.error_backoff_minutes

                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=wait_minutes * 60)
                except asyncio.TimeoutError:
                    continue
        except asyncio.CancelledError:
            logger.info("health_monitor_cancelled", source="health_monitor")
            raise
        finally:
            logger.info("health_monitor_stopped", source="health_monitor")
