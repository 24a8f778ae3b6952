"""Tests for the proxy health checker and background monitor."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import respx

from pricewatch.config import HealthMonitorConfig, ProxyPoolConfig
from pricewatch.models import ProxyConfiguration
from pricewatch.proxy import ProxySnapshot
from pricewatch.proxy.health import ProxyHealthChecker, ProxyHealthMonitor
from pricewatch.proxy.pool import ProxyPoolManager
from tests.helpers import load, seed_proxy

TEST_URL = "http://probe.example/ip"


def _config(**overrides) -> HealthMonitorConfig:
    values = {"test_url": TEST_URL, "timeout_seconds": 2, "concurrency": 2}
    values.update(overrides)
    return HealthMonitorConfig(**values)


class TestProxyHealthChecker:
    @pytest.mark.asyncio
    async def test_2xx_is_healthy_with_latency(self, session_factory) -> None:
        proxy = ProxySnapshot.from_row(await seed_proxy(session_factory))

        with respx.mock:
            respx.get(TEST_URL).mock(return_value=httpx.Response(200, json={"origin": "10.0.0.1"}))
            result = await ProxyHealthChecker(_config()).check(proxy)

        assert result.healthy is True
        assert result.status_code == 200
        assert result.latency_ms is not None and result.latency_ms >= 0

    @pytest.mark.asyncio
    async def test_non_2xx_is_unhealthy(self, session_factory) -> None:
        proxy = ProxySnapshot.from_row(await seed_proxy(session_factory))

        with respx.mock:
            respx.get(TEST_URL).mock(return_value=httpx.Response(407))
            result = await ProxyHealthChecker(_config()).check(proxy)

        assert result.healthy is False
        assert result.status_code == 407
        assert result.error_code == "HTTP_ERROR"

    @pytest.mark.asyncio
    async def test_timeout_is_unhealthy(self, session_factory) -> None:
        proxy = ProxySnapshot.from_row(await seed_proxy(session_factory))

        with respx.mock:
            respx.get(TEST_URL).mock(side_effect=httpx.ConnectTimeout("slow"))
            result = await ProxyHealthChecker(_config()).check(proxy)

        assert result.healthy is False
        assert result.error_code == "TIMEOUT"


class TestProxyHealthMonitor:
    @pytest.mark.asyncio
    async def test_run_once_checks_only_stale_active_proxies(self, session_factory) -> None:
        now = datetime.now(timezone.utc)
        never = await seed_proxy(session_factory, host="10.0.0.1")
        stale = await seed_proxy(session_factory, host="10.0.0.2", last_tested_at=now - timedelta(hours=2))
        fresh = await seed_proxy(session_factory, host="10.0.0.3", last_tested_at=now - timedelta(minutes=5))
        await seed_proxy(session_factory, host="10.0.0.4", is_active=False)

        pool = ProxyPoolManager(session_factory, ProxyPoolConfig())
        monitor = ProxyHealthMonitor(pool, _config(max_age_minutes=60))

        with respx.mock:
            route = respx.get(TEST_URL).mock(return_value=httpx.Response(200))
            results = await monitor.run_once()

        assert {r.proxy_id for r in results} == {never.id, stale.id}
        assert route.call_count == 2

        row = await load(session_factory, ProxyConfiguration, fresh.id)
        assert row.last_latency_ms is None

    @pytest.mark.asyncio
    async def test_passing_check_resets_consecutive_failures(self, session_factory) -> None:
        proxy = await seed_proxy(session_factory, consecutive_failures=4, is_healthy=False)
        pool = ProxyPoolManager(session_factory, ProxyPoolConfig(max_consecutive_failures=3))
        monitor = ProxyHealthMonitor(pool, _config())

        with respx.mock:
            respx.get(TEST_URL).mock(return_value=httpx.Response(200))
            await monitor.run_once()

        row = await load(session_factory, ProxyConfiguration, proxy.id)
        assert row.consecutive_failures == 0
        assert row.is_healthy is True
        assert row.last_tested_at is not None
        assert (await pool.select()).id == proxy.id

    @pytest.mark.asyncio
    async def test_failing_check_marks_unhealthy(self, session_factory) -> None:
        proxy = await seed_proxy(session_factory)
        pool = ProxyPoolManager(session_factory, ProxyPoolConfig())
        monitor = ProxyHealthMonitor(pool, _config())

        with respx.mock:
            respx.get(TEST_URL).mock(side_effect=httpx.ConnectError("refused"))
            await monitor.run_once()

        row = await load(session_factory, ProxyConfiguration, proxy.id)
        assert row.is_healthy is False
        assert row.consecutive_failures == 1
        assert row.last_error_code == "ConnectError"
        # probes do not count as traffic
        assert row.failure_count == 0

    @pytest.mark.asyncio
    async def test_disabled_monitor_returns_immediately(self, session_factory) -> None:
        pool = ProxyPoolManager(session_factory, ProxyPoolConfig())
        monitor = ProxyHealthMonitor(pool, _config(enabled=False))
        await asyncio.wait_for(monitor.run(), timeout=1)

    @pytest.mark.asyncio
    async def test_shutdown_stops_loop(self, session_factory) -> None:
        pool = ProxyPoolManager(session_factory, ProxyPoolConfig())
        monitor = ProxyHealthMonitor(pool, _config(check_interval_minutes=60))

        task = asyncio.create_task(monitor.run())
        await asyncio.sleep(0.05)
        await monitor.shutdown()
        await asyncio.wait_for(task, timeout=1)
