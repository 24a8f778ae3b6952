"""
Tests for ProxyPoolManager.

Validates eligibility filtering, strategy application, exclusion on the
consecutive-failure threshold, copy-on-write snapshots, and pool stats.
"""

from __future__ import annotations

import asyncio

import pytest

from pricewatch.config import ProxyPoolConfig, ProxySelectionStrategy, ProxyType
from pricewatch.errors import PoolExhaustedError
from pricewatch.models import ProxyConfiguration
from pricewatch.proxy.pool import ProxyHealthResult, ProxyPoolManager
from tests.helpers import load, seed_proxy


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def _pool(session_factory, **config) -> ProxyPoolManager:
    return ProxyPoolManager(session_factory, ProxyPoolConfig(**config), clock=FakeMonotonic())


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class TestSelect:
    @pytest.mark.asyncio
    async def test_round_robin_visits_every_proxy(self, session_factory) -> None:
        a = await seed_proxy(session_factory, host="10.0.0.1")
        b = await seed_proxy(session_factory, host="10.0.0.2")
        pool = _pool(session_factory, selection_strategy=ProxySelectionStrategy.ROUND_ROBIN)

        picks = [(await pool.select()).id for _ in range(4)]

        assert set(picks) == {a.id, b.id}
        assert picks[0] == picks[2] and picks[1] == picks[3]

    @pytest.mark.asyncio
    async def test_inactive_proxy_never_selected(self, session_factory) -> None:
        await seed_proxy(session_factory, host="10.0.0.9", is_active=False)
        active = await seed_proxy(session_factory, host="10.0.0.1")
        pool = _pool(session_factory)

        for _ in range(3):
            assert (await pool.select()).id == active.id

    @pytest.mark.asyncio
    async def test_empty_pool_raises_pool_exhausted(self, session_factory) -> None:
        pool = _pool(session_factory)
        with pytest.raises(PoolExhaustedError) as exc_info:
            await pool.select()
        assert exc_info.value.code == "POOL_EXHAUSTED"

    @pytest.mark.asyncio
    async def test_exclude_prefers_untried_proxy(self, session_factory) -> None:
        a = await seed_proxy(session_factory, host="10.0.0.1")
        b = await seed_proxy(session_factory, host="10.0.0.2")
        pool = _pool(session_factory, selection_strategy=ProxySelectionStrategy.LEAST_USED)

        assert (await pool.select(exclude=[a.id])).id == b.id
        assert (await pool.select(exclude=[b.id])).id == a.id

    @pytest.mark.asyncio
    async def test_exclude_everything_falls_back_to_eligible(self, session_factory) -> None:
        only = await seed_proxy(session_factory)
        pool = _pool(session_factory)
        assert (await pool.select(exclude=[only.id])).id == only.id

    @pytest.mark.asyncio
    async def test_best_success_rate_prefers_untried(self, session_factory) -> None:
        await seed_proxy(session_factory, host="10.0.0.1", success_count=5, failure_count=5)
        fresh = await seed_proxy(session_factory, host="10.0.0.2")
        pool = _pool(session_factory, selection_strategy=ProxySelectionStrategy.BEST_SUCCESS_RATE)
        assert (await pool.select()).id == fresh.id


# ---------------------------------------------------------------------------
# Health bookkeeping
# ---------------------------------------------------------------------------


class TestRecordOutcome:
    @pytest.mark.asyncio
    async def test_threshold_failures_exclude_proxy_on_next_select(self, session_factory) -> None:
        proxy = await seed_proxy(session_factory)
        pool = _pool(session_factory, max_consecutive_failures=3)
        await pool.select()

        for _ in range(3):
            await pool.record_failure(proxy.id, "connect refused", "NETWORK_ERROR")

        with pytest.raises(PoolExhaustedError):
            await pool.select()

        row = await load(session_factory, ProxyConfiguration, proxy.id)
        assert row.failure_count == 3
        assert row.consecutive_failures == 3
        assert row.is_healthy is False
        assert row.last_error_code == "NETWORK_ERROR"

    @pytest.mark.asyncio
    async def test_below_threshold_still_eligible(self, session_factory) -> None:
        proxy = await seed_proxy(session_factory)
        pool = _pool(session_factory, max_consecutive_failures=3)

        await pool.record_failure(proxy.id, "timeout", "TIMEOUT")
        await pool.record_failure(proxy.id, "timeout", "TIMEOUT")

        assert (await pool.select()).id == proxy.id

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, session_factory) -> None:
        proxy = await seed_proxy(session_factory)
        pool = _pool(session_factory)

        await pool.record_failure(proxy.id, "timeout", "TIMEOUT")
        await pool.record_failure(proxy.id, "timeout", "TIMEOUT")
        await pool.record_success(proxy.id, latency_ms=120.0)

        row = await load(session_factory, ProxyConfiguration, proxy.id)
        assert row.consecutive_failures == 0
        assert row.success_count == 1
        assert row.failure_count == 2
        assert row.last_latency_ms == pytest.approx(120.0)

    @pytest.mark.asyncio
    async def test_health_success_reinstates_excluded_proxy(self, session_factory) -> None:
        proxy = await seed_proxy(session_factory, consecutive_failures=5, is_healthy=False)
        pool = _pool(session_factory, max_consecutive_failures=3)

        with pytest.raises(PoolExhaustedError):
            await pool.select()

        await pool.record_health_result(
            ProxyHealthResult(proxy_id=proxy.id, healthy=True, latency_ms=80.0, status_code=200)
        )

        assert (await pool.select()).id == proxy.id
        row = await load(session_factory, ProxyConfiguration, proxy.id)
        assert row.is_healthy is True
        assert row.last_tested_at is not None

    @pytest.mark.asyncio
    async def test_snapshot_is_replaced_not_mutated(self, session_factory) -> None:
        proxy = await seed_proxy(session_factory)
        pool = _pool(session_factory)

        before = await pool.get_active_proxies()
        await pool.record_failure(proxy.id, "timeout", "TIMEOUT")
        after = await pool.get_active_proxies()

        assert before is not after
        assert before[0].consecutive_failures == 0
        assert after[0].consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_concurrent_failures_all_counted(self, session_factory) -> None:
        proxy = await seed_proxy(session_factory)
        pool = _pool(session_factory, max_consecutive_failures=50)
        await pool.get_active_proxies()

        await asyncio.gather(
            *(pool.record_failure(proxy.id, "connect refused", "NETWORK_ERROR") for _ in range(10))
        )

        row = await load(session_factory, ProxyConfiguration, proxy.id)
        assert row.failure_count == 10
        assert row.consecutive_failures == 10
        [entry] = await pool.get_active_proxies()
        assert entry.failure_count == row.failure_count
        assert entry.consecutive_failures == row.consecutive_failures

    @pytest.mark.asyncio
    async def test_concurrent_mixed_outcomes_all_counted(self, session_factory) -> None:
        proxy = await seed_proxy(session_factory)
        pool = _pool(session_factory, max_consecutive_failures=50)
        await pool.get_active_proxies()

        outcomes = []
        for _ in range(5):
            outcomes.append(pool.record_success(proxy.id, latency_ms=50.0))
            outcomes.append(pool.record_failure(proxy.id, "timeout", "TIMEOUT"))
        await asyncio.gather(*outcomes)

        row = await load(session_factory, ProxyConfiguration, proxy.id)
        assert row.success_count == 5
        assert row.failure_count == 5
        [entry] = await pool.get_active_proxies()
        assert entry.total_requests == 10


# ---------------------------------------------------------------------------
# Caching & stats
# ---------------------------------------------------------------------------


class TestSnapshotCache:
    @pytest.mark.asyncio
    async def test_new_rows_visible_after_refresh(self, session_factory) -> None:
        await seed_proxy(session_factory, host="10.0.0.1")
        pool = _pool(session_factory)
        assert len(await pool.get_active_proxies()) == 1

        await seed_proxy(session_factory, host="10.0.0.2")
        assert len(await pool.get_active_proxies()) == 1

        assert len(await pool.refresh_pool()) == 2

    @pytest.mark.asyncio
    async def test_cache_expires_after_pool_cache_minutes(self, session_factory) -> None:
        await seed_proxy(session_factory, host="10.0.0.1")
        clock = FakeMonotonic()
        pool = ProxyPoolManager(session_factory, ProxyPoolConfig(pool_cache_minutes=5), clock=clock)
        await pool.get_active_proxies()

        await seed_proxy(session_factory, host="10.0.0.2")
        clock.value += 5 * 60

        assert len(await pool.get_active_proxies()) == 2


class TestPoolStats:
    @pytest.mark.asyncio
    async def test_aggregates(self, session_factory) -> None:
        await seed_proxy(session_factory, host="10.0.0.1", success_count=3, failure_count=1)
        await seed_proxy(session_factory, host="10.0.0.2", proxy_type=ProxyType.SOCKS5)
        await seed_proxy(session_factory, host="10.0.0.3", is_active=False, success_count=1, failure_count=1)
        await seed_proxy(session_factory, host="10.0.0.4", consecutive_failures=4)
        pool = _pool(session_factory, max_consecutive_failures=3)

        stats = await pool.get_pool_stats()

        assert stats.total_proxies == 4
        assert stats.active_proxies == 3
        assert stats.eligible_proxies == 2
        assert stats.proxies_by_type == {"HTTP": 3, "SOCKS5": 1}
        # (0.75 + 0.5) / 2; untried proxies are not averaged in
        assert stats.average_success_rate == pytest.approx(62.5)
