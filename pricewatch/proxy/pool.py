"""
PriceWatch — Proxy Pool Manager

Owns the set of egress proxies used by the fetcher:

1. Caches an insertion-ordered snapshot of active proxies (default 5 min)
   and a separate aggregate stats snapshot (default 2 min).
2. select() filters out proxies at/over the consecutive-failure threshold
   and applies the configured strategy. Empty eligible set -> PoolExhausted.
3. record_success / record_failure / record_health_result increment
   counters in SQL, then publish a new snapshot tuple with that one entry
   replaced, so exclusion takes effect on the very next select().
"""

from __future__ import annotations

import asyncio
import itertools
import random
import time
import uuid
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.config import ProxyPoolConfig, ProxySelectionStrategy
from pricewatch.errors import PoolExhaustedError
from pricewatch.models.proxy_configuration import ProxyConfiguration
from pricewatch.proxy import ProxySnapshot
from pricewatch.proxy.strategies import select_with_strategy
from pricewatch.repositories.proxies import ProxyRepository

logger = structlog.get_logger(__name__)


class PoolStats(BaseModel):
    """Aggregate view of the whole pool, active or not."""

    model_config = ConfigDict(frozen=True)

    total_proxies: int
    active_proxies: int
    healthy_proxies: int
    eligible_proxies: int
    average_success_rate: float | None
    proxies_by_type: dict[str, int]
    strategy: ProxySelectionStrategy
    generated_at: datetime


class ProxyHealthResult(BaseModel):
    """Outcome of probing one proxy against the test endpoint."""

    model_config = ConfigDict(frozen=True)

    proxy_id: uuid.UUID
    healthy: bool
    latency_ms: float | None = None
    status_code: int | None = None
    error_message: str | None = None
    error_code: str | None = None


class ProxyPoolManager:
    """
    Cached proxy pool with strategy-based selection and health bookkeeping.

    Usage:
        pool = ProxyPoolManager(session_factory, settings.proxy_pool_config())
        proxy = await pool.select()
        ...
        await pool.record_success(proxy.id, latency_ms=412.0)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: ProxyPoolConfig,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_factory = session_factory
        self._config = config
        self._rng = rng or random.Random()
        self._clock = clock
        self._counter = itertools.count()
        self._load_lock = asyncio.Lock()

        self._snapshot: tuple[ProxySnapshot, ...] | None = None
        self._snapshot_loaded_at: float = 0.0
        self._stats: PoolStats | None = None
        self._stats_loaded_at: float = 0.0

    @property
    def config(self) -> ProxyPoolConfig:
        return self._config

    def reload_config(self, config: ProxyPoolConfig) -> None:
        """Swap in a new immutable config and drop cached snapshots."""
        logger.info(
            "proxy_pool_config_reloaded",
            strategy=config.selection_strategy.value,
            max_consecutive_failures=config.max_consecutive_failures,
            source="proxy_pool",
        )
        self._config = config
        self.invalidate()

    def invalidate(self) -> None:
        self._snapshot = None
        self._stats = None

    # -----------------------------------------------------------------------
    # Snapshot
    # -----------------------------------------------------------------------

    def _snapshot_expired(self) -> bool:
        age = self._clock() - self._snapshot_loaded_at
        return self._snapshot is None or age >= self._config.pool_cache_minutes * 60

    async def get_active_proxies(self) -> tuple[ProxySnapshot, ...]:
        """Return the cached active-proxy snapshot, reloading it when stale."""
        if not self._snapshot_expired():
            return self._snapshot  # type: ignore[return-value]

        async with self._load_lock:
            if self._snapshot_expired():
                await self._load_snapshot()
        return self._snapshot  # type: ignore[return-value]

    async def refresh_pool(self) -> tuple[ProxySnapshot, ...]:
        """Force a reload of the active-proxy snapshot and drop cached stats."""
        async with self._load_lock:
            await self._load_snapshot()
        self._stats = None
        return self._snapshot  # type: ignore[return-value]

    async def _load_snapshot(self) -> None:
        async with self.session_factory() as session:
            rows = await ProxyRepository(session).list_active()
        self._snapshot = tuple(ProxySnapshot.from_row(row) for row in rows)
        self._snapshot_loaded_at = self._clock()
        logger.info(
            "proxy_pool_snapshot_loaded",
            active_proxies=len(self._snapshot),
            source="proxy_pool",
        )

    def _publish_row(self, row: ProxyConfiguration | None) -> None:
        """Replace one entry in the current snapshot with a fresh row (copy-on-write)."""
        if row is None or self._snapshot is None:
            return
        updated = ProxySnapshot.from_row(row)
        current = next((p for p in self._snapshot if p.id == updated.id), None)
        # Counters only grow; a row with fewer attempts lost a race to a newer one
        if current is not None and updated.total_requests < current.total_requests:
            return
        known = current is not None
        if known and updated.is_active:
            entries = [updated if p.id == updated.id else p for p in self._snapshot]
        elif known:
            entries = [p for p in self._snapshot if p.id != updated.id]
        elif updated.is_active:
            entries = [*self._snapshot, updated]
        else:
            return
        self._snapshot = tuple(entries)
        self._stats = None

    def is_eligible(self, proxy: ProxySnapshot) -> bool:
        return proxy.is_active and proxy.consecutive_failures < self._config.max_consecutive_failures

    # -----------------------------------------------------------------------
    # Selection
    # -----------------------------------------------------------------------

    async def select(self, exclude: Iterable[uuid.UUID] = ()) -> ProxySnapshot:
        """
        Pick one eligible proxy using the configured strategy.

        Args:
            exclude: Proxy ids to avoid (already tried by the caller). Ignored
                when every eligible proxy is excluded, so a one-proxy pool can
                still be retried.

        Returns:
            The selected proxy snapshot.

        Raises:
            PoolExhaustedError: If no proxy is eligible.
        """
        snapshot = await self.get_active_proxies()
        eligible = [p for p in snapshot if self.is_eligible(p)]
        if not eligible:
            logger.warning(
                "proxy_pool_exhausted",
                active_proxies=len(snapshot),
                threshold=self._config.max_consecutive_failures,
                source="proxy_pool",
            )
            raise PoolExhaustedError(
                f"No eligible proxy among {len(snapshot)} active "
                f"(threshold {self._config.max_consecutive_failures} consecutive failures)"
            )

        excluded = set(exclude)
        candidates = [p for p in eligible if p.id not in excluded] or eligible

        proxy = select_with_strategy(
            self._config.selection_strategy,
            candidates,
            counter=self._counter,
            rng=self._rng,
        )
        logger.debug(
            "proxy_selected",
            proxy=proxy.display_name,
            proxy_id=str(proxy.id),
            strategy=self._config.selection_strategy.value,
            candidates=len(candidates),
            source="proxy_pool",
        )
        return proxy

    # -----------------------------------------------------------------------
    # Health bookkeeping
    # -----------------------------------------------------------------------

    async def record_success(self, proxy_id: uuid.UUID, latency_ms: float | None = None) -> None:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            repo = ProxyRepository(session)
            row = await repo.increment_success(proxy_id, now, latency_ms)
            await repo.save()
        self._publish_row(row)

    async def record_failure(self, proxy_id: uuid.UUID, error_message: str, error_code: str) -> None:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            repo = ProxyRepository(session)
            row = await repo.increment_failure(
                proxy_id,
                now,
                error_message,
                error_code,
                self._config.max_consecutive_failures,
            )
            await repo.save()
        self._publish_row(row)

        if row is not None and row.consecutive_failures >= self._config.max_consecutive_failures:
            logger.warning(
                "proxy_excluded",
                proxy=row.display_name,
                proxy_id=str(proxy_id),
                consecutive_failures=row.consecutive_failures,
                last_error_code=error_code,
                source="proxy_pool",
            )

    async def record_health_result(self, result: ProxyHealthResult) -> None:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            repo = ProxyRepository(session)
            if result.healthy:
                row = await repo.record_health_success(result.proxy_id, now, result.latency_ms or 0.0)
            else:
                row = await repo.record_health_failure(
                    result.proxy_id,
                    now,
                    result.error_message or "Health check failed",
                    result.error_code or "HEALTH_CHECK_FAILED",
                )
            await repo.save()
        self._publish_row(row)

    # -----------------------------------------------------------------------
    # Stats
    # -----------------------------------------------------------------------

    async def get_pool_stats(self) -> PoolStats:
        """Aggregate pool statistics, cached for stats_cache_minutes."""
        age = self._clock() - self._stats_loaded_at
        if self._stats is not None and age < self._config.stats_cache_minutes * 60:
            return self._stats

        async with self.session_factory() as session:
            rows = await ProxyRepository(session).list_all()

        snapshots = [ProxySnapshot.from_row(row) for row in rows]
        rates = [p.success_rate for p in snapshots if p.success_rate is not None]
        self._stats = PoolStats(
            total_proxies=len(snapshots),
            active_proxies=sum(1 for p in snapshots if p.is_active),
            healthy_proxies=sum(1 for p in snapshots if p.is_active and p.is_healthy),
            eligible_proxies=sum(1 for p in snapshots if self.is_eligible(p)),
            average_success_rate=(sum(rates) / len(rates) * 100) if rates else None,
            proxies_by_type=dict(Counter(p.proxy_type.value for p in snapshots)),
            strategy=self._config.selection_strategy,
            generated_at=datetime.now(timezone.utc),
        )
        self._stats_loaded_at = self._clock()
        return self._stats
