"""
PriceWatch — Proxy Selection Strategies

Pure functions over an already-filtered, insertion-ordered candidate list.
Eligibility (active, below the consecutive-failure threshold) is decided
by ProxyPoolManager before any strategy runs.

    ROUND_ROBIN        shared counter modulo candidate count
    LEAST_USED         fewest success+failure, ties by insertion order
    BEST_SUCCESS_RATE  highest success ratio; untried proxies score 1.0,
                       ties by fewest consecutive failures then insertion
    RANDOM             uniform choice
"""

from __future__ import annotations

import itertools
import random
from collections.abc import Sequence

import structlog

from pricewatch.config import ProxySelectionStrategy
from pricewatch.proxy import ProxySnapshot

logger = structlog.get_logger(__name__)

# Untried proxies get the best possible score so they earn a fair trial.
_UNTRIED_SUCCESS_RATE: float = 1.0


def pick_round_robin(candidates: Sequence[ProxySnapshot], counter: itertools.count) -> ProxySnapshot:
    return candidates[next(counter) % len(candidates)]


def pick_least_used(candidates: Sequence[ProxySnapshot]) -> ProxySnapshot:
    # min() keeps the first of equal keys, i.e. insertion order
    return min(candidates, key=lambda p: p.total_requests)


def pick_best_success_rate(candidates: Sequence[ProxySnapshot]) -> ProxySnapshot:
    def rank(proxy: ProxySnapshot) -> tuple[float, int]:
        rate = proxy.success_rate
        score = _UNTRIED_SUCCESS_RATE if rate is None else rate
        return (-score, proxy.consecutive_failures)

    return min(candidates, key=rank)


def pick_random(candidates: Sequence[ProxySnapshot], rng: random.Random) -> ProxySnapshot:
    return rng.choice(candidates)


def select_with_strategy(
    strategy: ProxySelectionStrategy | str,
    candidates: Sequence[ProxySnapshot],
    *,
    counter: itertools.count,
    rng: random.Random,
) -> ProxySnapshot:
    """
    Apply a selection strategy to a non-empty candidate list.

    Args:
        strategy: Configured strategy. Unknown values fall back to RANDOM.
        candidates: Eligible proxies in insertion order.
        counter: Shared round-robin counter.
        rng: Random source for RANDOM.

    Returns:
        The chosen proxy.
    """
    if strategy == ProxySelectionStrategy.ROUND_ROBIN:
        return pick_round_robin(candidates, counter)
    if strategy == ProxySelectionStrategy.LEAST_USED:
        return pick_least_used(candidates)
    if strategy == ProxySelectionStrategy.BEST_SUCCESS_RATE:
        return pick_best_success_rate(candidates)
    if strategy != ProxySelectionStrategy.RANDOM:
        logger.warning("proxy_strategy_unknown", strategy=str(strategy), source="proxy_strategies")
    return pick_random(candidates, rng)
