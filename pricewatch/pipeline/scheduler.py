"""
PriceWatch — Orchestration Scheduler

Decides which mappings are due and dispatches scrape commands on a fixed
tick (default every 5 minutes):

1. Load active mappings with next_scrape_at <= now or NULL (batch-limited).
2. Build one ScrapeCommand per mapping from its site configuration.
3. Publish it, then lease the mapping by moving next_scrape_at forward one
   effective frequency so a slow or lost result never causes re-dispatch
   on every tick.

When the ScrapingResult comes back, next_scrape_at is recomputed:

    success:  now + frequency, last_scraped_at = now
    failure:  now + clamp(frequency × retry_factor × multiplier^(n-1),
                          tick interval, backoff max)

where n is the mapping's consecutive failure count. The first failure
retries sooner than the normal cadence; repeated failures back off
exponentially up to the cap. A mapping reaching the configured failure
limit is deactivated.
"""

from __future__ import annotations

import asyncio
import signal
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.config import OrchestrationConfig
from pricewatch.errors import MappingNotFoundError
from pricewatch.models.mapping import ProductSellerMapping
from pricewatch.models.site_configuration import SiteConfiguration
from pricewatch.pipeline.messages import (
    ScrapeCommand,
    ScrapingProfile,
    ScrapingResultEvent,
    ScrapingSelectors,
)
from pricewatch.pipeline.publisher import MessagePublisher
from pricewatch.repositories.mappings import MappingRepository

logger = structlog.get_logger(__name__)

DEFAULT_SELECTORS = ScrapingSelectors(product_name="h1", price=".price", stock=".stock")

_DURATION = TypeAdapter(timedelta)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Cadence policy
# ---------------------------------------------------------------------------

def effective_frequency(override: str | None, default_minutes: float) -> timedelta:
    """
    Scrape frequency for a mapping.

    Args:
        override: ISO-8601 duration ('PT30M') or 'HH:MM:SS'; None for default.
        default_minutes: Fallback cadence.

    Returns:
        The override when it parses to a positive duration, else the default.
    """
    default = timedelta(minutes=default_minutes)
    if not override:
        return default
    try:
        value = _DURATION.validate_python(override.strip())
    except ValidationError:
        logger.warning("mapping_frequency_override_invalid", override=override, source="scheduler")
        return default
    if value <= timedelta(0):
        return default
    return value


def failure_backoff_delay(
    frequency: timedelta,
    consecutive_failures: int,
    config: OrchestrationConfig,
) -> timedelta:
    """
    Delay before retrying a mapping after its n-th consecutive failure.

    delay = frequency × retry_factor × multiplier^(n-1), clamped to
    [tick interval, failure_backoff_max_minutes].
    """
    n = max(1, consecutive_failures)
    raw_seconds = (
        frequency.total_seconds()
        * config.failure_retry_factor
        * config.failure_backoff_multiplier ** (n - 1)
    )
    floor = config.tick_minutes * 60
    cap = max(floor, config.failure_backoff_max_minutes * 60)
    return timedelta(seconds=min(max(raw_seconds, floor), cap))


def build_command(
    mapping: ProductSellerMapping,
    site: SiteConfiguration | None,
    config: OrchestrationConfig,
    parent_run_id: uuid.UUID | None = None,
) -> ScrapeCommand:
    """Snapshot a mapping and its site configuration into a ScrapeCommand."""
    if site is not None:
        selectors = ScrapingSelectors(
            product_name=site.product_name_selector or DEFAULT_SELECTORS.product_name,
            price=site.price_selector or DEFAULT_SELECTORS.price,
            stock=site.stock_selector or DEFAULT_SELECTORS.stock,
            seller_name=site.seller_name_selector or None,
        )
        profile = ScrapingProfile(
            user_agent=site.user_agent or config.default_user_agent,
            headers={str(k): str(v) for k, v in (site.additional_headers or {}).items()},
        )
    else:
        selectors = DEFAULT_SELECTORS
        profile = ScrapingProfile(user_agent=config.default_user_agent)

    return ScrapeCommand(
        mapping_id=mapping.id,
        canonical_product_id=mapping.canonical_product_id,
        seller_name=mapping.seller_name,
        exact_product_url=mapping.exact_product_url,
        selectors=selectors,
        profile=profile,
        parent_run_id=parent_run_id,
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class OrchestrationScheduler:
    """
    Periodic dispatcher of scrape commands and consumer of scrape results.

    One tick runs at a time; each tick is bounded by tick_timeout_seconds
    so a hung database or broker call cannot stall later ticks.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: MessagePublisher,
        config: OrchestrationConfig,
        commands_channel: str,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.publisher = publisher
        self.config = config
        self.commands_channel = commands_channel
        self._clock = clock
        self._shutdown_event = asyncio.Event()
        self._tick_lock = asyncio.Lock()

    async def shutdown(self) -> None:
        """Signal graceful shutdown to the scheduler loop."""
        logger.info("scheduler_shutdown_requested", source="scheduler")
        self._shutdown_event.set()

    # -----------------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------------

    async def tick(self) -> int:
        """
        Dispatch every due mapping once.

        Returns:
            Number of commands published; 0 if another tick is in flight.
        """
        if self._tick_lock.locked():
            logger.warning("scheduler_tick_skipped_in_flight", source="scheduler")
            return 0

        async with self._tick_lock:
            return await self._dispatch_due()

    async def _dispatch_due(self) -> int:
        now = self._clock()
        dispatched = 0

        async with self.session_factory() as session:
            repo = MappingRepository(session)
            due = await repo.find_due(now, self.config.batch_size)
            if not due:
                logger.info("scheduler_no_mappings_due", source="scheduler")
                return 0

            logger.info("scheduler_mappings_due", count=len(due), source="scheduler")

            for mapping in due:
                try:
                    site = await repo.find_site_configuration(mapping.site_configuration_id)
                    command = build_command(mapping, site, self.config)
                    await self.publisher.publish(self.commands_channel, command)
                except Exception as e:
                    logger.error(
                        "scheduler_dispatch_failed",
                        mapping_id=str(mapping.id),
                        error=str(e),
                        error_type=type(e).__name__,
                        source="scheduler",
                    )
                    continue

                frequency = effective_frequency(
                    mapping.scraping_frequency_override,
                    self.config.default_frequency_minutes,
                )
                mapping.next_scrape_at = now + frequency
                await repo.save()
                dispatched += 1

        logger.info("scheduler_tick_complete", dispatched=dispatched, source="scheduler")
        return dispatched

    async def trigger_manual_scrape(self, mapping_id: uuid.UUID) -> ScrapeCommand:
        """
        Publish a command for one mapping regardless of its schedule.

        Raises:
            MappingNotFoundError: No such mapping.
        """
        async with self.session_factory() as session:
            repo = MappingRepository(session)
            mapping = await repo.find(mapping_id)
            if mapping is None:
                raise MappingNotFoundError(f"Mapping {mapping_id} not found")
            site = await repo.find_site_configuration(mapping.site_configuration_id)
            command = build_command(mapping, site, self.config)

        await self.publisher.publish(self.commands_channel, command)
        logger.info(
            "scheduler_manual_scrape_triggered",
            mapping_id=str(mapping_id),
            url=command.exact_product_url,
            source="scheduler",
        )
        return command

    # -----------------------------------------------------------------------
    # Results
    # -----------------------------------------------------------------------

    async def process_scraping_result(self, event: ScrapingResultEvent) -> ProductSellerMapping | None:
        """
        Advance a mapping's schedule after a scrape outcome.

        Args:
            event: Success or failure event from a worker.

        Returns:
            The updated mapping, or None if it no longer exists.
        """
        now = self._clock()
        async with self.session_factory() as session:
            repo = MappingRepository(session)
            mapping = await repo.find(event.mapping_id)
            if mapping is None:
                logger.warning(
                    "scheduler_result_for_unknown_mapping",
                    mapping_id=str(event.mapping_id),
                    run_id=str(event.run_id),
                    source="scheduler",
                )
                return None

            frequency = effective_frequency(
                mapping.scraping_frequency_override,
                self.config.default_frequency_minutes,
            )

            if event.was_successful:
                mapping.last_scraped_at = now
                mapping.last_scrape_status = "SUCCESS"
                mapping.last_scrape_error_code = None
                mapping.consecutive_failure_count = 0
                mapping.next_scrape_at = now + frequency
            else:
                failures = mapping.consecutive_failure_count + 1
                mapping.consecutive_failure_count = failures
                mapping.last_scrape_status = "FAILED"
                mapping.last_scrape_error_code = (event.error_code or "UNKNOWN")[:50]
                mapping.next_scrape_at = now + failure_backoff_delay(frequency, failures, self.config)

                limit = self.config.max_consecutive_failures
                if limit > 0 and failures >= limit and mapping.is_active:
                    mapping.is_active = False
                    logger.warning(
                        "scheduler_mapping_deactivated",
                        mapping_id=str(mapping.id),
                        consecutive_failures=failures,
                        last_error_code=mapping.last_scrape_error_code,
                        source="scheduler",
                    )

            await repo.save()

        logger.info(
            "scheduler_result_processed",
            mapping_id=str(event.mapping_id),
            run_id=str(event.run_id),
            success=event.was_successful,
            consecutive_failures=mapping.consecutive_failure_count,
            next_scrape_at=mapping.next_scrape_at.isoformat() if mapping.next_scrape_at else None,
            source="scheduler",
        )
        return mapping

    # -----------------------------------------------------------------------
    # Loop
    # -----------------------------------------------------------------------

    async def run(self) -> None:
        """
        Main scheduler loop. Runs indefinitely until shutdown is signaled.

        A failed or timed-out tick is logged and the next tick runs on
        schedule.
        """
        interval = self.config.tick_minutes * 60
        logger.info(
            "scheduler_started",
            tick_minutes=self.config.tick_minutes,
            default_frequency_minutes=self.config.default_frequency_minutes,
            source="scheduler",
        )

        try:
            while not self._shutdown_event.is_set():
                try:
                    await asyncio.wait_for(self.tick(), timeout=self.config.tick_timeout_seconds)
                except asyncio.TimeoutError:
                    logger.error(
                        "scheduler_tick_timed_out",
                        timeout_seconds=self.config.tick_timeout_seconds,
                        source="scheduler",
                    )
                except Exception as e:
                    logger.error(
                        "scheduler_tick_failed",
                        error=str(e),
                        error_type=type(e).__name__,
                        source="scheduler",
                    )

                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    # Expected: no shutdown signal during the wait
                    continue

        except asyncio.CancelledError:
            logger.info("scheduler_cancelled", source="scheduler")
            raise
        finally:
            logger.info("scheduler_stopped", source="scheduler")


async def run_scheduler(scheduler: OrchestrationScheduler, *background: Any) -> None:
    """
    Run the scheduler (and any background monitors) with graceful shutdown.

    Registers SIGTERM/SIGINT handlers that call shutdown() on every runner.

    Args:
        scheduler: The orchestration scheduler.
        background: Extra runners with run()/shutdown(), e.g. ProxyHealthMonitor.
    """
    runners = [scheduler, *background]

    def handle_signal(signum: int) -> None:
        logger.info("scheduler_signal_received", signal=signum, source="scheduler")
        for runner in runners:
            asyncio.create_task(runner.shutdown())

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, handle_signal, signal.SIGTERM)
        loop.add_signal_handler(signal.SIGINT, handle_signal, signal.SIGINT)
    except NotImplementedError:
        logger.warning("signal_handlers_not_supported_on_platform", source="scheduler")

    try:
        await asyncio.gather(*(runner.run() for runner in runners))
    except Exception as e:
        logger.error("scheduler_fatal_error", error=str(e), error_type=type(e).__name__, source="scheduler")
        raise
