"""
Tests for the pipeline worker.

Validates that every command ends with a terminal run log before its
events are published, and that the arq job functions decode payloads.
"""

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from pricewatch.config import ErrorCategory, RunStatus
from pricewatch.pipeline.messages import RawPriceDataEvent, ScrapingResultEvent
from pricewatch.pipeline.run_log import RunLogService
from pricewatch.pipeline.worker import (
    ScrapeCommandHandler,
    handle_raw_price_data,
    handle_scrape_command,
    handle_scraping_result,
)
from pricewatch.scraper import ScrapeTimings, ScrapingResult
from tests.helpers import RecordingPublisher, make_command

RESULTS = "scraping.results"
RAW = "pricedata.raw"

SUCCESS = ScrapingResult(
    success=True,
    product_name="Acme Widget Pro",
    price=Decimal("1299.99"),
    price_raw="$1,299.99",
    stock_status="In Stock",
    seller_name_on_page="Acme Store",
    http_status_code=200,
    timings=ScrapeTimings(total_ms=120.0),
)


class StubRunner:
    """Stands in for ScraperRunner."""

    def __init__(
        self,
        result: ScrapingResult | None = None,
        error: Exception | None = None,
        delay: float = 0,
    ) -> None:
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    async def scrape(self, command, deadline_seconds=None) -> ScrapingResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def run_logs(session_factory, clock) -> RunLogService:
    return RunLogService(session_factory, clock=clock)


def _handler(run_logs, runner, publisher) -> ScrapeCommandHandler:
    return ScrapeCommandHandler(
        run_logs,
        runner,
        publisher,
        results_channel=RESULTS,
        raw_channel=RAW,
    )


# ---------------------------------------------------------------------------
# ScrapeCommandHandler
# ---------------------------------------------------------------------------


class TestScrapeCommandHandler:
    @pytest.mark.asyncio
    async def test_success_records_run_then_publishes(self, run_logs, publisher) -> None:
        command = make_command()
        event = await _handler(run_logs, StubRunner(SUCCESS), publisher).handle(command)

        assert event.was_successful is True
        run = await run_logs.get_run(event.run_id)
        assert run.status == RunStatus.SUCCESS
        assert run.extracted_price == Decimal("1299.99")

        assert publisher.on(RESULTS) == [event]
        [raw] = publisher.on(RAW)
        assert isinstance(raw, RawPriceDataEvent)
        assert raw.mapping_id == command.mapping_id
        assert raw.canonical_product_id == command.canonical_product_id
        assert raw.seller_name == "Acme Store"
        assert raw.scraped_price == Decimal("1299.99")
        assert raw.run_id == event.run_id

    @pytest.mark.asyncio
    async def test_failed_scrape_records_error_and_skips_raw(self, run_logs, publisher) -> None:
        result = ScrapingResult(
            success=False,
            error_code="HTTP_ERROR",
            error_message="HTTP 503",
            error_category=ErrorCategory.NETWORK,
            http_status_code=503,
        )
        event = await _handler(run_logs, StubRunner(result), publisher).handle(make_command())

        assert event.was_successful is False
        assert event.error_code == "HTTP_ERROR"
        run = await run_logs.get_run(event.run_id)
        assert run.status == RunStatus.FAILED
        assert run.http_status_code == 503
        assert publisher.on(RAW) == []

    @pytest.mark.asyncio
    async def test_deadline_failure_is_timeout_status(self, run_logs, publisher) -> None:
        result = ScrapingResult(
            success=False,
            error_code="DEADLINE_EXCEEDED",
            error_message="Scrape exceeded 30s deadline",
            error_category=ErrorCategory.TIMEOUT,
        )
        event = await _handler(run_logs, StubRunner(result), publisher).handle(make_command())

        run = await run_logs.get_run(event.run_id)
        assert run.status == RunStatus.TIMEOUT
        assert event.error_category == ErrorCategory.TIMEOUT

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_handler_exception(self, run_logs, publisher) -> None:
        runner = StubRunner(error=RuntimeError("selector engine exploded"))
        event = await _handler(run_logs, runner, publisher).handle(make_command())

        assert event.was_successful is False
        assert event.error_category == ErrorCategory.HANDLER_EXCEPTION
        run = await run_logs.get_run(event.run_id)
        assert run.status == RunStatus.FAILED
        assert run.error_category == "HANDLER_EXCEPTION"
        assert "RuntimeError" in run.error_message
        assert "RuntimeError" in run.error_stack_trace
        assert publisher.on(RESULTS) == [event]

    @pytest.mark.asyncio
    async def test_publish_failure_after_success_keeps_run(self, run_logs) -> None:
        publisher = RecordingPublisher(fail_on={RAW})
        command = make_command()
        event = await _handler(run_logs, StubRunner(SUCCESS), publisher).handle(command)

        assert event is None
        run = await run_logs.get_latest_run_for_mapping(command.mapping_id)
        assert run.status == RunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_publish_failure_after_failed_scrape_keeps_original_error(self, run_logs) -> None:
        publisher = RecordingPublisher(fail_on={RESULTS})
        result = ScrapingResult(
            success=False,
            error_code="HTTP_ERROR",
            error_message="HTTP 502",
            error_category=ErrorCategory.NETWORK,
            http_status_code=502,
        )
        command = make_command()
        event = await _handler(run_logs, StubRunner(result), publisher).handle(command)

        assert event is None
        run = await run_logs.get_latest_run_for_mapping(command.mapping_id)
        assert run.status == RunStatus.FAILED
        assert run.error_code == "HTTP_ERROR"
        assert run.error_category == "NETWORK"
        assert run.error_stack_trace is None
        assert publisher.published == []

    @pytest.mark.asyncio
    async def test_cancellation_marks_run_cancelled(self, run_logs, publisher) -> None:
        command = make_command()
        task = asyncio.create_task(_handler(run_logs, StubRunner(SUCCESS, delay=5), publisher).handle(command))
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        run = await run_logs.get_latest_run_for_mapping(command.mapping_id)
        assert run.status == RunStatus.CANCELLED
        assert publisher.published == []

    @pytest.mark.asyncio
    async def test_retry_links_to_last_failed_run(self, run_logs, publisher, clock) -> None:
        command = make_command()
        failed = ScrapingResult(
            success=False,
            error_code="HTTP_ERROR",
            error_message="HTTP 500",
            error_category=ErrorCategory.NETWORK,
        )
        first = await _handler(run_logs, StubRunner(failed), publisher).handle(command)
        clock.advance(minutes=15)
        second = await _handler(run_logs, StubRunner(SUCCESS), publisher).handle(command)
        clock.advance(minutes=60)
        third = await _handler(run_logs, StubRunner(SUCCESS), publisher).handle(command)

        retry = await run_logs.get_run(second.run_id)
        assert retry.parent_run_id == first.run_id
        assert retry.attempt_number == 2

        fresh = await run_logs.get_run(third.run_id)
        assert fresh.parent_run_id is None
        assert fresh.attempt_number == 1

    @pytest.mark.asyncio
    async def test_explicit_parent_wins(self, run_logs, publisher) -> None:
        original = await run_logs.create(make_command())
        command = make_command(parent_run_id=original.run_id)

        event = await _handler(run_logs, StubRunner(SUCCESS), publisher).handle(command)

        run = await run_logs.get_run(event.run_id)
        assert run.parent_run_id == original.run_id


# ---------------------------------------------------------------------------
# arq job functions
# ---------------------------------------------------------------------------


class TestJobFunctions:
    @pytest.mark.asyncio
    async def test_scrape_command_job_decodes_payload(self, run_logs, publisher) -> None:
        ctx = {"scrape_handler": _handler(run_logs, StubRunner(SUCCESS), publisher)}
        payload = make_command().model_dump(mode="json")

        assert await handle_scrape_command(ctx, payload) is True
        assert len(publisher.on(RESULTS)) == 1

    @pytest.mark.asyncio
    async def test_raw_price_job_reports_processing_error(self) -> None:
        payload = RawPriceDataEvent(
            mapping_id=uuid.uuid4(),
            canonical_product_id=uuid.uuid4(),
            seller_name="Acme Store",
            scraped_price=Decimal("19.99"),
            source_url="https://shop.example/widget",
        ).model_dump(mode="json")

        processor = MagicMock()
        processor.process = AsyncMock(side_effect=ConnectionError("database unavailable"))

        assert await handle_raw_price_data({"price_processor": processor}, payload) is False

    @pytest.mark.asyncio
    async def test_result_job_forwards_to_scheduler(self) -> None:
        scheduler = MagicMock()
        scheduler.process_scraping_result = AsyncMock()
        event = ScrapingResultEvent(mapping_id=uuid.uuid4(), run_id=uuid.uuid4(), was_successful=True)

        await handle_scraping_result({"scheduler": scheduler}, event.model_dump(mode="json"))

        scheduler.process_scraping_result.assert_awaited_once_with(event)
