"""
PriceWatch — Application Entrypoint

Initializes the async SQLAlchemy engine, configures structlog, connects to
the arq broker, and runs the orchestration scheduler alongside the proxy
health monitor. Scrape commands are executed by separate worker processes:

    python -m pricewatch.main                          # scheduler + health monitor
    arq pricewatch.pipeline.worker.WorkerSettings      # workers
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any

import structlog
from arq import create_pool
from arq.connections import RedisSettings
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricewatch import __version__
from pricewatch.config import settings
from pricewatch.pipeline.publisher import ArqMessagePublisher
from pricewatch.pipeline.scheduler import OrchestrationScheduler, run_scheduler
from pricewatch.proxy.health import ProxyHealthMonitor
from pricewatch.proxy.pool import ProxyPoolManager


# ---------------------------------------------------------------------------
# Structlog Configuration
# ---------------------------------------------------------------------------


def _configure_logging(log_level: str = "INFO") -> None:
    """
    Set up structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    # stdlib logging carries SQLAlchemy / httpx / arq output
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Database Setup
# ---------------------------------------------------------------------------


async def create_db_engine(database_url: str | None = None) -> tuple[Any, async_sessionmaker[AsyncSession]]:
    """
    Create SQLAlchemy async engine and session factory.

    Args:
        database_url: Override for settings.DATABASE_URL.

    Returns:
        (engine, session_factory) tuple.
    """
    logger = structlog.get_logger(__name__)
    url = database_url or settings.DATABASE_URL

    logger.info("database_engine_initializing", dialect=url.split(":", 1)[0])

    engine = create_async_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info("database_engine_ready")
    return engine, session_factory


# ---------------------------------------------------------------------------
# Application Startup
# ---------------------------------------------------------------------------


async def main() -> None:
    """
    Application entrypoint.

    Execution order:
    1. Configure logging (structlog JSON)
    2. Create async database engine and session factory
    3. Verify database connection (health check)
    4. Connect to the arq broker
    5. Run scheduler + proxy health monitor until a shutdown signal
    """
    _configure_logging(log_level=settings.LOG_LEVEL)
    logger = structlog.get_logger(__name__)

    logger.info("pricewatch_startup_begin", version=__version__)

    try:
        engine, session_factory = await create_db_engine()
    except Exception as e:
        logger.error(
            "database_engine_creation_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise

    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        logger.info("database_health_check_passed")
    except Exception as e:
        logger.error(
            "database_health_check_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        await engine.dispose()
        raise

    try:
        redis = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
    except Exception as e:
        logger.error(
            "broker_connection_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        await engine.dispose()
        raise

    publisher = ArqMessagePublisher(
        redis,
        default_queue=settings.WORKER_QUEUE_NAME,
        queue_overrides={settings.CHANNEL_PRICEDATA_RECORDED: settings.ALERTS_QUEUE_NAME},
    )
    pool = ProxyPoolManager(session_factory, settings.proxy_pool_config())
    monitor = ProxyHealthMonitor(pool, settings.health_monitor_config())
    scheduler = OrchestrationScheduler(
        session_factory,
        publisher,
        settings.orchestration_config(),
        settings.CHANNEL_SCRAPE_COMMANDS,
    )

    logger.info(
        "pricewatch_startup_complete",
        proxy_pool_enabled=settings.PROXY_POOL_ENABLED,
        proxy_strategy=settings.PROXY_SELECTION_STRATEGY.value,
        health_check_enabled=settings.HEALTH_CHECK_ENABLED,
        tick_minutes=settings.ORCHESTRATION_TICK_MINUTES,
    )

    try:
        await run_scheduler(scheduler, monitor)
    except KeyboardInterrupt:
        logger.info("pricewatch_interrupted_by_user")
    except Exception as e:
        logger.error(
            "pricewatch_fatal_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        await redis.aclose()
        await engine.dispose()
        logger.info("pricewatch_shutdown_complete")


# ---------------------------------------------------------------------------
# CLI Entry
# ---------------------------------------------------------------------------


if __name__ == "__main__":
    asyncio.run(main())
