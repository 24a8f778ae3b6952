"""
PriceWatch — Message Publisher

Channels are arq function names: publishing a message enqueues a job whose
function name is the channel and whose single argument is the message as
JSON-safe dict. Each channel can be routed to its own queue, so the
recorded-price channel can feed the alerting collaborator's worker.

Delivery is at-least-once. Consumers must tolerate redelivery.
"""

from __future__ import annotations

from typing import Protocol

import structlog
from arq.connections import ArqRedis
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


class MessagePublisher(Protocol):
    """Anything that can put a message on a named channel."""

    async def publish(self, channel: str, message: BaseModel) -> None: ...


class ArqMessagePublisher:
    """
    Publishes pipeline messages as arq jobs.

    Usage:
        redis = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
        publisher = ArqMessagePublisher(redis, default_queue=settings.WORKER_QUEUE_NAME)
        await publisher.publish(settings.CHANNEL_SCRAPE_COMMANDS, command)
    """

    def __init__(
        self,
        redis: ArqRedis,
        default_queue: str,
        queue_overrides: dict[str, str] | None = None,
    ) -> None:
        self.redis = redis
        self.default_queue = default_queue
        self.queue_overrides = dict(queue_overrides or {})

    def queue_for(self, channel: str) -> str:
        return self.queue_overrides.get(channel, self.default_queue)

    async def publish(self, channel: str, message: BaseModel) -> None:
        """
        Enqueue one message on a channel.

        Args:
            channel: Logical channel, registered as an arq function name.
            message: Pydantic message; serialized with model_dump(mode="json").
        """
        queue = self.queue_for(channel)
        job = await self.redis.enqueue_job(
            channel,
            message.model_dump(mode="json"),
            _queue_name=queue,
        )
        logger.debug(
            "message_published",
            channel=channel,
            queue=queue,
            message_type=type(message).__name__,
            job_id=job.job_id if job is not None else None,
            source="publisher",
        )
