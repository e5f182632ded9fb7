"""EventSink adapters.

Sinks receive events only after the call that produced them has committed.
Delivery is best-effort: EscrowService logs and drops sink failures.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from tiered_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

    import redis.asyncio as aioredis

    from tiered_escrow.domain.ports import DomainEvent, EventSink

logger = get_logger(__name__)


class LoggingEventSink:
    """Writes each event as a structured log line."""

    async def emit(self, event: DomainEvent) -> None:
        logger.info(
            "event.emitted",
            event_type=event.event_type.value,
            escrow_id=event.escrow_id,
            actor=event.actor,
            **event.data,
        )


class RedisEventSink:
    """Publishes each event as JSON on a Redis pub/sub channel."""

    def __init__(self, client: aioredis.Redis, channel: str) -> None:
        self._client = client
        self._channel = channel

    async def emit(self, event: DomainEvent) -> None:
        payload = json.dumps(event.to_dict(), default=str)
        receivers = await self._client.publish(self._channel, payload)
        logger.debug(
            "event.published",
            channel=self._channel,
            event_type=event.event_type.value,
            receivers=receivers,
        )


class FanOutEventSink:
    """Delivers every event to each wrapped sink, in order.

    A failing sink does not stop delivery to the ones after it.
    """

    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self._sinks = list(sinks)

    async def emit(self, event: DomainEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.emit(event)
            except Exception as exc:
                logger.warning(
                    "event.sink_failed",
                    sink=type(sink).__name__,
                    event_type=event.event_type.value,
                    error=str(exc),
                )
