from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from redis import Redis
from redis.exceptions import RedisError

from ..config import EventStreamConfig
from ..storage.models import Operation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationStepProcessed:
    operation: Operation
    stage: str
    step: str
    duration: float
    error: Optional[str] = None


@dataclass(frozen=True)
class OperationSucceeded:
    operation: Operation


@dataclass(frozen=True)
class OperationFailed:
    operation: Operation
    error: str


Event = Union[OperationStepProcessed, OperationSucceeded, OperationFailed]


class EventSink(Protocol):
    """Fire-and-forget receiver of engine events. publish() must not block for long."""

    def publish(self, event: Event) -> None:
        ...


class PubSub:
    """
    In-process event broker.

    Handlers run synchronously on the publishing thread, in subscription
    order. A failing handler is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[type, list[Callable[[Event], None]]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Callable[[Event], None]) -> None:
        with self._lock:
            self._handlers[event_type].append(handler)

    def publish(self, event: Event) -> None:
        with self._lock:
            handlers = [
                h
                for event_type, hs in self._handlers.items()
                if isinstance(event, event_type)
                for h in hs
            ]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("event handler %r failed for %s", handler, type(event).__name__)


def event_to_fields(event: Event) -> dict[str, str]:
    """Flatten an event into Redis stream fields."""
    op = event.operation
    data: dict[str, object] = {}
    if isinstance(event, OperationStepProcessed):
        data = {
            "stage": event.stage,
            "step": event.step,
            "duration": event.duration,
            "error": event.error,
        }
    elif isinstance(event, OperationFailed):
        data = {"error": event.error}
    return {
        "event": type(event).__name__,
        "operation_id": op.id,
        "instance_id": op.instance_id,
        "type": op.type.value,
        "state": op.state.value,
        "version": str(op.version),
        "campaign_id": op.campaign_id or "",
        "description": op.description,
        "data": json.dumps(data, sort_keys=True),
    }


class RedisStreamEventSink:
    """
    Appends events to a Redis stream (XADD, approximately capped at maxlen).

    Delivery is best effort: Redis failures are logged and dropped, the
    operation's persisted state is already final by the time it is published.
    """

    def __init__(self, redis: Redis, config: EventStreamConfig) -> None:
        self.redis = redis
        self.config = config

    def publish(self, event: Event) -> None:
        try:
            self.redis.xadd(
                self.config.stream_key,
                event_to_fields(event),
                maxlen=self.config.maxlen,
                approximate=True,
            )
        except RedisError as exc:
            logger.warning(
                "failed to publish %s for operation %s to stream %s: %s",
                type(event).__name__,
                event.operation.id,
                self.config.stream_key,
                exc,
            )
