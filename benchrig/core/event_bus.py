"""
In-process publish/subscribe keyed by stream name.

The bus is a fan-out registry only: it never polls. The telemetry scheduler
owns the cadence, so a stream with no subscribers is still polled and
published. Remote stream consumers register with a ``connection_id`` and are
dropped together when their connection closes; a subscriber whose transport
has closed is skipped silently at delivery time.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from benchrig.datastructures.type_aliases import (
    ConnectionId,
    DurationSeconds,
    StreamName,
    SubscriptionId,
)

from .errors import SubscriptionLimitError

DEFAULT_MAX_SUBSCRIBERS_PER_STREAM = 50

type Subscriber = Callable[[StreamName, Any], None]


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    """Opaque token returned by ``subscribe``."""

    id: SubscriptionId
    stream: StreamName


@dataclass(frozen=True, slots=True)
class Subscription:
    handle: SubscriptionHandle
    callback: Subscriber
    interval_hint: DurationSeconds = 1.0
    connection_id: ConnectionId | None = None
    is_open: Callable[[], bool] | None = None

    @property
    def stream(self) -> StreamName:
        return self.handle.stream

    def deliverable(self) -> bool:
        return self.is_open is None or self.is_open()


@dataclass(slots=True)
class EventBus:
    """Registry of subscriptions per stream with synchronous delivery."""

    max_subscribers_per_stream: int = DEFAULT_MAX_SUBSCRIBERS_PER_STREAM
    _streams: dict[StreamName, dict[SubscriptionId, Subscription]] = field(
        default_factory=dict
    )
    _ids: itertools.count = field(default_factory=lambda: itertools.count(1))
    published: int = 0

    def subscribe(
        self,
        stream: StreamName,
        callback: Subscriber,
        *,
        interval_hint: DurationSeconds = 1.0,
        connection_id: ConnectionId | None = None,
        is_open: Callable[[], bool] | None = None,
    ) -> SubscriptionHandle:
        subscribers = self._streams.setdefault(stream, {})
        if len(subscribers) >= self.max_subscribers_per_stream:
            raise SubscriptionLimitError(
                f"Stream {stream!r} already has {len(subscribers)} subscribers"
            )
        handle = SubscriptionHandle(id=next(self._ids), stream=stream)
        # dicts keep insertion order, which is the delivery order
        subscribers[handle.id] = Subscription(
            handle=handle,
            callback=callback,
            interval_hint=interval_hint,
            connection_id=connection_id,
            is_open=is_open,
        )
        logger.debug(f"[EventBus] Subscription {handle.id} added to {stream!r}")
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        subscribers = self._streams.get(handle.stream)
        if subscribers is None or subscribers.pop(handle.id, None) is None:
            return False
        if not subscribers:
            del self._streams[handle.stream]
        logger.debug(f"[EventBus] Subscription {handle.id} removed from {handle.stream!r}")
        return True

    def unsubscribe_connection(self, connection_id: ConnectionId) -> int:
        """Drop every subscription owned by a closed connection."""
        removed = 0
        for stream in list(self._streams):
            subscribers = self._streams[stream]
            for sub_id, subscription in list(subscribers.items()):
                if subscription.connection_id == connection_id:
                    del subscribers[sub_id]
                    removed += 1
            if not subscribers:
                del self._streams[stream]
        if removed:
            logger.debug(
                f"[EventBus] Removed {removed} subscriptions for connection {connection_id}"
            )
        return removed

    def publish(self, stream: StreamName, payload: Any) -> int:
        """Deliver ``payload`` to current subscribers of ``stream`` in order."""
        self.published += 1
        subscribers = self._streams.get(stream)
        if not subscribers:
            return 0

        delivered = 0
        # Copy so callbacks may unsubscribe during delivery
        for subscription in list(subscribers.values()):
            if not subscription.deliverable():
                continue
            try:
                subscription.callback(stream, payload)
            except Exception as e:
                logger.error(
                    f"[EventBus] Subscriber {subscription.handle.id} on {stream!r} failed: {e}"
                )
                continue
            delivered += 1
        return delivered

    def subscriptions(self, stream: StreamName) -> tuple[Subscription, ...]:
        return tuple(self._streams.get(stream, {}).values())

    def subscriber_count(self, stream: StreamName) -> int:
        return len(self._streams.get(stream, {}))

    @property
    def streams(self) -> tuple[StreamName, ...]:
        return tuple(self._streams)
