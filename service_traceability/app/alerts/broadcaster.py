"""
Alert broadcaster for the Traceability Service.

Fans AlertEvents out to live subscribers. Each subscriber owns a bounded
queue; ``publish`` only enqueues, so a slow or broken subscriber never
delays the publisher or the other subscribers.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from shared.errors import AccessLayerException
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..records.models import AlertEvent, utcnow

AlertSink = Callable[[AlertEvent], Awaitable[Any]]

# Queued after unsubscribe so pending consumers wake up and stop
_CLOSED = object()


@dataclass(eq=False)
class SubscriptionHandle:
    """A registered subscriber."""
    subscription_id: str
    queue: asyncio.Queue
    sink: Optional[AlertSink] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    delivered: int = 0
    dropped: int = 0
    active: bool = True
    _pump_task: Optional[asyncio.Task] = field(default=None, repr=False)

    async def events(self) -> AsyncIterator[AlertEvent]:
        """Yield queued events until the subscription is closed."""
        while True:
            item = await self.queue.get()
            if item is _CLOSED:
                return
            self.delivered += 1
            yield item


class AlertBroadcaster:
    """Delivers AlertEvents to every currently registered subscriber."""

    def __init__(
        self,
        max_subscribers: int = 1000,
        queue_size: int = 100,
        metrics: Optional[MetricsCollector] = None
    ):
        self.max_subscribers = max_subscribers
        self.queue_size = queue_size
        self.metrics = metrics
        self.logger = get_logger("traceability.alerts.broadcaster")

        self.subscribers: Dict[str, SubscriptionHandle] = {}
        self.published_count = 0
        self.dropped_count = 0
        self.failed_count = 0
        self.running = False

    async def start(self):
        """Start the broadcaster."""
        self.running = True
        self.logger.info("Alert broadcaster started")

    async def stop(self):
        """Stop the broadcaster and release every subscriber."""
        self.running = False
        for handle in list(self.subscribers.values()):
            await self.unsubscribe(handle)
        self.logger.info("Alert broadcaster stopped")

    async def subscribe(
        self,
        sink: Optional[AlertSink] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SubscriptionHandle:
        """Register a subscriber.

        With a ``sink`` the broadcaster pumps queued events into it;
        otherwise consume ``handle.events()``.
        """
        if len(self.subscribers) >= self.max_subscribers:
            raise AccessLayerException(
                "SUBSCRIBER_LIMIT_EXCEEDED",
                f"Maximum subscribers ({self.max_subscribers}) exceeded"
            )

        handle = SubscriptionHandle(
            subscription_id=str(uuid.uuid4()),
            queue=asyncio.Queue(maxsize=self.queue_size),
            sink=sink,
            metadata=metadata or {}
        )
        self.subscribers[handle.subscription_id] = handle

        if sink is not None:
            handle._pump_task = asyncio.create_task(self._pump(handle))

        self._update_gauge()
        self.logger.info(
            "Alert subscriber added",
            subscription_id=handle.subscription_id,
            total_subscribers=len(self.subscribers)
        )
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle):
        """Remove a subscriber. Calling it again is a no-op."""
        if self.subscribers.pop(handle.subscription_id, None) is None:
            return

        handle.active = False
        self._close_queue(handle)

        task = handle._pump_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            # Waits for the pump without consuming a cancellation of the caller
            await asyncio.wait({task})

        self._update_gauge()
        self.logger.info(
            "Alert subscriber removed",
            subscription_id=handle.subscription_id,
            total_subscribers=len(self.subscribers)
        )

    def publish(self, event: AlertEvent) -> int:
        """Enqueue ``event`` for every subscriber registered right now.

        Never blocks and never raises; returns how many subscribers the
        event was enqueued for.
        """
        snapshot = list(self.subscribers.values())
        enqueued = 0

        for handle in snapshot:
            try:
                handle.queue.put_nowait(event)
                enqueued += 1
            except asyncio.QueueFull:
                handle.dropped += 1
                self.dropped_count += 1
                if self.metrics:
                    self.metrics.increment_counter("alert_deliveries_dropped_total")
                self.logger.warning(
                    "Alert subscriber queue full, event dropped",
                    subscription_id=handle.subscription_id,
                    trace_id=event.trace_id
                )

        self.published_count += 1
        if self.metrics:
            self.metrics.increment_counter("alert_events_published_total")

        self.logger.debug(
            "Alert event published",
            trace_id=event.trace_id,
            alert_count=len(event.alerts),
            enqueued=enqueued,
            subscribers=len(snapshot)
        )
        return enqueued

    async def _pump(self, handle: SubscriptionHandle):
        """Deliver queued events to a subscriber's sink."""
        async for event in handle.events():
            try:
                await handle.sink(event)
            except Exception as e:
                self.failed_count += 1
                self.logger.error(
                    "Failed to deliver alert to subscriber",
                    subscription_id=handle.subscription_id,
                    trace_id=event.trace_id,
                    error=str(e)
                )
                await self.unsubscribe(handle)
                return

    def _close_queue(self, handle: SubscriptionHandle):
        # Make room for the sentinel; undelivered events die with the subscriber
        while True:
            try:
                handle.queue.put_nowait(_CLOSED)
                return
            except asyncio.QueueFull:
                handle.queue.get_nowait()

    def _update_gauge(self):
        if self.metrics:
            self.metrics.set_gauge("alert_subscribers", len(self.subscribers))

    def get_stats(self) -> Dict[str, Any]:
        """Get broadcaster statistics."""
        return {
            "running": self.running,
            "subscribers": len(self.subscribers),
            "max_subscribers": self.max_subscribers,
            "queue_size": self.queue_size,
            "published": self.published_count,
            "dropped": self.dropped_count,
            "failed": self.failed_count
        }
