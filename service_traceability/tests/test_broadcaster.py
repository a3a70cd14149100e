"""
Unit tests for the Traceability alert broadcaster.
"""

import pytest
import asyncio
from unittest.mock import AsyncMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import AccessLayerException
from shared.metrics import MetricsCollector
from service_traceability.app.alerts.broadcaster import AlertBroadcaster
from service_traceability.app.records.models import Alert, AlertEvent, AlertKind


def make_event(trace_id="T1"):
    return AlertEvent(
        trace_id=trace_id,
        record_name="Basmati Rice",
        alerts=(Alert(AlertKind.CONTAMINATION_RISK, "Food item has a contamination risk."),)
    )


async def drain(handle, count):
    events = []
    async for event in handle.events():
        events.append(event)
        if len(events) == count:
            break
    return events


class TestAlertBroadcaster:
    """Test cases for AlertBroadcaster."""

    @pytest.fixture
    def broadcaster(self):
        return AlertBroadcaster(max_subscribers=10, queue_size=5)

    @pytest.mark.asyncio
    async def test_publish_reaches_every_subscriber(self, broadcaster):
        first = await broadcaster.subscribe()
        second = await broadcaster.subscribe()
        event = make_event()

        enqueued = broadcaster.publish(event)

        assert enqueued == 2
        assert await drain(first, 1) == [event]
        assert await drain(second, 1) == [event]

    @pytest.mark.asyncio
    async def test_unsubscribed_handle_receives_nothing(self, broadcaster):
        stays = await broadcaster.subscribe()
        leaves = await broadcaster.subscribe()
        await broadcaster.unsubscribe(leaves)

        broadcaster.publish(make_event())

        assert leaves.queue.qsize() == 1  # only the close marker
        assert [e async for e in leaves.events()] == []
        assert stays.queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_late_subscriber_misses_earlier_event(self, broadcaster):
        early = await broadcaster.subscribe()
        broadcaster.publish(make_event("T1"))
        late = await broadcaster.subscribe()
        broadcaster.publish(make_event("T2"))

        assert [e.trace_id for e in await drain(early, 2)] == ["T1", "T2"]
        assert [e.trace_id for e in await drain(late, 1)] == ["T2"]

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent(self, broadcaster):
        handle = await broadcaster.subscribe()

        await broadcaster.unsubscribe(handle)
        await broadcaster.unsubscribe(handle)

        assert handle.active is False
        assert broadcaster.subscribers == {}

    @pytest.mark.asyncio
    async def test_unsubscribe_does_not_swallow_callers_cancellation(self, broadcaster):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def lingering_sink(event):
            entered.set()
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                await release.wait()
                raise

        handle = await broadcaster.subscribe(sink=lingering_sink)
        broadcaster.publish(make_event())
        await entered.wait()

        caller = asyncio.create_task(broadcaster.unsubscribe(handle))
        await asyncio.sleep(0.01)
        caller.cancel()

        with pytest.raises(asyncio.CancelledError):
            await caller

        release.set()
        await asyncio.sleep(0.01)
        assert handle._pump_task.done()
        assert handle.subscription_id not in broadcaster.subscribers

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self, broadcaster):
        assert broadcaster.publish(make_event()) == 0
        assert broadcaster.get_stats()["published"] == 1

    @pytest.mark.asyncio
    async def test_full_queue_drops_only_for_that_subscriber(self):
        broadcaster = AlertBroadcaster(queue_size=1)
        slow = await broadcaster.subscribe()
        fast = await broadcaster.subscribe()

        broadcaster.publish(make_event("T1"))
        await drain(fast, 1)
        enqueued = broadcaster.publish(make_event("T2"))

        assert enqueued == 1
        assert slow.dropped == 1
        assert broadcaster.dropped_count == 1
        assert [e.trace_id for e in await drain(fast, 1)] == ["T2"]

    @pytest.mark.asyncio
    async def test_sink_receives_events(self, broadcaster):
        sink = AsyncMock()
        handle = await broadcaster.subscribe(sink=sink)
        event = make_event()

        broadcaster.publish(event)
        await asyncio.sleep(0.01)

        sink.assert_awaited_once_with(event)
        await broadcaster.unsubscribe(handle)

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_affect_others(self, broadcaster):
        broken = AsyncMock(side_effect=ConnectionError("socket closed"))
        healthy = AsyncMock()
        broken_handle = await broadcaster.subscribe(sink=broken)
        await broadcaster.subscribe(sink=healthy)
        event = make_event()

        enqueued = broadcaster.publish(event)
        await asyncio.sleep(0.01)

        assert enqueued == 2
        healthy.assert_awaited_once_with(event)
        assert broken_handle.subscription_id not in broadcaster.subscribers
        assert broadcaster.failed_count == 1

        # The broken subscriber is gone; later events still flow to the rest
        broadcaster.publish(make_event("T2"))
        await asyncio.sleep(0.01)
        assert healthy.await_count == 2

    @pytest.mark.asyncio
    async def test_slow_sink_does_not_block_publish(self, broadcaster):
        release = asyncio.Event()

        async def slow_sink(event):
            await release.wait()

        fast = AsyncMock()
        await broadcaster.subscribe(sink=slow_sink)
        await broadcaster.subscribe(sink=fast)

        broadcaster.publish(make_event())
        await asyncio.sleep(0.01)

        fast.assert_awaited_once()
        release.set()
        await broadcaster.stop()

    @pytest.mark.asyncio
    async def test_subscriber_limit(self):
        broadcaster = AlertBroadcaster(max_subscribers=1)
        await broadcaster.subscribe()

        with pytest.raises(AccessLayerException) as exc_info:
            await broadcaster.subscribe()

        assert exc_info.value.code == "SUBSCRIBER_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_stop_releases_all_subscribers(self, broadcaster):
        await broadcaster.start()
        handle = await broadcaster.subscribe()
        await broadcaster.subscribe(sink=AsyncMock())

        await broadcaster.stop()

        assert broadcaster.running is False
        assert broadcaster.subscribers == {}
        assert [e async for e in handle.events()] == []

    @pytest.mark.asyncio
    async def test_metrics_are_recorded(self):
        metrics = MetricsCollector("traceability")
        broadcaster = AlertBroadcaster(metrics=metrics)
        await broadcaster.subscribe()

        broadcaster.publish(make_event())

        registry = metrics.registry
        assert registry.get_sample_value("alert_events_published_total") == 1
        assert registry.get_sample_value("alert_subscribers") == 1
