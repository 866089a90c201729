"""Unit tests for the EventHub.

Covers subscription management, synchronous and coroutine subscribers,
error isolation between subscribers and concurrent publishing.
"""

import asyncio
import threading
from typing import Any, List

import pytest

from risk_engine.core.event_hub import EventHub, EventHubInterface, EventType


class TestEventHubSubscriptions:
    """Test cases for subscribe, unsubscribe and publish."""

    def setup_method(self) -> None:
        self.event_hub = EventHub()
        self.received: List[Any] = []

    def _record(self, data: Any) -> None:
        self.received.append(data)

    def test_implements_interface(self) -> None:
        assert isinstance(self.event_hub, EventHubInterface)

    def test_subscriber_receives_payload(self) -> None:
        self.event_hub.subscribe(EventType.POSITION_CLOSED, self._record)

        self.event_hub.publish(EventType.POSITION_CLOSED, {"position_id": "p1"})

        assert self.received == [{"position_id": "p1"}]

    def test_only_subscribed_events_delivered(self) -> None:
        self.event_hub.subscribe(EventType.PEAK_UPDATED, self._record)

        self.event_hub.publish(EventType.CLOSE_DEFERRED, {"position_id": "p1"})
        self.event_hub.publish(EventType.PEAK_UPDATED, {"peak_pct": 2.0})

        assert self.received == [{"peak_pct": 2.0}]

    def test_duplicate_subscription_ignored(self) -> None:
        self.event_hub.subscribe(EventType.SCAN_COMPLETED, self._record)
        self.event_hub.subscribe(EventType.SCAN_COMPLETED, self._record)

        assert self.event_hub.get_subscriber_count(EventType.SCAN_COMPLETED) == 1

    def test_unsubscribe(self) -> None:
        self.event_hub.subscribe(EventType.SCAN_COMPLETED, self._record)
        self.event_hub.unsubscribe(EventType.SCAN_COMPLETED, self._record)

        self.event_hub.publish(EventType.SCAN_COMPLETED, {})

        assert self.received == []
        assert self.event_hub.get_subscriber_count(EventType.SCAN_COMPLETED) == 0

    def test_unsubscribe_unknown_callback(self) -> None:
        with pytest.raises(KeyError):
            self.event_hub.unsubscribe(EventType.SCAN_COMPLETED, self._record)

    def test_clear_subscribers(self) -> None:
        self.event_hub.subscribe(EventType.PEAK_UPDATED, self._record)
        self.event_hub.subscribe(EventType.PEAK_HEALED, self._record)

        self.event_hub.clear_subscribers(EventType.PEAK_UPDATED)
        assert self.event_hub.get_subscriber_count(EventType.PEAK_UPDATED) == 0
        assert self.event_hub.get_subscriber_count(EventType.PEAK_HEALED) == 1

        self.event_hub.clear_subscribers()
        assert self.event_hub.get_subscriber_count(EventType.PEAK_HEALED) == 0

    def test_invalid_arguments(self) -> None:
        with pytest.raises(ValueError):
            self.event_hub.subscribe("", self._record)
        with pytest.raises(TypeError):
            self.event_hub.subscribe(EventType.PEAK_UPDATED, "not callable")
        with pytest.raises(ValueError):
            self.event_hub.publish("", {})

    def test_failing_subscriber_does_not_block_others(self) -> None:
        def failing(data: Any) -> None:
            raise RuntimeError("dashboard down")

        self.event_hub.subscribe(EventType.POSITION_CLOSED, failing)
        self.event_hub.subscribe(EventType.POSITION_CLOSED, self._record)

        self.event_hub.publish(EventType.POSITION_CLOSED, {"position_id": "p1"})

        assert self.received == [{"position_id": "p1"}]


class TestEventHubAsyncSubscribers:
    """Test cases for coroutine subscribers."""

    @pytest.mark.asyncio
    async def test_coroutine_subscriber_scheduled_on_running_loop(self) -> None:
        event_hub = EventHub()
        received: List[Any] = []

        async def on_deferred(data: Any) -> None:
            received.append(data)

        event_hub.subscribe(EventType.CLOSE_DEFERRED, on_deferred)
        event_hub.publish(EventType.CLOSE_DEFERRED, {"reason": "no_fill"})
        await asyncio.sleep(0.01)

        assert received == [{"reason": "no_fill"}]

    def test_coroutine_subscriber_without_loop_runs_to_completion(self) -> None:
        event_hub = EventHub()
        received: List[Any] = []

        async def on_rejected(data: Any) -> None:
            received.append(data)

        event_hub.subscribe(EventType.CLOSE_REJECTED, on_rejected)
        event_hub.publish(EventType.CLOSE_REJECTED, {"reason": "lock_contended"})

        assert received == [{"reason": "lock_contended"}]


class TestEventHubThreadSafety:
    def test_concurrent_publications(self) -> None:
        event_hub = EventHub()
        received: List[int] = []
        lock = threading.Lock()

        def on_sized(data: Any) -> None:
            with lock:
                received.append(data["n"])

        event_hub.subscribe(EventType.POSITION_SIZED, on_sized)

        def worker(offset: int) -> None:
            for i in range(50):
                event_hub.publish(EventType.POSITION_SIZED, {"n": offset + i})

        threads = [threading.Thread(target=worker, args=(k * 100,)) for k in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(received) == 400
        assert len(set(received)) == 400
