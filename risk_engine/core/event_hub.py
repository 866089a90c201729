"""Event Hub module for event-driven communication inside the risk engine.

This module provides a centralized event hub used by the tracker, the sizer,
the exit guard and the scanner to announce state changes without holding
references to each other.
"""

import asyncio
import inspect
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from risk_engine.core.logger import get_module_logger


class EventType:
    """Event type constants for the risk engine.

    Using constants ensures subscribers and publishers agree on names.
    """

    # Peak / erosion tracking
    PEAK_UPDATED: str = "peak_updated"
    PEAK_HEALED: str = "peak_healed"
    EROSION_WARNING: str = "erosion_warning"
    EXIT_RECOMMENDED: str = "exit_recommended"

    # Exit execution
    POSITION_CLOSED: str = "position_closed"
    CLOSE_DEFERRED: str = "close_deferred"
    CLOSE_REJECTED: str = "close_rejected"
    RECONCILIATION_REQUIRED: str = "reconciliation_required"

    # Sizing
    POSITION_SIZED: str = "position_sized"
    BALANCE_UPDATED: str = "balance_updated"
    EXPOSURE_LIMIT_EXCEEDED: str = "exposure_limit_exceeded"

    # System events
    SCAN_COMPLETED: str = "scan_completed"
    SYSTEM_STARTUP: str = "system_startup"
    SYSTEM_SHUTDOWN: str = "system_shutdown"
    ERROR_OCCURRED: str = "error_occurred"


class EventHubInterface(ABC):
    """Abstract interface for event hub implementations."""

    @abstractmethod
    def subscribe(self, event_type: str, callback: Callable[[Any], None]) -> None:
        """Subscribe to an event type with a callback function."""
        pass

    @abstractmethod
    def unsubscribe(self, event_type: str, callback: Callable[[Any], None]) -> None:
        """Unsubscribe from an event type."""
        pass

    @abstractmethod
    def publish(self, event_type: str, data: Any) -> None:
        """Publish an event to all subscribers."""
        pass


class EventHub(EventHubInterface):
    """Thread-safe publish/subscribe hub.

    Subscriber failures are logged and never propagate to the publisher, so a
    broken dashboard hook cannot abort a position close.

    Attributes:
        _subscribers: Mapping of event type to callbacks
        _lock: Re-entrant lock guarding the subscriber registry
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callable[[Any], None]]] = {}
        self._lock: threading.RLock = threading.RLock()
        self._logger = get_module_logger("event_hub")

    def subscribe(self, event_type: str, callback: Callable[[Any], None]) -> None:
        """Subscribe to an event type with a callback function.

        Args:
            event_type: The type of event to subscribe to (use EventType constants)
            callback: Called with the event payload on publish

        Raises:
            ValueError: If event_type is empty or None
            TypeError: If callback is not callable
        """
        if not event_type:
            raise ValueError("Event type cannot be empty or None")

        if not callable(callback):
            raise TypeError("Callback must be callable")

        with self._lock:
            callbacks = self._subscribers.setdefault(event_type, [])
            if callback not in callbacks:
                callbacks.append(callback)

    def unsubscribe(self, event_type: str, callback: Callable[[Any], None]) -> None:
        """Unsubscribe from an event type.

        Raises:
            ValueError: If event_type is empty or None
            KeyError: If the callback is not subscribed
        """
        if not event_type:
            raise ValueError("Event type cannot be empty or None")

        with self._lock:
            if event_type not in self._subscribers:
                raise KeyError(f"No subscribers found for event type: {event_type}")

            if callback not in self._subscribers[event_type]:
                raise KeyError(
                    f"Callback not found in subscribers for event type: {event_type}"
                )

            self._subscribers[event_type].remove(callback)

            if not self._subscribers[event_type]:
                del self._subscribers[event_type]

    def publish(self, event_type: str, data: Any) -> None:
        """Publish an event to all subscribers.

        Callbacks run outside the lock. Coroutine callbacks are scheduled on the
        running loop when there is one.

        Raises:
            ValueError: If event_type is empty or None
        """
        if not event_type:
            raise ValueError("Event type cannot be empty or None")

        with self._lock:
            subscribers = self._subscribers.get(event_type, []).copy()

        for callback in subscribers:
            self._execute_callback_safely(callback, data, event_type)

    def _execute_callback_safely(
        self, callback: Callable[[Any], None], data: Any, event_type: str
    ) -> None:
        try:
            if inspect.iscoroutinefunction(callback):
                self._execute_async_callback(callback, data)
            else:
                callback(data)
        except Exception as e:
            self._logger.error(f"Error executing callback for event {event_type}: {e}")

    def _execute_async_callback(
        self, callback: Callable[[Any], Any], data: Any
    ) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(callback(data))
            return

        task = loop.create_task(callback(data))
        task.add_done_callback(self._handle_async_callback_completion)

    def _handle_async_callback_completion(self, task: asyncio.Task) -> None:
        if task.cancelled():
            self._logger.warning("Async callback was cancelled")
            return
        if task.exception() is not None:
            self._logger.error(f"Async callback failed: {task.exception()}")

    def get_subscriber_count(self, event_type: str) -> int:
        """Get the number of subscribers for a specific event type.

        Raises:
            ValueError: If event_type is empty or None
        """
        if not event_type:
            raise ValueError("Event type cannot be empty or None")

        with self._lock:
            return len(self._subscribers.get(event_type, []))

    def clear_subscribers(self, event_type: Optional[str] = None) -> None:
        """Clear subscribers for one event type, or all of them when None."""
        if event_type is not None and not event_type:
            raise ValueError("Event type cannot be empty")

        with self._lock:
            if event_type is None:
                self._subscribers.clear()
            else:
                self._subscribers.pop(event_type, None)
