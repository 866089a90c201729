"""
Core module for risk engine infrastructure.

Contains configuration, logging, event hub, retry and locking components.
"""

from .event_hub import EventHub, EventHubInterface, EventType

__all__ = ["EventHub", "EventType", "EventHubInterface"]
