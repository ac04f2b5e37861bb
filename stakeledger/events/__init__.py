"""
Event Bus - Domain events for the staking ledger.

This module provides:
- EventBus: Central event dispatcher
- Event: Standard event structure
- EventType: Events the staking engine emits
"""

from .bus import (
    EventBus,
    Event,
    EventType,
    EventPriority,
    EventHandler,
    get_event_bus,
    reset_event_bus,
)

__all__ = [
    "EventBus",
    "Event",
    "EventType",
    "EventPriority",
    "EventHandler",
    "get_event_bus",
    "reset_event_bus",
]
