"""
Event Bus - Dispatcher for staking ledger domain events.

Enables:
- Audit trail of every committed ledger operation
- Sync and async subscribers
- Event filtering and routing
- Event history and replay
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set
import asyncio
import hashlib
import inspect
import logging

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Events emitted by the staking engine."""
    # Participant events
    STAKED = "staking.staked"
    UNSTAKED = "staking.unstaked"
    REWARD_CLAIMED = "staking.reward_claimed"
    EMERGENCY_WITHDRAW = "staking.emergency_withdraw"

    # Tier events
    TIER_ADDED = "tier.added"
    TIER_UPDATED = "tier.updated"

    # Admin events
    REWARD_RATE_UPDATED = "admin.reward_rate_updated"
    REWARD_FUNDS_DEPOSITED = "admin.reward_funds_deposited"
    PENALTIES_SWEPT = "admin.penalties_swept"
    PAUSED = "admin.paused"
    UNPAUSED = "admin.unpaused"
    ADMIN_TRANSFERRED = "admin.transferred"


class EventPriority(Enum):
    """Event priority levels."""
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


@dataclass
class Event:
    """Standard event structure."""
    type: str  # EventType value
    data: Dict[str, Any] = field(default_factory=dict)
    priority: EventPriority = EventPriority.NORMAL
    source: str = "staking_engine"
    participant: Optional[str] = None
    correlation_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default="")

    def __post_init__(self):
        if not self.id:
            self.id = self._generate_id()

    def _generate_id(self) -> str:
        """Generate unique event ID."""
        data = f"{self.type}:{self.timestamp.isoformat()}:{id(self)}"
        return hashlib.sha256(data.encode()).hexdigest()[:16]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "priority": self.priority.value,
            "source": self.source,
            "participant": self.participant,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class EventHandler:
    """Registered event handler."""
    callback: Callable
    event_types: Set[str]
    priority: EventPriority = EventPriority.NORMAL
    filter_func: Optional[Callable[[Event], bool]] = None
    name: str = ""

    def __post_init__(self):
        if not self.name:
            self.name = self.callback.__name__


class EventBus:
    """
    Event bus for the staking ledger.

    Publishing is synchronous; the staking engine publishes while holding its
    lock, so subscribers observe events in commit order.
    Coroutine handlers are scheduled on the running loop when there is one,
    otherwise run to completion before ``publish`` returns.

    Supports:
    - Sync and async handlers
    - Event filtering
    - Priority-based execution
    - Event history
    """

    def __init__(self, max_history: int = 1000):
        self._handlers: List[EventHandler] = []
        self._history: List[Event] = []
        self._max_history = max_history
        self._pending_tasks: Set[asyncio.Task] = set()

    def subscribe(
        self,
        event_types: str | EventType | List[str | EventType],
        priority: EventPriority = EventPriority.NORMAL,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable:
        """
        Decorator to subscribe a handler to event types.

        Usage:
            @bus.subscribe(EventType.STAKED)
            def handle_stake(event: Event):
                print(f"Staked: {event.data}")

            @bus.subscribe("*")
            async def audit(event: Event):
                await sink.write(event.to_dict())
        """
        def decorator(func: Callable) -> Callable:
            self.add_handler(func, event_types, priority=priority, filter_func=filter_func)
            return func

        return decorator

    def add_handler(
        self,
        callback: Callable,
        event_types: str | EventType | List[str | EventType],
        priority: EventPriority = EventPriority.NORMAL,
        filter_func: Optional[Callable[[Event], bool]] = None,
        name: str = "",
    ) -> EventHandler:
        """Register a handler without the decorator form."""
        if isinstance(event_types, (str, EventType)):
            event_types = [event_types]

        handler = EventHandler(
            callback=callback,
            event_types={t.value if isinstance(t, EventType) else t for t in event_types},
            priority=priority,
            filter_func=filter_func,
            name=name,
        )
        self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler_name: str) -> bool:
        """Unsubscribe a handler by name."""
        for i, handler in enumerate(self._handlers):
            if handler.name == handler_name:
                self._handlers.pop(i)
                return True
        return False

    def publish(self, event: Event) -> int:
        """
        Publish an event to all subscribed handlers.

        Handler failures are logged and never propagate: the operation that
        produced the event has already committed.

        Returns number of handlers that received the event.
        """
        self._add_to_history(event)

        matching = []
        for handler in self._handlers:
            if event.type in handler.event_types or "*" in handler.event_types:
                if handler.filter_func is None or handler.filter_func(event):
                    matching.append(handler)

        # Sort by priority (highest first)
        matching.sort(key=lambda h: h.priority.value, reverse=True)

        executed = 0
        for handler in matching:
            try:
                if inspect.iscoroutinefunction(handler.callback):
                    self._run_coroutine(handler.callback(event))
                else:
                    handler.callback(event)
                executed += 1
            except Exception as e:
                logger.error(f"Error in event handler {handler.name}: {e}")

        logger.debug(f"Event {event.type} delivered to {executed} handlers")
        return executed

    @staticmethod
    def build(
        event_type: str | EventType,
        data: Optional[Dict[str, Any]] = None,
        participant: Optional[str] = None,
        priority: EventPriority = EventPriority.NORMAL,
        correlation_id: Optional[str] = None,
    ) -> Event:
        """Create an event without publishing it."""
        if isinstance(event_type, EventType):
            event_type = event_type.value

        return Event(
            type=event_type,
            data=data or {},
            participant=participant,
            priority=priority,
            correlation_id=correlation_id,
        )

    def _run_coroutine(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(coro)
            return
        task = loop.create_task(coro)
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)

    def _add_to_history(self, event: Event) -> None:
        """Add event to history."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

    def get_history(
        self,
        event_types: Optional[List[str | EventType]] = None,
        participant: Optional[str] = None,
        limit: int = 100,
    ) -> List[Event]:
        """Get event history with optional filtering."""
        history = self._history

        if event_types:
            wanted = {t.value if isinstance(t, EventType) else t for t in event_types}
            history = [e for e in history if e.type in wanted]

        if participant:
            history = [e for e in history if e.participant == participant]

        return history[-limit:]

    def clear_history(self) -> None:
        """Clear event history."""
        self._history = []

    def get_stats(self) -> Dict[str, Any]:
        """Get event bus statistics."""
        event_counts = {}
        for event in self._history:
            event_counts[event.type] = event_counts.get(event.type, 0) + 1

        return {
            "total_handlers": len(self._handlers),
            "handlers": [
                {
                    "name": h.name,
                    "event_types": sorted(h.event_types),
                    "priority": h.priority.value,
                }
                for h in self._handlers
            ],
            "history_size": len(self._history),
            "event_counts": event_counts,
            "pending_tasks": len(self._pending_tasks),
        }


# Singleton instance
_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the global event bus instance."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the global event bus (used by tests)."""
    global _event_bus
    _event_bus = None
