"""Event bus implementation for decoupled event handling."""

import logging
from enum import Enum
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import Set

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Standardized event types for the runtime."""

    # Task events
    TASK_CREATED = "task_created"
    TASK_DO_NOW = "task_do_now"
    TASK_UPDATED = "task_updated"

    # Agent events
    AGENT_UPDATED = "agent_updated"

    # Run events
    RUN_STARTED = "run_started"
    RUN_FINISHED = "run_finished"

    # Agent-to-agent delivery
    A2A_MESSAGE_DELIVERED = "a2a_message_delivered"


class EventBus:
    """Central event bus for publishing and subscribing to events."""

    def __init__(self):
        """Initialize an empty event bus."""
        self._subscribers: Dict[EventType, Set[Callable[[Dict[str, Any]], Awaitable[None]]]] = {}

    async def publish(self, event_type: EventType, data: Dict[str, Any]) -> None:
        """Publish an event to all subscribers.

        Handler failures are logged and never reach the publisher.
        """
        if event_type not in self._subscribers:
            return

        logger.debug(f"Publishing event {event_type} with data: {data}")

        for callback in list(self._subscribers[event_type]):
            try:
                await callback(data)
            except Exception as e:
                logger.error(f"Error in event handler for {event_type}: {str(e)}")

    def subscribe(self, event_type: EventType, callback: Callable[[Dict[str, Any]], Awaitable[None]]) -> None:
        if event_type not in self._subscribers:
            self._subscribers[event_type] = set()

        self._subscribers[event_type].add(callback)
        logger.debug(f"Added subscriber for event {event_type}")

    def unsubscribe(self, event_type: EventType, callback: Callable[[Dict[str, Any]], Awaitable[None]]) -> None:
        if event_type in self._subscribers:
            self._subscribers[event_type].discard(callback)
            logger.debug(f"Removed subscriber for event {event_type}")

            # Clean up empty subscriber sets
            if not self._subscribers[event_type]:
                del self._subscribers[event_type]


# Global event bus instance
event_bus = EventBus()
