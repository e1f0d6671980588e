"""
Event Bus - observer hooks for registry and workflow activity.

Services receive a bus through their constructor; listeners subscribe by
event name. A failing listener is logged and never affects the emitter.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventBus:
    """Async event bus for component communication."""

    def __init__(self):
        self.listeners: Dict[str, List[Callable]] = defaultdict(list)

    def subscribe(self, event_name: str, callback: Callable) -> None:
        """Subscribe to an event."""
        self.listeners[event_name].append(callback)
        logger.debug(f"Subscribed to event: {event_name}")

    def unsubscribe(self, event_name: str, callback: Callable) -> None:
        """Unsubscribe from an event."""
        if callback in self.listeners[event_name]:
            self.listeners[event_name].remove(callback)
            logger.debug(f"Unsubscribed from event: {event_name}")

    async def emit(self, event_name: str, *args: Any, **kwargs: Any) -> None:
        """Emit an event and await every listener."""
        listeners = list(self.listeners.get(event_name, []))
        if not listeners:
            return

        logger.debug(f"Emitting event: {event_name} to {len(listeners)} listeners")
        for callback in listeners:
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(*args, **kwargs)
                else:
                    callback(*args, **kwargs)
            except Exception as e:
                logger.error(f"Error in event listener for {event_name}: {e}")

    def emit_nowait(self, event_name: str, *args: Any, **kwargs: Any) -> None:
        """
        Emit an event from synchronous code.

        Plain callables run immediately; coroutine listeners are scheduled on
        the running loop, or dropped with a warning when there is none.
        """
        for callback in list(self.listeners.get(event_name, [])):
            try:
                if asyncio.iscoroutinefunction(callback):
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        logger.warning(f"No running loop for async listener of {event_name}")
                        continue
                    loop.create_task(callback(*args, **kwargs))
                else:
                    callback(*args, **kwargs)
            except Exception as e:
                logger.error(f"Error in event listener for {event_name}: {e}")
