"""
Event Bus

The client core talks to whatever sits above it (CLI, UI) through named
events: `peers`, `peer-joined`, `file-received`, ... going up and
`files-selected`, `send-text` coming down.

Callbacks may be plain functions or coroutine functions. Coroutines are
scheduled on the running loop. A failing callback is logged and never
stops the others.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

EventCallback = Callable[[Any], Any]


class EventBus:
    """Named publish/subscribe hub for one client node."""

    def __init__(self):
        self._callbacks: Dict[str, List[EventCallback]] = defaultdict(list)
        self._tasks = set()

    def on(self, event_type: str, callback: EventCallback):
        """Register a callback for an event type."""
        self._callbacks[event_type].append(callback)
        return callback

    def off(self, event_type: str, callback: EventCallback):
        """Remove a previously registered callback."""
        try:
            self._callbacks[event_type].remove(callback)
        except ValueError:
            pass

    def fire(self, event_type: str, detail: Any = None):
        """Deliver an event to every callback registered for it."""
        for callback in list(self._callbacks.get(event_type, ())):
            try:
                result = callback(detail)
            except Exception as e:
                logger.error(f"Callback error for '{event_type}': {e}", exc_info=True)
                continue

            if asyncio.iscoroutine(result):
                self._schedule(event_type, result)

    def _schedule(self, event_type: str, coro):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.error(f"Async callback for '{event_type}' dropped: no running event loop")
            return

        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Async callback error: {error}", exc_info=error)

    async def wait_for(self, event_type: str, predicate: Callable[[Any], bool] = None,
                       timeout: float = None) -> Any:
        """Wait until an event (optionally matching `predicate`) fires."""
        future = asyncio.get_running_loop().create_future()

        def _listener(detail):
            if future.done():
                return
            if predicate is None or predicate(detail):
                future.set_result(detail)

        self.on(event_type, _listener)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self.off(event_type, _listener)
