"""
Listener registration for watcher, capture and registry events.
"""

import inspect
from collections import defaultdict
from typing import Any, Callable, Dict, List

from .logger import get_logger


Listener = Callable[..., Any]


class EventEmitter:
    """
    Per-object listener registry.

    Listeners may be plain callables or coroutine functions. A failing
    listener is logged and never breaks the emitter's owner.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._events_logger = get_logger('events')

    def on(self, event: str, listener: Listener) -> Listener:
        """Register a listener for an event. Returns the listener."""
        self._listeners[event].append(listener)
        return listener

    def off(self, event: str, listener: Listener) -> None:
        """Remove a previously registered listener."""
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    async def emit(self, event: str, *args: Any) -> None:
        """Call every listener for ``event`` in registration order."""
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._events_logger.warning(f"Listener for '{event}' failed: {e}")
