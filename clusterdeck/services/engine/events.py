"""
Synchronous publish/subscribe registry used by the backends and the
cluster access client.
"""
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventRegistry:
    """
    Observer list keyed by event name.

    emit() calls subscribers synchronously, in subscription order, before
    returning; callers rely on this to notify before any teardown.
    """

    def __init__(self):
        self._callbacks: Dict[str, List[Callable]] = defaultdict(list)

    def subscribe(self, event: str, callback: Callable) -> None:
        """Subscribe to an event"""
        self._callbacks[event].append(callback)

    def unsubscribe(self, event: str, callback: Callable) -> None:
        callbacks = self._callbacks.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def clear(self, event: Optional[str] = None) -> None:
        """Drop subscribers for one event, or for all events."""
        if event is None:
            self._callbacks.clear()
        else:
            self._callbacks.pop(event, None)

    def emit(self, event: str, payload: Any) -> None:
        """Notify all subscribers of an event"""
        for callback in list(self._callbacks.get(event, [])):
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"[EVENTS] Error in {event} callback: {e}", exc_info=True)
