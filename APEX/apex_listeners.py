# APEX/apex_listeners.py
import threading
from typing import Callable, Tuple

from logger import get_logger
from .apex_events import CourierEvent

logger = get_logger(__name__)

Listener = Callable[[CourierEvent], None]


class ListenerRegistry:
    """
    Thread-safe set of event callbacks.

    Writers swap in a new tuple under a lock; dispatch iterates whatever tuple
    was current when it started, so listeners can (un)subscribe from any
    thread, including from inside a callback, while a dispatch is running.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: Tuple[Listener, ...] = ()

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners = self._listeners + (listener,)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners = tuple(l for l in self._listeners if l != listener)

    def unsubscribe_all(self) -> None:
        with self._lock:
            self._listeners = ()

    def dispatch(self, event: CourierEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                # One broken listener must not starve the others.
                logger.exception("Listener %r failed on %r", listener, event)
