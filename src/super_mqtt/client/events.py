"""
Event Relay: multicast notification channels.

Each `EventChannel` keeps an ordered list of observers. `emit` calls every
one of them; an observer that raises is logged and reported to the channel's
`on_observer_error` hook, and the remaining observers still run.
"""
import logging
import threading
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)

Observer = Callable[..., None]


class ObserverHandle:
    """Returned by `EventChannel.register`; call `unregister()` to stop receiving events."""

    def __init__(self, channel: "EventChannel", observer: Observer):
        self._channel = channel
        self._observer = observer
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unregister(self):
        if self._active:
            self._active = False
            self._channel.unregister(self._observer)

    def __enter__(self) -> "ObserverHandle":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.unregister()


class EventChannel:
    name: str
    _observers: List[Observer]
    _lock: threading.Lock
    _on_observer_error: Optional[Callable[[BaseException], None]]

    def __init__(self, name: str, on_observer_error: Optional[Callable[[BaseException], None]] = None):
        self.name = name
        self._observers = []
        self._lock = threading.Lock()
        self._on_observer_error = on_observer_error

    def register(self, observer: Observer) -> ObserverHandle:
        if not callable(observer):
            raise TypeError(f"Observer for '{self.name}' must be callable, got {observer!r}")
        with self._lock:
            self._observers.append(observer)
        return ObserverHandle(self, observer)

    def unregister(self, observer: Observer) -> bool:
        """Removes one registration of `observer`. Returns False if it was not registered."""
        with self._lock:
            try:
                self._observers.remove(observer)
            except ValueError:
                return False
        return True

    def __len__(self) -> int:
        return len(self._observers)

    def emit(self, *args: Any):
        # Snapshot so observers may (un)register while we iterate
        with self._lock:
            observers = list(self._observers)

        for observer in observers:
            try:
                observer(*args)
            except Exception as e:
                logger.error(f"Observer {observer!r} on '{self.name}' raised: {e!r}")
                self._report(e)

    def _report(self, error: BaseException):
        if self._on_observer_error is None:
            return
        try:
            self._on_observer_error(error)
        except Exception:
            # Nowhere left to send it
            logger.exception(f"Error while reporting an observer failure on '{self.name}'")
