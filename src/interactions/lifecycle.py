# =============================================================================
# Lifecycle Manager
# =============================================================================
# Tracks timers, tasks and subscriptions created on behalf of a handler
# instance so they are released when the handler is deregistered or the
# process shuts down.
# =============================================================================

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Tracked:
    instance: Any
    timers: List[Any] = field(default_factory=list)
    subscriptions: List[Callable[[], None]] = field(default_factory=list)


class LifecycleManager:
    """
    Per-instance resource tracking.

    Timers are anything with a ``cancel()`` method (asyncio handles and
    tasks, threading timers). Subscriptions are unsubscribe callables.
    """

    def __init__(self):
        self._tracked: Dict[int, _Tracked] = {}
        self._lock = threading.Lock()

    def _record(self, instance: Any) -> _Tracked:
        key = id(instance)
        record = self._tracked.get(key)
        if record is None:
            record = _Tracked(instance=instance)
            self._tracked[key] = record
        return record

    def track_timer(self, instance: Any, timer: Any) -> Any:
        """Track a cancellable timer or task for an instance.

        Tasks and futures stop being tracked once they finish.
        """
        with self._lock:
            self._record(instance).timers.append(timer)
        if asyncio.isfuture(timer):
            timer.add_done_callback(lambda _: self._untrack(instance, timer))
        return timer

    def _untrack(self, instance: Any, timer: Any) -> None:
        with self._lock:
            record = self._tracked.get(id(instance))
            if record is not None and timer in record.timers:
                record.timers.remove(timer)

    track_task = track_timer

    def track_subscription(self, instance: Any, unsubscribe: Callable[[], None]) -> Callable[[], None]:
        """Track an unsubscribe callable for an instance."""
        with self._lock:
            self._record(instance).subscriptions.append(unsubscribe)
        return unsubscribe

    def call_later(self, instance: Any, delay: float, callback: Callable, *args,
                   loop: Optional[asyncio.AbstractEventLoop] = None) -> asyncio.TimerHandle:
        """Schedule a callback on the event loop and track the handle until it fires."""
        loop = loop or asyncio.get_running_loop()
        handle = None

        def fire():
            self._untrack(instance, handle)
            callback(*args)

        handle = loop.call_later(delay, fire)
        return self.track_timer(instance, handle)

    def subscribe(self, instance: Any, source: Any, event: str,
                  callback: Callable) -> Callable[[], None]:
        """Add a listener on ``source`` and track its removal."""
        unsubscribe = source.add_listener(event, callback)
        return self.track_subscription(instance, unsubscribe)

    def resources(self, instance: Any) -> Dict[str, int]:
        with self._lock:
            record = self._tracked.get(id(instance))
            if record is None:
                return {"timers": 0, "subscriptions": 0}
            return {"timers": len(record.timers), "subscriptions": len(record.subscriptions)}

    def is_tracked(self, instance: Any) -> bool:
        with self._lock:
            return id(instance) in self._tracked

    def dispose(self, instance: Any) -> int:
        """
        Cancel timers and remove subscriptions for an instance.

        Safe to call repeatedly; returns the number of resources released.
        """
        with self._lock:
            record = self._tracked.pop(id(instance), None)
        if record is None:
            return 0

        released = 0
        for timer in record.timers:
            try:
                timer.cancel()
                released += 1
            except Exception as e:
                logger.exception(f"Failed to cancel timer for {instance!r}: {e}")
        for unsubscribe in record.subscriptions:
            try:
                unsubscribe()
                released += 1
            except Exception as e:
                logger.exception(f"Failed to remove subscription for {instance!r}: {e}")

        logger.info(f"Disposed {released} resources for {getattr(instance, '__name__', instance)!r}")
        return released

    def dispose_all(self) -> int:
        with self._lock:
            instances = [record.instance for record in self._tracked.values()]
        return sum(self.dispose(instance) for instance in instances)
