from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class FailedOperation:
    """
    A cache operation that could not run because its backend was unavailable.

    Carried by the ``fail`` signal so a subscriber can replay the call
    against another backend. The outcome of the replay is stored on the
    operation and read back by whoever issued the original call.
    """

    name: str
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    replayed: bool = False
    value: Any = None
    error: Optional[BaseException] = None

    def replay(self, target: Any) -> None:
        """Run the operation once against ``target`` and record the outcome."""
        if self.replayed:
            return
        self.replayed = True
        try:
            self.value = getattr(target, self.name)(*self.args, **self.kwargs)
        except Exception as e:
            self.error = e

    def result(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


class Observable:
    """
    Per-instance signal dispatch.

    Subscribers are scoped to the emitting instance and called synchronously
    in the emitting thread, in subscription order.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callable[..., Any]]] = {}
        self._subscribers_lock = threading.Lock()

    def subscribe(self, event: str, callback: Callable[..., Any]) -> None:
        with self._subscribers_lock:
            self._subscribers.setdefault(event, []).append(callback)

    def unsubscribe(self, event: str, callback: Callable[..., Any]) -> None:
        with self._subscribers_lock:
            callbacks = self._subscribers.get(event, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def emit(self, event: str, *args: Any) -> None:
        with self._subscribers_lock:
            callbacks = list(self._subscribers.get(event, []))
        for callback in callbacks:
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in {event!r} subscriber: {e}")
