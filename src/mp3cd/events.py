"""Progress event fan-out.

Publishers never block: callback subscribers run synchronously on the
publishing thread, stream subscribers get their own unbounded queue and are
consumed by iterating a `Subscription` from any thread.
"""
from __future__ import annotations

import queue
import threading
from typing import Any, Callable, Generic, Iterator, List, Optional, TypeVar

from loguru import logger


E = TypeVar("E")

_CLOSED = object()


class Subscription(Generic[E]):
    def __init__(self, bus: "EventBus[E]") -> None:
        self._bus = bus
        self._q: "queue.Queue[Any]" = queue.Queue()
        self._closed = False

    def _push(self, event: Any) -> None:
        self._q.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[E]:
        """Next event, or None when closed or on timeout."""
        try:
            item = self._q.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._closed = True
            return None
        return item

    def drain(self) -> List[E]:
        """Everything already published, without blocking."""
        items: List[E] = []
        while True:
            try:
                item = self._q.get_nowait()
            except queue.Empty:
                return items
            if item is _CLOSED:
                self._closed = True
                return items
            items.append(item)

    def close(self) -> None:
        self._bus.unsubscribe(self)
        self._q.put(_CLOSED)

    def __iter__(self) -> Iterator[E]:
        while not self._closed:
            item = self._q.get()
            if item is _CLOSED:
                self._closed = True
                return
            yield item


class EventBus(Generic[E]):
    def __init__(self, name: str = "events") -> None:
        self.name = name
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[E], None]] = []
        self._streams: List[Subscription[E]] = []

    def subscribe(self, callback: Optional[Callable[[E], None]] = None):
        """Register a callback, or return a Subscription stream when called bare.

        Can also be used as a decorator: `@bus.subscribe`.
        """
        if callback is None:
            sub: Subscription[E] = Subscription(self)
            with self._lock:
                self._streams.append(sub)
            return sub
        with self._lock:
            self._callbacks.append(callback)
        return callback

    def unsubscribe(self, target: Any) -> None:
        with self._lock:
            if target in self._streams:
                self._streams.remove(target)
            elif target in self._callbacks:
                self._callbacks.remove(target)

    def publish(self, event: E) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
            streams = list(self._streams)
        for sub in streams:
            sub._push(event)
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("{} subscriber failed", self.name)

    def close(self) -> None:
        """End every stream subscription; callbacks are dropped."""
        with self._lock:
            streams, self._streams = self._streams, []
            self._callbacks = []
        for sub in streams:
            sub._push(_CLOSED)
