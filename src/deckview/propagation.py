from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Callable

from .watcher import ChangeEvent, ChangeWatcher

logger = logging.getLogger(__name__)

Listener = Callable[[ChangeEvent], None]


class ChangeBroadcaster:
    """Fan change events out to connected clients.

    One watcher serves the whole process. It is created when the first client
    subscribes after :meth:`start` and torn down by :meth:`stop`; with
    ``watch=False`` only events passed to :meth:`publish` are delivered. Synchronous
    listeners (cache invalidation) run on the watcher thread before clients
    are notified; client queues are fed on the event loop.
    """

    def __init__(
        self,
        root: Path,
        debounce_ms: int | None = None,
        watcher_factory: Callable[..., ChangeWatcher] = ChangeWatcher,
        watch: bool = True,
    ) -> None:
        self.root = root
        self.debounce_ms = debounce_ms
        self.watch = watch
        self._watcher_factory = watcher_factory
        self._watcher: ChangeWatcher | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queues: set[asyncio.Queue[ChangeEvent | None]] = set()
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def watching(self) -> bool:
        return self._watcher is not None

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        if self._started:
            return
        self._loop = loop or asyncio.get_running_loop()
        self._started = True
        if self._queues:
            self._ensure_watcher()

    def stop(self) -> None:
        with self._lock:
            watcher = self._watcher
            self._watcher = None
            queues = list(self._queues)
            self._queues.clear()
            self._started = False
        if watcher is not None:
            watcher.stop()
        for queue in queues:
            queue.put_nowait(None)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def subscribe(self) -> asyncio.Queue[ChangeEvent | None]:
        queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        with self._lock:
            self._queues.add(queue)
        if self._started:
            self._ensure_watcher()
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ChangeEvent | None]) -> None:
        with self._lock:
            self._queues.discard(queue)

    def publish(self, event: ChangeEvent) -> None:
        """Deliver ``event``; safe to call from any thread."""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Change listener failed for %s", event)
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._deliver(event)
        else:
            loop.call_soon_threadsafe(self._deliver, event)

    def _deliver(self, event: ChangeEvent) -> None:
        with self._lock:
            queues = list(self._queues)
        for queue in queues:
            queue.put_nowait(event)

    def _ensure_watcher(self) -> None:
        if not self.watch:
            return
        with self._lock:
            if self._watcher is not None:
                return
            watcher = self._watcher_factory(self.root, self.publish, self.debounce_ms)
            self._watcher = watcher
        watcher.start()


__all__ = ["ChangeBroadcaster", "Listener"]
