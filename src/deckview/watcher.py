from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, replace
from pathlib import Path, PurePath
from typing import Callable, Mapping

from watchdog.events import FileSystemEventHandler
from watchdog.observers.polling import PollingObserver

from .manifest import MANIFEST_FILENAME
from .models import HTML_SUFFIX

logger = logging.getLogger(__name__)

CONTENT_CHANGED = "content"
STRUCTURE_CHANGED = "structure"
DEFAULT_DEBOUNCE_MS = 200
DEBOUNCE_RANGE_MS = (150, 250)
DEBOUNCE_ENV = "DECKVIEW_DEBOUNCE_MS"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    kind: str
    presentation_id: str
    filename: str | None
    event_type: str

    @property
    def is_structural(self) -> bool:
        return self.kind == STRUCTURE_CHANGED

    def as_payload(self) -> dict[str, object]:
        return {
            "type": f"{self.kind}_changed",
            "presentationId": self.presentation_id,
            "filename": self.filename,
            "eventType": self.event_type,
        }


def resolve_debounce_ms(value: object = None, env: Mapping[str, str] | None = None) -> int:
    """Return the debounce window in milliseconds, clamped to the supported range.

    An explicit ``value`` wins over ``DECKVIEW_DEBOUNCE_MS``; anything that does
    not parse as an integer falls back to the default.
    """
    source = os.environ if env is None else env
    raw = value if value is not None else source.get(DEBOUNCE_ENV)
    if raw is None:
        return DEFAULT_DEBOUNCE_MS
    try:
        parsed = int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid debounce value %r", raw)
        return DEFAULT_DEBOUNCE_MS
    low, high = DEBOUNCE_RANGE_MS
    return max(low, min(high, parsed))


def classify_change(
    root: Path,
    path: str | os.PathLike[str],
    event_type: str,
    is_directory: bool = False,
) -> ChangeEvent | None:
    """Map a filesystem event under ``root`` to a change notification.

    Modifications of an existing file are content changes. Creation, deletion
    and moves are structure changes, as is any write to the manifest. Events
    outside a presentation folder, on hidden files, or plain directory
    modification notices yield ``None``.
    """
    try:
        relative = PurePath(os.fsdecode(path)).relative_to(root)
    except ValueError:
        return None
    parts = relative.parts
    if not parts or any(part.startswith(".") for part in parts):
        return None
    presentation_id = parts[0]
    if len(parts) == 1:
        if not is_directory or event_type == "modified":
            return None
        return ChangeEvent(STRUCTURE_CHANGED, presentation_id, None, event_type)
    if is_directory and event_type == "modified":
        return None
    filename = "/".join(parts[1:])
    if filename == MANIFEST_FILENAME:
        return ChangeEvent(STRUCTURE_CHANGED, presentation_id, filename, event_type)
    if event_type == "modified":
        return ChangeEvent(CONTENT_CHANGED, presentation_id, filename, event_type)
    if is_directory or filename.lower().endswith(HTML_SUFFIX):
        return ChangeEvent(STRUCTURE_CHANGED, presentation_id, filename, event_type)
    # Added or removed supporting files (images, styles) only affect rendering.
    return ChangeEvent(CONTENT_CHANGED, presentation_id, filename, event_type)


class Debouncer:
    """Collapse bursts of events per ``(presentation, filename)`` into one.

    Each new event for a key restarts that key's timer. A pending structure
    event is never downgraded by a later content event for the same key.
    """

    def __init__(
        self,
        callback: Callable[[ChangeEvent], None],
        delay_ms: int = DEFAULT_DEBOUNCE_MS,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        self.callback = callback
        self.delay = delay_ms / 1000.0
        self._timer_factory = timer_factory
        self._pending: dict[tuple[str, str | None], tuple[ChangeEvent, threading.Timer]] = {}
        self._lock = threading.Lock()

    def submit(self, event: ChangeEvent) -> None:
        key = (event.presentation_id, event.filename)
        with self._lock:
            previous = self._pending.pop(key, None)
            if previous is not None:
                earlier, timer = previous
                timer.cancel()
                if earlier.is_structural and not event.is_structural:
                    event = replace(event, kind=STRUCTURE_CHANGED)
            timer = self._timer_factory(self.delay, self._fire, args=(key,))
            timer.daemon = True
            self._pending[key] = (event, timer)
            timer.start()

    def pending(self) -> list[ChangeEvent]:
        with self._lock:
            return [event for event, _ in self._pending.values()]

    def flush(self) -> None:
        """Deliver every pending event now."""
        with self._lock:
            items = list(self._pending.values())
            self._pending.clear()
        for event, timer in items:
            timer.cancel()
            self._deliver(event)

    def cancel(self) -> None:
        with self._lock:
            items = list(self._pending.values())
            self._pending.clear()
        for _, timer in items:
            timer.cancel()

    def _fire(self, key: tuple[str, str | None]) -> None:
        with self._lock:
            item = self._pending.pop(key, None)
        if item is not None:
            self._deliver(item[0])

    def _deliver(self, event: ChangeEvent) -> None:
        try:
            self.callback(event)
        except Exception:
            logger.exception("Change callback failed for %s", event)


class PresentationEventHandler(FileSystemEventHandler):
    def __init__(self, root: Path, debouncer: Debouncer) -> None:
        self.root = root
        self.debouncer = debouncer

    def on_created(self, event) -> None:  # type: ignore[override]
        self._submit(event.src_path, "created", event.is_directory)

    def on_modified(self, event) -> None:  # type: ignore[override]
        self._submit(event.src_path, "modified", event.is_directory)

    def on_deleted(self, event) -> None:  # type: ignore[override]
        self._submit(event.src_path, "deleted", event.is_directory)

    def on_moved(self, event) -> None:  # type: ignore[override]
        self._submit(event.src_path, "moved", event.is_directory)
        self._submit(event.dest_path, "moved", event.is_directory)

    def _submit(self, path, event_type: str, is_directory: bool) -> None:
        change = classify_change(self.root, path, event_type, is_directory)
        if change is not None:
            self.debouncer.submit(change)


class ChangeWatcher:
    """Watch a presentations root and report debounced change events."""

    def __init__(
        self,
        root: Path,
        callback: Callable[[ChangeEvent], None],
        debounce_ms: int | None = None,
        observer_factory: Callable[[], PollingObserver] = PollingObserver,
    ) -> None:
        self.root = root
        self.debouncer = Debouncer(self._emit, resolve_debounce_ms(debounce_ms))
        self.handler = PresentationEventHandler(root, self.debouncer)
        self._callback = callback
        self._observer_factory = observer_factory
        self._observer: PollingObserver | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = self._observer_factory()
        observer.schedule(self.handler, str(self.root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info("Watching %s for presentation changes", self.root)

    def stop(self) -> None:
        observer = self._observer
        self._observer = None
        self.debouncer.cancel()
        if observer is not None:
            observer.stop()
            observer.join()

    def _emit(self, event: ChangeEvent) -> None:
        logger.info(
            "%s change in %s: %s (%s)",
            event.kind.capitalize(),
            event.presentation_id,
            event.filename or "<folder>",
            event.event_type,
        )
        self._callback(event)


__all__ = [
    "CONTENT_CHANGED",
    "ChangeEvent",
    "ChangeWatcher",
    "DEFAULT_DEBOUNCE_MS",
    "Debouncer",
    "PresentationEventHandler",
    "STRUCTURE_CHANGED",
    "classify_change",
    "resolve_debounce_ms",
]
