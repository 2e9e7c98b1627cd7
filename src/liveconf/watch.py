"""File-change notification for a single config file.

The observer watches the file's parent directory rather than the file
itself, since editors that save atomically (write a temp file, then
rename) never modify the original inode.
"""

from __future__ import annotations

import logging
import pathlib
from typing import TYPE_CHECKING

import watchdog.events
import watchdog.observers

import liveconf.errors

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("liveconf.watch")

# Opened/closed events fire on plain reads, including our own.
_CONTENT_EVENTS = frozenset(
    {
        watchdog.events.EVENT_TYPE_CREATED,
        watchdog.events.EVENT_TYPE_DELETED,
        watchdog.events.EVENT_TYPE_MODIFIED,
        watchdog.events.EVENT_TYPE_MOVED,
    }
)


class _TargetFileHandler(watchdog.events.FileSystemEventHandler):
    """Forward content events for one file name to a callback."""

    def __init__(self, target: pathlib.Path, callback: Callable[[], None]) -> None:
        super().__init__()
        self.target = target
        self.callback = callback

    def _touches_target(self, event: watchdog.events.FileSystemEvent) -> bool:
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and pathlib.Path(p).name == self.target.name for p in paths)

    def on_any_event(self, event: watchdog.events.FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _CONTENT_EVENTS:
            return
        if not self._touches_target(event):
            return
        logger.debug("%s event for %s", event.event_type, self.target)
        self.callback()


class FileWatchBridge:
    """Invoke *callback* on a background thread whenever *path* changes.

    Each bridge owns one watchdog observer, i.e. one thread per watched
    path.
    """

    def __init__(self, path: str | pathlib.Path, callback: Callable[[], None]) -> None:
        self.path = pathlib.Path(path)
        self.callback = callback
        self.observer: watchdog.observers.Observer | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Subscribe to changes.

        Raises :class:`liveconf.errors.WatchSubscriptionError` if the
        parent directory cannot be watched.
        """
        if self._running:
            logger.warning("Watcher for %s already running", self.path)
            return

        handler = _TargetFileHandler(self.path, self.callback)
        observer = watchdog.observers.Observer()
        try:
            observer.schedule(handler, str(self.path.parent.absolute()), recursive=False)
            observer.start()
        except OSError as exc:
            raise liveconf.errors.WatchSubscriptionError(self.path.absolute(), str(exc)) from exc

        self.observer = observer
        self._running = True
        logger.info("Watching %s for changes", self.path)

    def stop(self) -> None:
        """Unsubscribe and join the observer thread."""
        if not self._running or self.observer is None:
            return
        self.observer.stop()
        self.observer.join(timeout=5.0)
        self.observer = None
        self._running = False
        logger.info("Stopped watching %s", self.path)
