"""Per-directory filesystem watching backed by watchdog.

Recursive native watching is not assumed to be reliable, so every directory
gets its own non-recursive watch. Callbacks fire on watchdog's observer
thread; callers are responsible for marshalling them onto their event loop.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from apphost.utils import print_debug

# Read-only access events; reacting to them would turn our own copies of
# project files into change notifications.
_PASSIVE_EVENT_TYPES = frozenset({"opened", "closed_no_write"})


@dataclass(frozen=True)
class WatchHandle:
    """One live, non-recursive watch on a single directory."""

    directory: Path
    token: Any


class _CallbackHandler(FileSystemEventHandler):
    def __init__(self, callback: Callable[[], None]):
        super().__init__()
        self._callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _PASSIVE_EVENT_TYPES:
            return
        self._callback()


class WatchdogDirectoryWatcher:
    """Creates and closes per-directory watches on a shared observer."""

    def __init__(self) -> None:
        self._observer = Observer()
        self._observer.daemon = True
        self._started = False

    def watch(self, directory: Path, callback: Callable[[], None]) -> WatchHandle:
        """Start watching *directory* (non-recursively).

        Raises:
            OSError: If the directory cannot be watched.
        """
        if not self._started:
            self._observer.start()
            self._started = True
        token = self._observer.schedule(_CallbackHandler(callback), str(directory), recursive=False)
        return WatchHandle(directory=directory, token=token)

    def close(self, handle: WatchHandle) -> None:
        try:
            self._observer.unschedule(handle.token)
        except (KeyError, OSError) as exc:
            # The directory is usually already gone, which tears the watch down.
            print_debug("Watch already closed", directory=str(handle.directory), reason=str(exc))

    def stop(self) -> None:
        if not self._started:
            return
        self._observer.stop()
        self._observer.join(timeout=2.0)
        self._started = False
