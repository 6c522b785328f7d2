import logging
import os
import re
from pathlib import Path, PurePath
from typing import TYPE_CHECKING, Protocol

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from wcmatch import glob

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable
    from typing import Any

    from anyio.from_thread import BlockingPortal
    from watchdog.events import FileSystemEvent
    from watchdog.observers.api import BaseObserver, ObservedWatch

_log = logging.getLogger("taskcomposer.watcher")

_MAGIC = re.compile(r"[*?[{]")

CHANGE_EVENTS = frozenset(
    {EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED}
)

# `*` stays within one path segment; `**` spans any number of them, including none
GLOB_FLAGS = glob.GLOBSTAR | glob.BRACE


class WatchHandle(Protocol):
    def stop(self) -> None: ...


class Watcher(Protocol):
    """
    Source of change notifications. Implementations must invoke ``on_ready`` once
    their initial scan is done and ``on_change`` for every later change, always on
    the event loop thread.
    """

    def watch(
        self,
        pattern: str,
        on_ready: "Callable[[], None]",
        on_change: "Callable[[str], None]",
    ) -> WatchHandle: ...

    def close(self) -> None: ...


def split_pattern(pattern: str) -> tuple[Path, str | None]:
    """
    Split a glob into the directory to observe and the pattern that paths below it
    must match; ``None`` means every path matches.
    """
    parts = PurePath(pattern).parts
    root_parts: list[str] = []
    for part in parts:
        if _MAGIC.search(part):
            break
        root_parts.append(part)

    if len(root_parts) == len(parts):
        path = Path(pattern)
        if path.is_dir():
            return path, None

        return path.parent, path.name

    root = Path(*root_parts) if root_parts else Path(".")
    return root, PurePath(*parts[len(root_parts) :]).as_posix()


class _ChangeHandler(FileSystemEventHandler):
    def __init__(
        self,
        root: Path,
        pattern: str | None,
        portal: "BlockingPortal",
        on_change: "Callable[[str], None]",
    ) -> None:
        super().__init__()
        self.root = root
        self.pattern = pattern
        self._portal = portal
        self._on_change = on_change

    def matches(self, path: str) -> bool:
        if self.pattern is None:
            return True

        relative = Path(os.path.relpath(path, self.root)).as_posix()
        return glob.globmatch(relative, self.pattern, flags=GLOB_FLAGS)

    def on_any_event(self, event: "FileSystemEvent") -> None:
        if event.is_directory or event.event_type not in CHANGE_EVENTS:
            return

        paths = [event.src_path, getattr(event, "dest_path", "")]
        for path in (os.fsdecode(p) for p in paths if p):
            if self.matches(path):
                self._deliver(path)
                return

    def _deliver(self, path: str) -> None:
        try:
            self._portal.call(self._on_change, path)
        except RuntimeError:
            # the portal is already shut down; the composer is exiting
            _log.debug("Dropped change to %s after shutdown", path)


class _ObservedWatch:
    def __init__(self, observer: "BaseObserver", watch: "ObservedWatch") -> None:
        self._observer = observer
        self._watch = watch

    def stop(self) -> None:
        if self._observer.is_alive():
            self._observer.unschedule(self._watch)


class WatchdogWatcher:
    """
    ``Watcher`` backed by a watchdog observer. Events arrive on watchdog's threads
    and are handed to the event loop through ``portal``.
    """

    def __init__(
        self,
        portal: "BlockingPortal",
        *,
        recursive: bool = True,
        observer_class: "Callable[..., BaseObserver]" = Observer,
        **observer_kwargs: "Any",
    ) -> None:
        self._portal = portal
        self._recursive = recursive
        self._observer = observer_class(**observer_kwargs)

    def watch(
        self,
        pattern: str,
        on_ready: "Callable[[], None]",
        on_change: "Callable[[str], None]",
    ) -> WatchHandle:
        root, subpattern = split_pattern(pattern)
        root = root.resolve()

        handler = _ChangeHandler(root, subpattern, self._portal, on_change)
        watch = self._observer.schedule(handler, str(root), recursive=self._recursive)
        if not self._observer.is_alive():
            self._observer.start()

        _log.debug("Watching %s for %s", root, subpattern or "any change")
        # watchdog has no initial-scan signal; a scheduled watch on a live observer is ready
        on_ready()
        return _ObservedWatch(self._observer, watch)

    def close(self) -> None:
        if self._observer.is_alive():
            self._observer.stop()
            self._observer.join()
