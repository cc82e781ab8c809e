"""
Local change stream: watchdog bridge, change batches and the debouncer
"""
import os
import queue
import threading
import time
from enum import Enum
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..utils.blacklist import Blacklist
from ..utils.logging import vlog


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED_FROM = "renamed_from"
    RENAMED_TO = "renamed_to"


# Renames are planned as a removal of the old path plus a creation of the new one
_PLANNING_KIND = {
    ChangeKind.CREATED: ChangeKind.CREATED,
    ChangeKind.MODIFIED: ChangeKind.MODIFIED,
    ChangeKind.REMOVED: ChangeKind.REMOVED,
    ChangeKind.RENAMED_FROM: ChangeKind.REMOVED,
    ChangeKind.RENAMED_TO: ChangeKind.CREATED,
}


class ChangeEvent(NamedTuple):
    path: str
    kind: ChangeKind
    is_dir: Optional[bool] = None


def coalesce(prev: Optional[ChangeEvent], new: ChangeEvent) -> ChangeEvent:
    """
    Fold *new* into the entry already buffered for the same path.

    The latest event wins, with two refinements: a modification never
    downgrades a pending creation, and a modification after a removal means
    the path came back, so it counts as a creation.
    """
    kind = _PLANNING_KIND[new.kind]
    is_dir = new.is_dir if new.is_dir is not None else (prev.is_dir if prev else None)
    if prev is not None and kind == ChangeKind.MODIFIED:
        if prev.kind in (ChangeKind.CREATED, ChangeKind.REMOVED):
            kind = ChangeKind.CREATED
    return ChangeEvent(new.path, kind, is_dir)


class ChangeBatch:
    """One entry per path, built by folding a window of events."""

    def __init__(self, events=()):
        self._entries: Dict[str, ChangeEvent] = {}
        for event in events:
            self.add(event)

    def add(self, event: ChangeEvent):
        self._entries[event.path] = coalesce(self._entries.get(event.path), event)

    def get(self, path: str) -> Optional[ChangeEvent]:
        return self._entries.get(path)

    def __iter__(self) -> Iterator[ChangeEvent]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path) -> bool:
        return path in self._entries

    def __repr__(self) -> str:
        return f"ChangeBatch({list(self._entries.values())!r})"


class EventDebouncer:
    """
    Turns a continuous event stream into one ChangeBatch per quiet period.

    feed() may be called from any thread (the watchdog observer); events are
    stamped on arrival and queued, so they keep accumulating while a batch is
    being applied. next_batch() is the single blocking point of the steady
    state: it returns once no event has arrived for *window* seconds. Events
    separated by a gap longer than the window belong to different batches,
    even when both were queued while the caller was busy.
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic,
                 poll_interval: float = 0.2):
        self.window = max(0.0, float(window))
        self.poll_interval = poll_interval
        self._clock = clock
        self._inbox: "queue.Queue[Tuple[float, ChangeEvent]]" = queue.Queue()
        self._carry: Optional[Tuple[float, ChangeEvent]] = None

    def feed(self, event: ChangeEvent):
        self._inbox.put((self._clock(), event))

    def _take(self, timeout: float) -> Tuple[float, ChangeEvent]:
        if self._carry is not None:
            stamped, self._carry = self._carry, None
            return stamped
        return self._inbox.get(timeout=timeout)

    def next_batch(self, stop: Optional[threading.Event] = None) -> Optional[ChangeBatch]:
        """
        Block until a batch is ready and return it, or return None once
        *stop* is set. Events buffered at cancellation are not delivered.
        """
        batch = ChangeBatch()
        last_seen: Optional[float] = None
        while stop is None or not stop.is_set():
            if last_seen is None:
                timeout = self.poll_interval
            else:
                remaining = last_seen + self.window - self._clock()
                timeout = min(self.poll_interval, max(0.0, remaining))
            try:
                stamp, event = self._take(timeout)
            except queue.Empty:
                if last_seen is not None and self._clock() >= last_seen + self.window:
                    return batch
                continue
            if last_seen is not None and stamp - last_seen > self.window:
                self._carry = (stamp, event)
                return batch
            batch.add(event)
            last_seen = stamp
        return None


def translate(event: FileSystemEvent) -> List[ChangeEvent]:
    """Map one watchdog event onto zero or more ChangeEvents."""
    is_dir = bool(event.is_directory)
    src = os.fsdecode(event.src_path)
    etype = event.event_type
    if etype == "created":
        return [ChangeEvent(src, ChangeKind.CREATED, is_dir)]
    if etype == "modified":
        return [ChangeEvent(src, ChangeKind.MODIFIED, is_dir)]
    if etype == "deleted":
        return [ChangeEvent(src, ChangeKind.REMOVED, is_dir)]
    if etype == "moved":
        dest = os.fsdecode(event.dest_path)
        return [ChangeEvent(src, ChangeKind.RENAMED_FROM, is_dir),
                ChangeEvent(dest, ChangeKind.RENAMED_TO, is_dir)]
    # opened / closed / closed_no_write carry no content change
    return []


class WatchdogBridge(FileSystemEventHandler):
    """Forwards watchdog events for non-blacklisted paths under the root."""

    def __init__(self, debouncer: EventDebouncer, blacklist: Blacklist):
        super().__init__()
        self.debouncer = debouncer
        self.blacklist = blacklist

    def on_any_event(self, event):
        for change in translate(event):
            rel = self.blacklist.relative(change.path)
            if not rel:
                continue
            if self.blacklist.is_blacklisted(rel):
                vlog(f"  [IGNORE] {change.kind.value} {rel}")
                continue
            self.debouncer.feed(change)


class LocalWatcher:
    """Owns the watchdog observer for the local root."""

    def __init__(self, root, handler: FileSystemEventHandler, observer_factory=Observer):
        self.root = str(root)
        self.handler = handler
        self._observer_factory = observer_factory
        self._observer = None

    def start(self):
        observer = self._observer_factory()
        observer.schedule(self.handler, self.root, recursive=True)
        observer.start()
        self._observer = observer
        vlog(f"[watch] watching {self.root}")

    def stop(self, timeout: float = 5.0):
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout)
        self._observer = None

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()
