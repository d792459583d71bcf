"""
Directory watch loop implementation using watchdog.

Responsibility:
    This module is solely responsible for observing one mailbox directory,
    collecting content-modification notifications and handing them upward as
    classified :class:`WatchEvent` batches. It never reads or writes mailbox
    files; that is the dispatcher's job.

Design:
    - **Event-Driven**: A `watchdog` observer thread pushes notifications into
      a :class:`WatchKey`. The consuming thread blocks in :meth:`DirectoryWatchLoop.take`
      without a timeout, so an idle mailbox costs no CPU.
    - **Key Protocol**: A key is signalled onto the loop's queue once. Further
      notifications accumulate on it until the consumer polls and explicitly
      calls :meth:`WatchKey.reset`. A key that is never reset never wakes the
      consumer again.
    - **Grace Delay**: After each wake-up the loop sleeps briefly before
      polling so a writer's truncate-then-write lands in one batch.
    - **Coalescing**: Each file name appears at most once per batch.

Key Invariants:
    - Only modifications of non-directory entries are observed. Creation and
      deletion are not registered; peers are expected to pre-create mailbox
      files (on Linux a write into a new file still reports a modification).
    - Names not ending in ``watch``, ``form`` or ``other`` never reach the dispatcher.
    - When more distinct entries pile up than ``max_pending_events``, the
      excess is dropped and a single OVERFLOW event is reported instead.
"""

from __future__ import annotations

import enum
import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from formswatch.mailbox import WATCHED_SUFFIXES

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["DirectoryWatchLoop", "EventKind", "WatchEvent", "WatchKey", "is_watched_name"]


class EventKind(enum.Enum):
    MODIFIED = "modified"
    OVERFLOW = "overflow"


@dataclass(frozen=True)
class WatchEvent:
    """A classified change in the watch directory.

    Attributes:
        kind (EventKind): MODIFIED, or OVERFLOW when changes were lost.
        path (Path): The affected entry. For OVERFLOW, the first entry that was dropped.
    """

    kind: EventKind
    path: Path

    @property
    def name(self) -> str:
        return self.path.name


def is_watched_name(name: str) -> bool:
    """Return True if ``name`` ends in one of the recognized suffixes."""
    return bool(name) and name.endswith(WATCHED_SUFFIXES)


class WatchKey:
    """Accumulate notifications for one registered directory.

    The key is either READY (waiting for the first notification) or
    SIGNALLED (queued for, or held by, the consumer). Notifications that
    arrive while SIGNALLED are kept and returned by the next poll.

    Attributes:
        watch_dir (Path): The registered directory.
        max_pending (int): Distinct entries kept before overflow.
    """

    __slots__ = ("watch_dir", "max_pending", "_queue", "_lock", "_pending", "_overflow", "_signalled", "_valid")

    def __init__(self, watch_dir: Path, signal_queue: "queue.Queue[WatchKey]", max_pending: int = 256) -> None:
        self.watch_dir = watch_dir
        self.max_pending = max_pending
        self._queue = signal_queue
        self._lock = threading.Lock()
        self._pending: Dict[str, WatchEvent] = {}
        self._overflow: Optional[WatchEvent] = None
        self._signalled = False
        self._valid = True

    @property
    def valid(self) -> bool:
        return self._valid

    def signal_event(self, name: str) -> None:
        """Record a modification of ``name`` (called from the observer thread).

        Args:
            name (str): The entry name inside ``watch_dir``.

        Returns:
            None
        """
        with self._lock:
            if not self._valid:
                return
            if name not in self._pending:
                if len(self._pending) >= self.max_pending:
                    if self._overflow is None:
                        self._overflow = WatchEvent(EventKind.OVERFLOW, self.watch_dir / name)
                        logger.debug(f"More than {self.max_pending} pending entries in {self.watch_dir}, dropping {name}")
                else:
                    self._pending[name] = WatchEvent(EventKind.MODIFIED, self.watch_dir / name)
            if not self._signalled:
                self._signalled = True
                self._queue.put(self)

    def poll_events(self) -> List[WatchEvent]:
        """Remove and return all pending events, overflow last.

        Returns:
            List[WatchEvent]: One event per changed entry since the last poll.
        """
        with self._lock:
            events = list(self._pending.values())
            self._pending.clear()
            if self._overflow is not None:
                events.append(self._overflow)
                self._overflow = None
            return events

    def reset(self) -> bool:
        """Re-arm the key after a batch has been processed.

        If notifications arrived since the last poll, the key is queued again
        straight away.

        Returns:
            bool: False if the key has been cancelled.
        """
        with self._lock:
            if not self._valid:
                return False
            if self._signalled:
                if self._pending or self._overflow is not None:
                    self._queue.put(self)
                else:
                    self._signalled = False
            return True

    def cancel(self) -> None:
        with self._lock:
            self._valid = False
            self._pending.clear()
            self._overflow = None

    def __repr__(self) -> str:
        return f"<WatchKey dir={self.watch_dir} signalled={self._signalled} valid={self._valid}>"


class MailboxEventHandler(FileSystemEventHandler):
    """Forward watchdog modification events of plain files to a :class:`WatchKey`.

    Created, deleted and moved events are deliberately not handled.
    """

    def __init__(self, key: WatchKey) -> None:
        super().__init__()
        self.key = key

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle file modification events.

        Args:
            event (FileSystemEvent): The event; ``src_path`` names the modified entry.

        Returns:
            None
        """
        if event.is_directory:
            return
        name = os.path.basename(os.fsdecode(event.src_path))
        if name:
            self.key.signal_event(name)


class DirectoryWatchLoop:
    """Watch one mailbox directory and yield classified event batches.

    Usage from the worker thread::

        loop = DirectoryWatchLoop(watch_dir, grace_delay=0.1)
        loop.register()
        try:
            while running:
                for event in loop.next_batch():
                    ...
                loop.reset()
        finally:
            loop.close()

    Attributes:
        watch_dir (Path): The directory being watched.
        grace_delay (float): Seconds slept after a wake-up before polling.
        max_pending_events (int): Overflow threshold handed to the key.
        key (Optional[WatchKey]): The active key, once registered.
    """

    def __init__(
        self,
        watch_dir: Union[str, Path],
        grace_delay: float = 0.1,
        max_pending_events: int = 256,
        logger: Optional[logging.Logger] = None,
        observer_factory: Optional[Callable[[], Observer]] = None,
    ) -> None:
        self.watch_dir = Path(watch_dir).absolute()
        self.grace_delay = grace_delay
        self.max_pending_events = max_pending_events
        self.logger = logger or logging.getLogger(__name__)
        self._observer_factory = observer_factory or Observer
        self._queue: "queue.Queue[WatchKey]" = queue.Queue()
        self._observer: Optional[Observer] = None
        self.key: Optional[WatchKey] = None

    def register(self) -> WatchKey:
        """Start an observer on the directory and return its key.

        Returns:
            WatchKey: The new key.

        Raises:
            FileNotFoundError: If the directory does not exist.
            OSError: If the OS facility refuses the watch (e.g. inotify limits).
            RuntimeError: If the observer thread cannot be started.
        """
        if not self.watch_dir.is_dir():
            raise FileNotFoundError(f"Watch directory not found: {self.watch_dir}")

        key = WatchKey(self.watch_dir, self._queue, self.max_pending_events)
        observer = self._observer_factory()
        # recursive=False: peer directories under the same root are not ours.
        observer.schedule(MailboxEventHandler(key), str(self.watch_dir), recursive=False)
        observer.start()

        self._observer = observer
        self.key = key
        self.logger.info(f"Watching {self.watch_dir} ({type(observer).__name__})")
        return key

    def take(self, timeout: Optional[float] = None) -> WatchKey:
        """Block until the key is signalled. The watcher never passes a timeout.

        Raises:
            queue.Empty: If ``timeout`` is given and expires.
        """
        return self._queue.get(timeout=timeout)

    def next_batch(self, timeout: Optional[float] = None) -> List[WatchEvent]:
        """Block for the next wake-up and return its eligible events.

        OVERFLOW events are always returned. MODIFIED events are returned only
        for names passing :func:`is_watched_name`.

        Args:
            timeout (Optional[float]): Give up after this long and return an empty batch.

        Returns:
            List[WatchEvent]: The batch, possibly empty.
        """
        try:
            key = self.take(timeout)
        except queue.Empty:
            return []
        if self.grace_delay > 0:
            time.sleep(self.grace_delay)

        batch: List[WatchEvent] = []
        for event in key.poll_events():
            if event.kind is EventKind.OVERFLOW:
                self.logger.warning(f"File event overflow in {self.watch_dir}")
                batch.append(event)
            elif is_watched_name(event.name):
                batch.append(event)
            elif self.logger.isEnabledFor(logging.DEBUG):
                self.logger.debug(f"Ignoring {event.name}")
        return batch

    def reset(self) -> bool:
        """Re-arm the key after a processed batch."""
        if self.key is None:
            return False
        return self.key.reset()

    def close(self) -> None:
        """Cancel the key and stop the observer thread."""
        if self.key is not None:
            self.key.cancel()
        observer = self._observer
        self._observer = None
        if observer is not None:
            try:
                observer.stop()
                observer.join(timeout=5.0)
                if observer.is_alive():
                    self.logger.warning("Observer thread did not terminate within timeout.")
            except Exception as e:
                self.logger.error(f"Error stopping observer: {e}")
        self.logger.debug(f"Watch closed: {self.watch_dir}")

    def __enter__(self) -> "DirectoryWatchLoop":
        self.register()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<DirectoryWatchLoop dir={self.watch_dir} registered={self.key is not None}>"
