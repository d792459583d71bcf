"""
Watcher lifecycle state machine.

Responsibility:
    Own one watch session and its single worker thread, and expose
    ``start``/``request_stop``/``resume``/``kill`` as thread-safe transitions.

States::

    IDLE --start--> RUNNING --sentinel observed--> PAUSED --resume--> RUNNING
                       |                              |
                       +------------kill--------------+--> KILLED (terminal)

Concurrency:
    - One ``threading.Condition`` guards every piece of shared state (state,
      pending stop, in-flight stop sentinel writes, parked/watching flags)
      and carries every wait/notify, so a notification cannot be lost
      between a check and a wait.
    - The worker blocks in exactly two places: waiting for a filesystem
      notification and parked on the condition while PAUSED. The first is
      released by writing the sentinel file, the second by ``resume`` or
      ``kill``. Neither wait has a timeout. A resumed worker also waits for
      in-flight stop sentinel writes before it registers a new watch.
    - Bridge callbacks and sentinel writes never run while the condition is held.

Failure semantics:
    Transitions never raise. A failed sentinel write is logged and the
    transition proceeds anyway; in that case a worker blocked on the
    directory stays blocked until something else modifies a file there.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from formswatch.bridge import MessageBridge
from formswatch.config import WatchContext, default_config
from formswatch.dispatcher import Dispatcher
from formswatch.mailbox import MailboxKind, MailboxWriter
from formswatch.watcher import DirectoryWatchLoop

__all__ = ["LifecycleState", "WatchSession", "WatcherStateMachine"]

THREAD_PREFIX = "FormsWatcher"


class LifecycleState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    KILLED = "killed"


@dataclass
class WatchSession:
    """The watched channel of one state machine.

    Attributes:
        subdir (str): The subdirectory name.
        watch_dir (Path): ``<base_dir>/formswatch/<subdir>``.
        state (LifecycleState): Mirror of the owning machine's state.
    """

    subdir: str
    watch_dir: Path
    state: LifecycleState = LifecycleState.IDLE


class _Outcome(enum.Enum):
    SHUTDOWN = "shutdown"  # sentinel observed
    STOPPED = "stopped"  # left because of a transition
    FAILED = "failed"  # registration or loop failure


class WatcherStateMachine:
    """Run a mailbox watcher on a dedicated background thread.

    Attributes:
        context (WatchContext): Process-wide configuration.
        bridge (MessageBridge): Receiver of inbound messages.
        writer (MailboxWriter): Used for the sentinel and for outbound sends.
        dispatcher (Dispatcher): Routes classified events to the bridge.

    Example:
        >>> machine = WatcherStateMachine(LoggingBridge())
        >>> machine.start("forms")
        True
        >>> machine.request_stop()   # worker pauses once it sees the sentinel
        True
        >>> machine.resume()
        True
        >>> machine.kill(timeout=5.0)
        True
    """

    def __init__(
        self,
        bridge: MessageBridge,
        context: Optional[WatchContext] = None,
        writer: Optional[MailboxWriter] = None,
        loop_factory: Optional[Callable[..., DirectoryWatchLoop]] = None,
    ) -> None:
        self.context = context or WatchContext(default_config())
        self.bridge = bridge
        self.logger = self.context.child_logger("service")
        self.writer = writer or MailboxWriter(self.context, logger=self.context.child_logger("mailbox"))
        self.dispatcher = Dispatcher(bridge, logger=self.context.child_logger("dispatcher"))
        self._loop_factory = loop_factory or DirectoryWatchLoop

        self._cond = threading.Condition()
        self._state = LifecycleState.IDLE
        self._session: Optional[WatchSession] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_pending = False
        self._parked = False
        self._watching = False
        self._sentinel_writes = 0

    # --- read-only views -------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        with self._cond:
            return self._state

    @property
    def session(self) -> Optional[WatchSession]:
        with self._cond:
            return self._session

    @property
    def thread(self) -> Optional[threading.Thread]:
        """The worker thread; non-None exactly while RUNNING or PAUSED."""
        with self._cond:
            return self._thread

    def wait_for_state(self, *states: LifecycleState, timeout: Optional[float] = None) -> bool:
        """Block until the machine is in one of ``states``.

        Returns:
            bool: False if the timeout expired first.
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._state in states, timeout)

    def wait_until_watching(self, timeout: Optional[float] = None) -> bool:
        """Block until the worker has registered its directory watch.

        Returns:
            bool: False if the timeout expired first.
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._watching, timeout)

    # --- transitions -----------------------------------------------------

    def start(self, subdir: Optional[str] = None) -> bool:
        """Start watching ``subdir``, or resume if a worker already exists.

        A blank ``subdir`` falls back to the configured default. The watch
        directory is created before the worker is spawned.

        Args:
            subdir (Optional[str]): The subdirectory below ``formswatch``.

        Returns:
            bool: True if a worker was spawned or resumed.
        """
        with self._cond:
            if self._state is LifecycleState.KILLED:
                self.logger.warning("start() ignored: watcher has been killed")
                return False
            if self._thread is not None:
                self.logger.debug("Watcher thread exists, resuming instead of starting")
                return self._resume_locked()

            name = (subdir or "").strip() or self.context.config.subdir
            session = WatchSession(name, self.writer.watch_dir_for(name))
            self.writer.ensure_directory(session.watch_dir)

            self._session = session
            self._stop_pending = False
            self._set_state(LifecycleState.RUNNING)
            thread = threading.Thread(target=self._run, args=(session,), name=f"{THREAD_PREFIX}-{name}", daemon=True)
            self._thread = thread
            thread.start()
            self.logger.info(f"Watcher started for {session.watch_dir}")
            return True

    def request_stop(self) -> bool:
        """Ask a RUNNING worker to pause.

        Marks the stop as pending and makes sure the sentinel is written after
        the worker's watch is registered: here if the worker is already
        watching, otherwise by the worker right after registration. The worker
        moves itself to PAUSED only once it has observed the sentinel.

        Returns:
            bool: False if the machine was not RUNNING.
        """
        with self._cond:
            if self._state is not LifecycleState.RUNNING or self._session is None:
                self.logger.debug(f"request_stop() ignored in state {self._state.name}")
                return False
            self._stop_pending = True
            watch_dir = self._session.watch_dir
            write_now = self._watching
            if write_now:
                self._sentinel_writes += 1
            self._cond.notify_all()

        if write_now:
            self._write_stop_sentinel(watch_dir)
        return True

    def resume(self) -> bool:
        """Move a parked worker from PAUSED back to RUNNING.

        The worker re-enters the watch sequence from scratch (directory
        creation, new observer).

        Returns:
            bool: False (no-op) unless the worker was parked.
        """
        with self._cond:
            return self._resume_locked()

    def kill(self, timeout: Optional[float] = None) -> bool:
        """Terminate the worker. KILLED is terminal.

        Args:
            timeout (Optional[float]): If given, wait up to this long for the
                worker thread to finish (skipped when called from the worker).

        Returns:
            bool: False if the machine was neither RUNNING nor PAUSED.
        """
        with self._cond:
            if self._state not in (LifecycleState.RUNNING, LifecycleState.PAUSED) or self._session is None:
                self.logger.debug(f"kill() ignored in state {self._state.name}")
                return False
            thread = self._thread
            watch_dir = self._session.watch_dir
            self._set_state(LifecycleState.KILLED)
            self._thread = None
            self._cond.notify_all()

        self.writer.write_sentinel(watch_dir)
        self.logger.info(f"Watcher killed for {watch_dir}")

        if timeout is not None and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                self.logger.warning("Watcher thread did not terminate within timeout.")
        return True

    def send(self, kind: Union[str, MailboxKind], peer_subdir: Optional[str], raw_value: str) -> None:
        """Write ``raw_value`` (``peer|payload``) into a peer mailbox. Fire-and-forget."""
        self.writer.send(kind, peer_subdir, raw_value)

    # --- internals -------------------------------------------------------

    def _set_state(self, state: LifecycleState) -> None:
        # caller holds self._cond
        self._state = state
        if self._session is not None:
            self._session.state = state
        self._cond.notify_all()

    def _resume_locked(self) -> bool:
        if self._state is LifecycleState.PAUSED and self._parked:
            self.logger.debug("Resuming watcher thread")
            self._stop_pending = False
            self._set_state(LifecycleState.RUNNING)
            return True
        self.logger.debug(f"resume() ignored in state {self._state.name}")
        return False

    def _write_stop_sentinel(self, watch_dir: Path) -> None:
        # caller incremented self._sentinel_writes under the condition
        try:
            if not self.writer.write_sentinel(watch_dir):
                self.logger.warning("Stop requested but sentinel could not be written; worker may stay blocked")
        finally:
            with self._cond:
                self._sentinel_writes -= 1
                self._cond.notify_all()

    def _run(self, session: WatchSession) -> None:
        while True:
            outcome = self._watch_once(session)
            if outcome is _Outcome.SHUTDOWN:
                self.dispatcher.notify_shutdown()

            with self._cond:
                if self._state is LifecycleState.KILLED:
                    break

                if outcome is _Outcome.FAILED and not self._stop_pending:
                    # Retry the whole registration; kill or stop cut the wait short.
                    self._cond.wait(self.context.config.retry_delay)
                    if self._state is LifecycleState.KILLED:
                        break
                    if not self._stop_pending:
                        continue

                self._stop_pending = False
                self._set_state(LifecycleState.PAUSED)
                self._parked = True
                self.logger.info(f"Watcher paused for {session.watch_dir}")
                while self._state is LifecycleState.PAUSED:
                    self._cond.wait()
                self._parked = False
                # A stop sentinel still being written must not reach the next watch.
                while self._sentinel_writes and self._state is LifecycleState.RUNNING:
                    self._cond.wait()
                if self._state is LifecycleState.KILLED:
                    break
                self.logger.info(f"Watcher resumed for {session.watch_dir}")

        self.logger.debug(f"Watcher thread finished for {session.watch_dir}")

    def _watch_once(self, session: WatchSession) -> _Outcome:
        """Register a fresh watch and process batches until told to leave."""
        config = self.context.config
        self.writer.ensure_directory(session.watch_dir)
        loop = self._loop_factory(
            session.watch_dir,
            grace_delay=config.grace_delay,
            max_pending_events=config.max_pending_events,
            logger=self.context.child_logger("watcher"),
        )
        try:
            loop.register()
        except (OSError, RuntimeError) as e:
            self.logger.error(f"Failed to register watch on {session.watch_dir}: {e}")
            loop.close()
            return _Outcome.FAILED

        with self._cond:
            self._watching = True
            stop_requested = self._stop_pending
            if stop_requested:
                self._sentinel_writes += 1
            self._cond.notify_all()
        try:
            if stop_requested:
                # Stop arrived before the watch existed; deliver it through the directory.
                self._write_stop_sentinel(session.watch_dir)
            # Only a kill or an observed sentinel ends the watch.
            while self.state is not LifecycleState.KILLED:
                shutdown = False
                for event in loop.next_batch():
                    if self.dispatcher.dispatch(event):
                        shutdown = True
                    if self.state is LifecycleState.KILLED:
                        break
                loop.reset()
                if shutdown:
                    return _Outcome.SHUTDOWN
            return _Outcome.STOPPED
        except Exception:
            self.logger.error(f"Watch loop failed for {session.watch_dir}", exc_info=True)
            return _Outcome.FAILED
        finally:
            with self._cond:
                self._watching = False
                self._cond.notify_all()
            loop.close()

    def __repr__(self) -> str:
        session = self._session
        where = session.watch_dir if session else None
        return f"<WatcherStateMachine state={self._state.name} dir={where}>"
