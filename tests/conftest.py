from __future__ import annotations

import queue
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Generator, List, Optional

import pytest

from formswatch.bridge import MessageBridge
from formswatch.config import Config, WatchContext
from formswatch.mailbox import EOSERVICE, MailboxWriter
from formswatch.service import WatcherStateMachine
from formswatch.watcher import EventKind, WatchEvent


class RecordingBridge(MessageBridge):
    """Bridge that records every callback and lets tests wait for them."""

    def __init__(self) -> None:
        self.actions: List[str] = []
        self.results: List[str] = []
        self.notifications: List[str] = []
        self._cond = threading.Condition()

    def _record(self, target: List[str], value: str) -> None:
        with self._cond:
            target.append(value)
            self._cond.notify_all()

    def on_action_message(self, line: str) -> None:
        self._record(self.actions, line)

    def on_result_message(self, line: str) -> None:
        self._record(self.results, line)

    def on_generic_notification(self, text: str) -> None:
        self._record(self.notifications, text)

    def wait_for(self, predicate: Callable[["RecordingBridge"], bool], timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self), timeout)


class FakeLoop:
    """Stand-in for DirectoryWatchLoop whose batches are pushed by the test."""

    def __init__(self, watch_dir: Path, factory: "FakeLoopFactory", **kwargs: Any) -> None:
        self.watch_dir = Path(watch_dir)
        self.factory = factory
        self.kwargs = kwargs
        self.batches: "queue.Queue[List[WatchEvent]]" = queue.Queue()
        self.registered = False
        self.closed = False
        self.resets = 0

    def register(self) -> None:
        if self.factory.register_gate is not None:
            self.factory.register_gate.wait(5.0)
        if self.factory.fail_times > 0:
            self.factory.fail_times -= 1
            raise OSError("inotify watch limit reached")
        if self.factory.raise_on_register is not None:
            raise self.factory.raise_on_register
        self.registered = True

    def next_batch(self) -> List[WatchEvent]:
        batch = self.batches.get()
        if isinstance(batch, Exception):
            raise batch
        return batch

    def push(self, *names: str) -> None:
        self.batches.put([WatchEvent(EventKind.MODIFIED, self.watch_dir / name) for name in names])

    def reset(self) -> bool:
        self.resets += 1
        return True

    def close(self) -> None:
        self.closed = True


class FakeLoopFactory:
    def __init__(self) -> None:
        self.loops: List[FakeLoop] = []
        self.fail_times = 0
        self.raise_on_register: Optional[BaseException] = None
        self.register_gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def __call__(self, watch_dir: Path, **kwargs: Any) -> FakeLoop:
        loop = FakeLoop(watch_dir, self, **kwargs)
        with self._lock:
            self.loops.append(loop)
        return loop

    @property
    def current(self) -> FakeLoop:
        with self._lock:
            return self.loops[-1]


class EchoingWriter(MailboxWriter):
    """Writer whose sentinel also wakes the active fake loop, as inotify would."""

    def __init__(self, context: WatchContext, factory: FakeLoopFactory) -> None:
        super().__init__(context)
        self.factory = factory

    def write_sentinel(self, watch_dir: Any) -> bool:
        written = super().write_sentinel(watch_dir)
        if written and self.factory.loops:
            loop = self.factory.current
            if loop.registered and not loop.closed:
                loop.push(EOSERVICE)
        return written


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Ensures automatic cleanup after test execution.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def config(temp_dir: Path) -> Config:
    """Config rooted in the temp dir with short delays."""
    return Config(base_dir=str(temp_dir), grace_delay=0.1, retry_delay=0.05)


@pytest.fixture
def context(config: Config) -> WatchContext:
    return WatchContext(config)


@pytest.fixture
def writer(context: WatchContext) -> MailboxWriter:
    return MailboxWriter(context)


@pytest.fixture
def bridge() -> RecordingBridge:
    return RecordingBridge()


@pytest.fixture
def loop_factory() -> FakeLoopFactory:
    return FakeLoopFactory()


@pytest.fixture
def fake_machine(
    bridge: RecordingBridge, context: WatchContext, loop_factory: FakeLoopFactory
) -> Generator[WatcherStateMachine, None, None]:
    """State machine wired to fake loops; killed on teardown."""
    machine = WatcherStateMachine(
        bridge,
        context,
        writer=EchoingWriter(context, loop_factory),
        loop_factory=loop_factory,
    )
    yield machine
    machine.kill(timeout=2.0)


@pytest.fixture
def machine(bridge: RecordingBridge, context: WatchContext) -> Generator[WatcherStateMachine, None, None]:
    """State machine on a real watchdog observer; killed on teardown."""
    m = WatcherStateMachine(bridge, context)
    yield m
    m.kill(timeout=5.0)


@pytest.fixture
def peer_dir(context: WatchContext) -> Callable[[str], Path]:
    """Create ``<base>/formswatch/<name>`` and return it."""
    def _make(name: str) -> Path:
        d = context.root_dir / name
        d.mkdir(parents=True, exist_ok=True)
        return d
    return _make
