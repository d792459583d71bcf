"""Mailbox files: layout, path resolution and writing.

Layout, relative to ``<base_dir>/formswatch/<subdir>/``::

    Action2Forms.watch    inbound action, one line
    Result2Forms.watch    inbound result, one line
    Action2Others.watch   outbound action (written into the peer's directory)
    Result2Others.watch   outbound result (written into the peer's directory)
    EOwatchService.watch  sentinel; a modification stops the watcher

All writes in this process go through one lock, so two senders never
interleave partial content in the same file. No cross-process locking is
attempted: short single-line writes rely on ordinary filesystem behaviour.
"""

from __future__ import annotations

import enum
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from formswatch.codec import ENCODING, split_target
from formswatch.config import DEFAULT_SUBDIR, WatchContext

__all__ = [
    "ACTION2FORMS",
    "ACTION2OTHERS",
    "EOSERVICE",
    "MailboxKind",
    "MailboxWriter",
    "RESULT2FORMS",
    "RESULT2OTHERS",
    "WATCHED_SUFFIXES",
]

ACTION2FORMS = "Action2Forms.watch"
RESULT2FORMS = "Result2Forms.watch"
ACTION2OTHERS = "Action2Others.watch"
RESULT2OTHERS = "Result2Others.watch"
EOSERVICE = "EOwatchService.watch"

# Names must end in one of these to be considered at all.
WATCHED_SUFFIXES = ("watch", "form", "other")

SENTINEL_MESSAGE = "FINISHED."

# Shared by every MailboxWriter in the process.
_WRITE_LOCK = threading.Lock()


class MailboxKind(str, enum.Enum):
    """Send targets. Each value is the mailbox filename."""

    ACTION2FORMS = ACTION2FORMS
    RESULT2FORMS = RESULT2FORMS
    ACTION2OTHERS = ACTION2OTHERS
    RESULT2OTHERS = RESULT2OTHERS

    @classmethod
    def parse(cls, value: Union[str, "MailboxKind"]) -> "MailboxKind":
        """Accept a member, a filename or a case-insensitive name such as ``Action2Others``.

        Raises:
            ValueError: If the value names no send target.
        """
        if isinstance(value, MailboxKind):
            return value
        text = str(value).strip()
        for member in cls:
            stem = member.value.rsplit(".", 1)[0]
            if text.lower() in (member.value.lower(), stem.lower(), member.name.lower()):
                return member
        raise ValueError(f"Unknown mailbox kind: {value!r}")


class MailboxWriter:
    """Write messages into peer mailboxes and sentinels into watch directories.

    Failures are logged and swallowed: callers are never informed
    synchronously that a write did not happen.

    Attributes:
        root_dir (Path): ``<base_dir>/formswatch``.
    """

    def __init__(self, context: WatchContext, logger: Optional[logging.Logger] = None) -> None:
        self.context = context
        self.root_dir = context.root_dir
        self.logger = logger or logging.getLogger(__name__)

    def watch_dir_for(self, subdir: Optional[str]) -> Path:
        """Resolve ``<base_dir>/formswatch/<subdir>``; a blank subdir means ``forms``."""
        name = (subdir or "").strip() or DEFAULT_SUBDIR
        return self.root_dir / name

    def ensure_directory(self, path: Union[str, Path]) -> bool:
        """Create ``path`` and its parents if missing.

        Args:
            path (Union[str, Path]): The directory to create.

        Returns:
            bool: True if the directory exists afterwards.
        """
        try:
            Path(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.logger.error(f"Failed to create directory {path}: {e}")
            return False
        self.logger.debug(f"Directory ready: {path}")
        return True

    def send(
        self,
        kind: Union[str, MailboxKind],
        peer_subdir: Optional[str],
        raw_value: str,
    ) -> None:
        """Write a message into a peer's mailbox file.

        ``raw_value`` is ``peer|payload``. It is split on the first ``|`` and
        ``payload`` becomes the entire content of
        ``<root>/<peer>/<kind filename>``. An explicit ``peer_subdir`` takes
        precedence over the peer named in the value.

        Args:
            kind (Union[str, MailboxKind]): Which mailbox file to write.
            peer_subdir (Optional[str]): The peer's subdirectory, or None to use the
                one named in ``raw_value``.
            raw_value (str): ``peer|payload``.

        Returns:
            None

        Example:
            >>> writer.send(MailboxKind.ACTION2OTHERS, "peerA", "peerA|DO_THIS")
            # <tmp>/formswatch/peerA/Action2Others.watch now contains "DO_THIS"
        """
        try:
            target_kind = MailboxKind.parse(kind)
        except ValueError as e:
            self.logger.error(f"Send rejected: {e}")
            return
        if raw_value is None:
            self.logger.error(f"Send rejected: value is None ({target_kind.value})")
            return

        value_peer, payload = split_target(raw_value)
        peer = (peer_subdir or "").strip() or value_peer.strip()
        if not peer:
            self.logger.error(f"Send rejected: no peer directory in {raw_value!r} ({target_kind.value})")
            return
        if value_peer and value_peer != peer:
            self.logger.warning(
                f"Peer in value ({value_peer!r}) differs from requested peer ({peer!r}); using {peer!r}"
            )

        target = self.root_dir / peer / target_kind.value
        if not target.parent.is_dir():
            self.logger.error(f"Send failed, peer directory not found: {target.parent}")
            return
        try:
            self._write(target, payload)
        except OSError as e:
            self.logger.error(f"Send failed for {target_kind.value}|{raw_value}: {e}")
            return
        self.logger.debug(f"Sent {len(payload)} chars to {target}")

    def write_sentinel(self, watch_dir: Union[str, Path]) -> bool:
        """Write a timestamped marker into ``watch_dir/EOwatchService.watch``.

        Its modification wakes a watcher blocked on the directory.

        Args:
            watch_dir (Union[str, Path]): The watch directory.

        Returns:
            bool: True if the file was written. Failures are logged.
        """
        target = Path(watch_dir) / EOSERVICE
        timestamp = datetime.now().isoformat(sep=" ", timespec="milliseconds")
        try:
            self._write(target, f"{timestamp}\n{SENTINEL_MESSAGE}")
        except OSError as e:
            self.logger.error(f"Failed to write sentinel {target}: {e}")
            return False
        self.logger.debug(f"Sentinel written: {target}")
        return True

    @staticmethod
    def _write(target: Path, content: str) -> None:
        with _WRITE_LOCK:
            with open(target, "w", encoding=ENCODING, newline="") as f:
                f.write(content)

    def __repr__(self) -> str:
        return f"<MailboxWriter root={self.root_dir}>"
