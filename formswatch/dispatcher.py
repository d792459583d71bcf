"""Route classified watch events to the bridge."""

from __future__ import annotations

import logging
from typing import Optional

from formswatch.bridge import MessageBridge
from formswatch.codec import read_line
from formswatch.mailbox import ACTION2FORMS, EOSERVICE, RESULT2FORMS
from formswatch.watcher import EventKind, WatchEvent

__all__ = ["Dispatcher", "FILE_MODIFIED_PREFIX", "OVERFLOW_PREFIX"]

FILE_MODIFIED_PREFIX = "File-modified::"
OVERFLOW_PREFIX = "File event overflow::"


class Dispatcher:
    """Perform exactly one action per classified event.

    ============================  ===========================================
    ``Action2Forms.watch``        read first line, ``bridge.on_action_message``
    ``Result2Forms.watch``        read first line, ``bridge.on_result_message``
    ``EOwatchService.watch``      request shutdown (returned to the caller)
    any other eligible name       ``File-modified::<name>`` notification
    OVERFLOW                      ``File event overflow::<name>`` notification
    ============================  ===========================================

    Read failures drop the event. Bridge failures are logged so one bad
    callback cannot take down the watcher.

    Attributes:
        bridge (MessageBridge): Receiver of inbound messages.
    """

    def __init__(self, bridge: MessageBridge, logger: Optional[logging.Logger] = None) -> None:
        self.bridge = bridge
        self.logger = logger or logging.getLogger(__name__)

    def dispatch(self, event: WatchEvent) -> bool:
        """Handle one event.

        Args:
            event (WatchEvent): A classified event from the watch loop.

        Returns:
            bool: True if the event requests shutdown of the watcher.
        """
        name = event.name

        if event.kind is EventKind.OVERFLOW:
            self._notify(f"{OVERFLOW_PREFIX}{name}")
            return False

        if name == EOSERVICE:
            self.logger.info(f"{EOSERVICE} received, closing watch service")
            return True

        if name == ACTION2FORMS:
            line = self._read(event)
            if line is not None:
                self._forward(self.bridge.on_action_message, line, "action")
        elif name == RESULT2FORMS:
            line = self._read(event)
            if line is not None:
                self._forward(self.bridge.on_result_message, line, "result")
        else:
            self._notify(f"{FILE_MODIFIED_PREFIX}{name}")
        return False

    def notify_shutdown(self) -> None:
        """Tell the host that the watch service has been closed."""
        self._notify(EOSERVICE)

    def _read(self, event: WatchEvent) -> Optional[str]:
        try:
            return read_line(event.path)
        except (OSError, UnicodeDecodeError) as e:
            self.logger.error(f"Failed to read {event.path}: {e}")
            return None

    def _forward(self, callback, line: str, label: str) -> None:
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(f"Forwarding {label}: {line}")
        try:
            callback(line)
        except Exception:
            self.logger.error(f"Bridge failed to handle {label}: {line}", exc_info=True)

    def _notify(self, text: str) -> None:
        self._forward(self.bridge.on_generic_notification, text, "notification")
