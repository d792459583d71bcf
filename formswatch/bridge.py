"""Host bridges that surface inbound mailbox messages.

The watcher calls exactly three methods on its bridge. A hosting application
(originally a GUI form) implements them to raise its own events; the CLI
uses :class:`LoggingBridge`.
"""

from __future__ import annotations

import abc
import logging
from typing import Callable, Optional

from formswatch.codec import decode

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["CallbackBridge", "LoggingBridge", "MessageBridge"]


class MessageBridge(abc.ABC):
    """Interface the watcher uses to hand messages to its host.

    Implementations are called from the watcher's worker thread and must be
    thread-safe with respect to their host.
    """

    @abc.abstractmethod
    def on_action_message(self, line: str) -> None:
        """Handle the first line of a modified ``Action2Forms.watch``."""

    @abc.abstractmethod
    def on_result_message(self, line: str) -> None:
        """Handle the first line of a modified ``Result2Forms.watch``."""

    @abc.abstractmethod
    def on_generic_notification(self, text: str) -> None:
        """Handle ``File-modified::<name>``, overflow and shutdown notices."""


class LoggingBridge(MessageBridge):
    """Bridge that writes every inbound message to a logger."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def on_action_message(self, line: str) -> None:
        self.logger.info(f"Action received: {line}")
        self._log_fields(line)

    def on_result_message(self, line: str) -> None:
        self.logger.info(f"Result received: {line}")
        self._log_fields(line)

    def on_generic_notification(self, text: str) -> None:
        self.logger.info(f"Notification: {text}")

    def _log_fields(self, line: str) -> None:
        if self.logger.isEnabledFor(logging.DEBUG):
            message = decode(line)
            self.logger.debug(f"  tag={message.tag!r} params={list(message.params)}")


class CallbackBridge(MessageBridge):
    """Bridge built from plain callables; missing callbacks are ignored.

    Example:
        >>> bridge = CallbackBridge(on_action=print)
        >>> bridge.on_action_message("OPEN|42")
        OPEN|42
    """

    def __init__(
        self,
        on_action: Optional[Callable[[str], None]] = None,
        on_result: Optional[Callable[[str], None]] = None,
        on_notification: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._on_action = on_action
        self._on_result = on_result
        self._on_notification = on_notification

    def on_action_message(self, line: str) -> None:
        if self._on_action:
            self._on_action(line)
        else:
            logger.debug(f"No action callback, dropping: {line}")

    def on_result_message(self, line: str) -> None:
        if self._on_result:
            self._on_result(line)
        else:
            logger.debug(f"No result callback, dropping: {line}")

    def on_generic_notification(self, text: str) -> None:
        if self._on_notification:
            self._on_notification(text)
        else:
            logger.debug(f"No notification callback, dropping: {text}")
