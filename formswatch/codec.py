"""Pipe-delimited message codec.

A mailbox file carries exactly one line of the form ``TAG|P1|P2|...|Pn``.
The delimiter is not escaped: a tag or parameter containing ``|`` cannot be
represented and is rejected by :func:`encode`. Consumers never re-encode what
they read; the line is forwarded to the bridge verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Tuple, Union

DELIMITER = "|"
ENCODING = "utf-8"

__all__ = ["DELIMITER", "Message", "MessageFormatError", "decode", "encode", "read_line", "split_target"]


class MessageFormatError(ValueError):
    """Raised when a message component cannot be encoded unambiguously."""


@dataclass(frozen=True)
class Message:
    """A decoded mailbox message.

    Attributes:
        tag (str): The action or result tag (first segment).
        params (Tuple[str, ...]): The remaining segments, in order.
    """

    tag: str
    params: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def params_text(self) -> str:
        """Return the parameters joined back into their wire form."""
        return DELIMITER.join(self.params)

    def encode(self) -> str:
        return encode(self.tag, self.params)


def encode(tag: str, params: Iterable[str] = ()) -> str:
    """Join a tag and its parameters into one mailbox line.

    Args:
        tag (str): The action/result tag.
        params (Iterable[str]): Parameter strings, in order.

    Returns:
        str: ``tag|p1|...|pn``.

    Raises:
        MessageFormatError: If the tag or a parameter contains the delimiter
            or a line break.

    Example:
        >>> encode("OPEN", ["invoice", "42"])
        'OPEN|invoice|42'
    """
    parts = [tag, *params]
    for index, part in enumerate(parts):
        if not isinstance(part, str):
            raise MessageFormatError(f"Message component {index} is not a string: {part!r}")
        if DELIMITER in part:
            raise MessageFormatError(
                f"Message component {index} contains the delimiter {DELIMITER!r}: {part!r}"
            )
        if "\n" in part or "\r" in part:
            raise MessageFormatError(f"Message component {index} contains a line break: {part!r}")
    return DELIMITER.join(parts)


def decode(line: str) -> Message:
    """Split a mailbox line into tag and parameters.

    Never fails. An empty line yields ``Message("", ())``.
    """
    line = line.rstrip("\r\n")
    if not line:
        return Message("", ())
    tag, *params = line.split(DELIMITER)
    return Message(tag, tuple(params))


def split_target(raw_value: str) -> Tuple[str, str]:
    """Split ``peer|payload`` on the first delimiter only.

    Args:
        raw_value (str): The value handed to a send request.

    Returns:
        Tuple[str, str]: ``(peer, payload)``. The payload keeps any further
        delimiters. If there is no delimiter, the peer is empty and the whole
        value is the payload.
    """
    peer, sep, payload = raw_value.partition(DELIMITER)
    if not sep:
        return "", raw_value
    return peer, payload


def read_line(path: Union[str, Path]) -> str:
    """Read the first line of a mailbox file.

    Args:
        path (Union[str, Path]): The mailbox file.

    Returns:
        str: The first line without its terminator, or ``""`` for an empty file.

    Raises:
        OSError: If the file cannot be opened or read.
        UnicodeDecodeError: If the content is not valid UTF-8.
    """
    # utf-8-sig drops a BOM written by Windows peers
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        return f.readline().rstrip("\r\n")
