"""Tests for mailbox layout and MailboxWriter."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable
from unittest.mock import patch

import pytest

from formswatch.config import WatchContext
from formswatch.mailbox import (
    ACTION2OTHERS,
    EOSERVICE,
    MailboxKind,
    MailboxWriter,
    RESULT2OTHERS,
)


def test_send_writes_payload_exactly(
    writer: MailboxWriter, context: WatchContext, peer_dir: Callable[[str], Path]
) -> None:
    peer_dir("peerA")
    writer.send(MailboxKind.ACTION2OTHERS, "peerA", "peerA|DO_THIS")

    target = context.root_dir / "peerA" / "Action2Others.watch"
    assert target.read_bytes() == b"DO_THIS"


def test_send_overwrites_previous_content(
    writer: MailboxWriter, context: WatchContext, peer_dir: Callable[[str], Path]
) -> None:
    d = peer_dir("peerA")
    writer.send("Result2Others", None, "peerA|A_MUCH_LONGER_FIRST_PAYLOAD")
    writer.send("Result2Others", None, "peerA|SHORT")
    assert (d / RESULT2OTHERS).read_text(encoding="utf-8") == "SHORT"


def test_send_keeps_further_delimiters_in_payload(
    writer: MailboxWriter, peer_dir: Callable[[str], Path]
) -> None:
    d = peer_dir("peerB")
    writer.send(MailboxKind.ACTION2FORMS, None, "peerB|OPEN|invoice|42")
    assert (d / "Action2Forms.watch").read_text(encoding="utf-8") == "OPEN|invoice|42"


def test_send_encodes_utf8(writer: MailboxWriter, peer_dir: Callable[[str], Path]) -> None:
    d = peer_dir("peerA")
    writer.send(MailboxKind.ACTION2OTHERS, None, "peerA|ÄNDERN|Größe")
    assert (d / ACTION2OTHERS).read_bytes() == "ÄNDERN|Größe".encode("utf-8")


def test_send_missing_peer_dir_is_logged_not_raised(
    writer: MailboxWriter, context: WatchContext, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.ERROR):
        writer.send(MailboxKind.ACTION2OTHERS, "ghost", "ghost|DO_THIS")
    assert "peer directory not found" in caplog.text
    assert not (context.root_dir / "ghost").exists()


def test_send_io_error_is_logged_not_raised(
    writer: MailboxWriter, peer_dir: Callable[[str], Path], caplog: pytest.LogCaptureFixture
) -> None:
    peer_dir("peerA")
    with patch("builtins.open", side_effect=PermissionError("read-only")):
        with caplog.at_level(logging.ERROR):
            writer.send(MailboxKind.ACTION2OTHERS, None, "peerA|DO_THIS")
    assert "Send failed" in caplog.text


def test_send_without_peer_is_rejected(writer: MailboxWriter, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR):
        writer.send(MailboxKind.ACTION2OTHERS, None, "no delimiter here")
    assert "no peer directory" in caplog.text


def test_send_unknown_kind_is_rejected(writer: MailboxWriter, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR):
        writer.send("Action2Nobody", None, "peerA|X")
    assert "Unknown mailbox kind" in caplog.text


def test_send_explicit_peer_wins(
    writer: MailboxWriter, peer_dir: Callable[[str], Path], caplog: pytest.LogCaptureFixture
) -> None:
    a = peer_dir("peerA")
    b = peer_dir("peerB")
    with caplog.at_level(logging.WARNING):
        writer.send(MailboxKind.ACTION2OTHERS, "peerB", "peerA|DO_THIS")
    assert (b / ACTION2OTHERS).read_text(encoding="utf-8") == "DO_THIS"
    assert not (a / ACTION2OTHERS).exists()
    assert "differs" in caplog.text


def test_send_explicit_peer_with_bare_payload(writer: MailboxWriter, peer_dir: Callable[[str], Path]) -> None:
    d = peer_dir("peerA")
    writer.send(MailboxKind.ACTION2OTHERS, "peerA", "JUST_PAYLOAD")
    assert (d / ACTION2OTHERS).read_text(encoding="utf-8") == "JUST_PAYLOAD"


def test_concurrent_sends_never_interleave(writer: MailboxWriter, peer_dir: Callable[[str], Path]) -> None:
    d = peer_dir("peerA")
    payloads = [chr(ord("A") + i) * 4096 for i in range(8)]

    def _send(p: str) -> None:
        for _ in range(20):
            writer.send(MailboxKind.ACTION2OTHERS, None, f"peerA|{p}")

    threads = [threading.Thread(target=_send, args=(p,)) for p in payloads]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert (d / ACTION2OTHERS).read_text(encoding="utf-8") in payloads


@pytest.mark.parametrize(
    "value,expected",
    [
        ("Action2Others", MailboxKind.ACTION2OTHERS),
        ("result2others", MailboxKind.RESULT2OTHERS),
        ("Action2Forms.watch", MailboxKind.ACTION2FORMS),
        ("RESULT2FORMS", MailboxKind.RESULT2FORMS),
        (MailboxKind.ACTION2FORMS, MailboxKind.ACTION2FORMS),
    ],
)
def test_mailbox_kind_parse(value: str, expected: MailboxKind) -> None:
    assert MailboxKind.parse(value) is expected


def test_mailbox_kind_parse_rejects_sentinel() -> None:
    with pytest.raises(ValueError):
        MailboxKind.parse(EOSERVICE)


def test_write_sentinel_content(writer: MailboxWriter, peer_dir: Callable[[str], Path]) -> None:
    d = peer_dir("forms")
    assert writer.write_sentinel(d) is True
    lines = (d / EOSERVICE).read_text(encoding="utf-8").split("\n")
    assert len(lines) == 2
    assert lines[1] == "FINISHED."
    assert lines[0][:4].isdigit()


def test_write_sentinel_missing_dir_returns_false(
    writer: MailboxWriter, temp_dir: Path, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.ERROR):
        assert writer.write_sentinel(temp_dir / "nope") is False
    assert "Failed to write sentinel" in caplog.text


def test_ensure_directory_is_idempotent(writer: MailboxWriter, temp_dir: Path) -> None:
    d = temp_dir / "formswatch" / "a" / "b"
    assert writer.ensure_directory(d) is True
    assert writer.ensure_directory(d) is True
    assert d.is_dir()


def test_ensure_directory_failure_is_logged(
    writer: MailboxWriter, temp_dir: Path, caplog: pytest.LogCaptureFixture
) -> None:
    with patch.object(Path, "mkdir", side_effect=PermissionError("denied")):
        with caplog.at_level(logging.ERROR):
            assert writer.ensure_directory(temp_dir / "x") is False
    assert "Failed to create directory" in caplog.text


@pytest.mark.parametrize("subdir", [None, "", "   "])
def test_watch_dir_for_blank_defaults_to_forms(writer: MailboxWriter, context: WatchContext, subdir: str) -> None:
    assert writer.watch_dir_for(subdir) == context.root_dir / "forms"


def test_watch_dir_for_is_deterministic(writer: MailboxWriter, temp_dir: Path) -> None:
    assert writer.watch_dir_for("peerA") == temp_dir / "formswatch" / "peerA"
