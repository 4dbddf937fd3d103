"""Tests for mail through `bd mail`."""

import json
from unittest.mock import Mock, patch

import pytest

from gastown.errors import BeadsCLINotFoundError, MailError
from gastown.mail import Mailbox, Message, Router, detect_sender


def completed(stdout="", returncode=0, stderr=""):
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def router(tmp_path):
    return Router(tmp_path)


def test_send(router, tmp_path):
    message = Message(to="gastown/polecats/Toast", subject="Work: gt-abc", body="Do it", sender="gastown/crew/dave")
    with patch('subprocess.run', return_value=completed()) as mock_run:
        router.send(message)

    args, kwargs = mock_run.call_args
    assert args[0] == [
        "bd", "mail", "send", "gastown/polecats/Toast",
        "-s", "Work: gt-abc", "-m", "Do it", "--identity", "gastown/crew/dave",
    ]
    assert kwargs["cwd"] == str(tmp_path)


def test_send_failure(router):
    with patch('subprocess.run', return_value=completed(returncode=1, stderr="no such mailbox")):
        with pytest.raises(MailError, match="sending mail to x: no such mailbox"):
            router.send(Message(to="x", subject="s"))


def test_inbox(router):
    payload = [
        {"id": "hq-1", "title": "please cycle", "sender": "gastown-witness", "assignee": "daemon", "status": "open"},
        {"id": "hq-2", "title": "done", "sender": "mayor", "assignee": "daemon", "status": "closed"},
    ]
    with patch('subprocess.run', return_value=completed(json.dumps(payload))) as mock_run:
        messages = router.inbox("daemon")

    assert mock_run.call_args[0][0] == ["bd", "mail", "inbox", "--identity", "daemon", "--json"]
    assert messages[0] == Message(
        to="daemon", subject="please cycle", sender="gastown-witness", id="hq-1", status="open",
    )
    assert messages[1].is_closed


def test_empty_inbox(router):
    with patch('subprocess.run', return_value=completed("  \n")):
        assert router.inbox("daemon") == []


def test_inbox_bad_json(router):
    with patch('subprocess.run', return_value=completed("{oops")):
        with pytest.raises(MailError, match="parsing inbox for daemon"):
            router.inbox("daemon")


@pytest.mark.parametrize("stdout", ['{"error": "no mail"}', '["hq-1"]', '"none"'])
def test_inbox_unexpected_shape(router, stdout):
    with patch('subprocess.run', return_value=completed(stdout)):
        with pytest.raises(MailError, match="expected a list of messages"):
            router.inbox("daemon")


def test_inbox_failure(router):
    with patch('subprocess.run', return_value=completed(returncode=2)):
        with pytest.raises(MailError, match="exit status 2"):
            router.inbox("daemon")


def test_close(router):
    with patch('subprocess.run', return_value=completed()) as mock_run:
        router.close("hq-1")
    assert mock_run.call_args[0][0] == ["bd", "close", "hq-1"]


def test_close_failure(router):
    with patch('subprocess.run', return_value=completed(returncode=1, stderr="locked")):
        with pytest.raises(MailError, match="closing message hq-1: locked"):
            router.close("hq-1")


def test_cli_missing(router):
    with patch('subprocess.run', side_effect=FileNotFoundError()):
        with pytest.raises(BeadsCLINotFoundError):
            router.inbox("daemon")


def test_mailbox_counts_unread():
    mailbox = Mailbox("daemon", [
        Message(to="daemon", subject="a"),
        Message(to="daemon", subject="b", status="closed"),
        Message(to="daemon", subject="c", status="in_progress"),
    ])
    assert mailbox.count() == (3, 2)
    assert [m.subject for m in mailbox.open_messages()] == ["a", "c"]


def test_detect_sender(monkeypatch):
    assert detect_sender() == "mayor/"
    monkeypatch.setenv("BD_ACTOR", "gastown/crew/dave")
    assert detect_sender() == "gastown/crew/dave"
