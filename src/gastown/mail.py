"""Mail router integration for gt.

Mail is carried by beads (`bd mail ...`): a message is an issue whose
assignee is the recipient address and whose sender is the author. Closing
the issue marks the message processed.
"""

import json
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple, Union

from gastown.errors import BeadsCLINotFoundError, MailError

DEFAULT_SENDER = "mayor/"


@dataclass
class Message:
    to: str
    subject: str
    body: str = ""
    sender: str = DEFAULT_SENDER
    id: str = ""
    status: str = "open"
    priority: int = 2

    @property
    def is_closed(self) -> bool:
        return self.status == "closed"

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=data.get("id", ""),
            to=data.get("assignee", "") or "",
            subject=data.get("title", "") or "",
            body=data.get("description", "") or "",
            sender=data.get("sender", "") or "",
            status=data.get("status", "") or "open",
            priority=data.get("priority", 2),
        )


def detect_sender() -> str:
    """Identity to sign outgoing mail with: BD_ACTOR when set, else the mayor."""
    return os.environ.get("BD_ACTOR") or DEFAULT_SENDER


class Mailbox:
    def __init__(self, address: str, messages: List[Message]):
        self.address = address
        self.messages = messages

    def count(self) -> Tuple[int, int]:
        """(total, unread) where unread means not yet closed."""
        unread = sum(1 for m in self.messages if not m.is_closed)
        return len(self.messages), unread

    def open_messages(self) -> List[Message]:
        return [m for m in self.messages if not m.is_closed]


class Router:
    """Send and read mail through `bd mail` in one beads directory."""

    def __init__(self, workdir: Union[str, Path], cli_path: str = "bd"):
        self.workdir = Path(workdir)
        self.cli_path = cli_path

    def _run(self, *args) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.cli_path, "mail", *args],
                capture_output=True,
                text=True,
                cwd=str(self.workdir),
            )
        except FileNotFoundError:
            raise BeadsCLINotFoundError()

    def send(self, message: Message) -> None:
        result = self._run(
            "send", message.to,
            "-s", message.subject,
            "-m", message.body,
            "--identity", message.sender or DEFAULT_SENDER,
        )
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
            raise MailError(f"sending mail to {message.to}: {detail}")

    def inbox(self, address: str) -> List[Message]:
        result = self._run("inbox", "--identity", address, "--json")
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
            raise MailError(f"reading inbox for {address}: {detail}")

        output = (result.stdout or "").strip()
        if not output:
            return []
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise MailError(f"parsing inbox for {address}: {e}")
        if data is None:
            return []
        if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
            raise MailError(f"parsing inbox for {address}: expected a list of messages")
        return [Message.from_dict(item) for item in data]

    def get_mailbox(self, address: str) -> Mailbox:
        return Mailbox(address, self.inbox(address))

    def close(self, message_id: str) -> None:
        """Mark a message processed by closing its issue."""
        try:
            result = subprocess.run(
                [self.cli_path, "close", message_id],
                capture_output=True,
                text=True,
                cwd=str(self.workdir),
            )
        except FileNotFoundError:
            raise BeadsCLINotFoundError()
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
            raise MailError(f"closing message {message_id}: {detail}")
