"""
Shared pytest fixtures for gt tests.

The fakes below stand in for the bd CLI (workflow store and mail) and tmux.
FakeBeads subclasses the real Beads wrapper and only replaces the calls that
shell out, so handoff lookup and the hook compare-and-set run for real.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from click.testing import CliRunner

import gastown.config
from gastown.beads import Beads, Issue, MoleculeRun
from gastown.error_logging import reset_default_logger
from gastown.errors import BeadsIssueNotFoundError, MailError, TmuxError
from gastown.mail import Mailbox, Message


# =============================================================================
# ISOLATION
# =============================================================================

@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point HOME at a scratch dir and drop cached config between tests."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("BD_ACTOR", raising=False)
    gastown.config._CONFIG_CACHE = None
    reset_default_logger()
    yield home
    gastown.config._CONFIG_CACHE = None
    reset_default_logger()


@pytest.fixture
def cli_runner():
    """Provide Click CLI test runner."""
    return CliRunner()


# =============================================================================
# TOWN LAYOUT
# =============================================================================

def make_town(root: Path, rigs=("gastown",)) -> Path:
    """
    Create a minimal town:

        <root>/mayor/town.json
        <root>/<rig>/polecats/
        <root>/<rig>/crew/
    """
    (root / "mayor").mkdir(parents=True)
    (root / "mayor" / "town.json").write_text(json.dumps({"name": "test-town"}))
    for rig in rigs:
        (root / rig / "polecats").mkdir(parents=True)
        (root / rig / "crew").mkdir(parents=True)
    return root


@pytest.fixture
def town(tmp_path):
    """A town with rig 'gastown', polecat Toast and crew member dave."""
    root = make_town(tmp_path / "town")
    (root / "gastown" / "polecats" / "Toast").mkdir()
    (root / "gastown" / "crew" / "dave").mkdir()
    return root


# =============================================================================
# FAKES
# =============================================================================

class FakeBeads(Beads):
    """In-memory workflow store."""

    def __init__(self, workdir, protos=("mol-feature", "mol-patrol", "mol-bugfix")):
        super().__init__(workdir, lock_timeout=1.0)
        self.issues: Dict[str, Issue] = {}
        self.protos = list(protos)
        self.proto_steps: Dict[str, int] = {}
        self.pinned: Dict[str, str] = {}
        self.mol_runs: List[dict] = []
        self.syncs: List[bool] = []
        self.fail: Dict[str, Exception] = {}
        self._counter = 0

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail:
            raise self.fail[name]

    def _next_id(self, prefix: str = "gt") -> str:
        self._counter += 1
        return f"{prefix}-{self._counter:03d}"

    def add_issue(self, issue_id: str, **fields) -> Issue:
        issue = Issue(id=issue_id, **fields)
        self.issues[issue_id] = issue
        return issue

    def show(self, issue_id: str) -> Issue:
        self._maybe_fail("show")
        if issue_id not in self.issues:
            raise BeadsIssueNotFoundError(issue_id)
        return self.issues[issue_id]

    def list_issues(self, status: Optional[str] = None, issue_type: Optional[str] = None) -> List[Issue]:
        self._maybe_fail("list_issues")
        return [
            i for i in self.issues.values()
            if (status is None or i.status == status) and (issue_type is None or i.type == issue_type)
        ]

    def create(self, title: str, description: str = "", issue_type: str = "task", priority: int = 2) -> Issue:
        self._maybe_fail("create")
        return self.add_issue(
            self._next_id("hq"),
            title=title,
            description=description,
            status="open",
            type=issue_type,
            priority=priority,
        )

    def update(self, issue_id, status=None, assignee=None, description=None, notes=None, priority=None) -> None:
        self._maybe_fail("update")
        issue = self.show(issue_id)
        if status is not None:
            issue.status = status
        if assignee is not None:
            issue.assignee = assignee
        if description is not None:
            issue.description = description
        if notes is not None:
            issue.notes = notes
        if priority is not None:
            issue.priority = priority

    def assign(self, issue_id: str, assignee: str) -> None:
        self._maybe_fail("assign")
        super().assign(issue_id, assignee)

    def close(self, issue_id: str, reason: Optional[str] = None) -> None:
        self.update(issue_id, status="closed")

    def pin(self, issue_id: str, assignee: str) -> None:
        self._maybe_fail("pin")
        self.pinned[issue_id] = assignee

    def unpin(self, issue_id: str) -> None:
        self._maybe_fail("unpin")
        self.pinned.pop(issue_id, None)

    def catalog(self) -> List[Dict]:
        self._maybe_fail("catalog")
        return [{"id": p} for p in self.protos]

    def mol_run(self, proto, variables=None, db_path=None) -> MoleculeRun:
        self._maybe_fail("mol_run")
        root_id = self._next_id("gt")
        self.add_issue(root_id, title=proto, status="open", type="task")
        self.mol_runs.append({"proto": proto, "variables": dict(variables or {}), "db_path": db_path})
        created = self.proto_steps.get(proto, 3) + 1
        return MoleculeRun(root_id=root_id, created=created, assignee=(variables or {}).get("assignee", ""))

    def sync(self, pull_only: bool = False) -> None:
        self._maybe_fail("sync")
        self.syncs.append(pull_only)

    # Test helpers

    def hook_of(self, key: str) -> Optional[str]:
        from gastown.beads import parse_attachment_fields

        attachment = parse_attachment_fields(self.find_handoff_bead(key))
        return attachment.attached_molecule if attachment else None


class FakeRouter:
    """In-memory mail: every address shares one message list."""

    def __init__(self):
        self.messages: List[Message] = []
        self.fail: Dict[str, Exception] = {}
        self._counter = 0

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail:
            raise self.fail[name]

    def deliver(self, to: str, subject: str, sender: str = "mayor/", body: str = "", status: str = "open") -> Message:
        self._counter += 1
        message = Message(
            to=to, subject=subject, body=body, sender=sender,
            id=f"hq-msg{self._counter}", status=status,
        )
        self.messages.append(message)
        return message

    def send(self, message: Message) -> None:
        self._maybe_fail("send")
        self.deliver(message.to, message.subject, message.sender, message.body)

    def inbox(self, address: str) -> List[Message]:
        self._maybe_fail("inbox")
        return [m for m in self.messages if m.to == address]

    def get_mailbox(self, address: str) -> Mailbox:
        return Mailbox(address, self.inbox(address))

    def close(self, message_id: str) -> None:
        self._maybe_fail("close")
        for m in self.messages:
            if m.id == message_id:
                m.status = "closed"
                return
        raise MailError(f"closing message {message_id}: not found")

    def sent_to(self, address: str) -> List[Message]:
        return [m for m in self.messages if m.to == address]


class FakeTmux:
    """Session backend that records what it was asked to do."""

    def __init__(self, sessions=()):
        self.sessions: Dict[str, dict] = {}
        self.calls: List[tuple] = []
        self.current: Optional[str] = None
        self.fail: Dict[str, Exception] = {}
        for name in sessions:
            self.sessions[name] = {"workdir": "", "env": {}, "keys": []}

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail:
            raise self.fail[name]

    def list_sessions(self) -> List[str]:
        self._maybe_fail("list_sessions")
        return list(self.sessions)

    def has_session(self, name: str) -> bool:
        self._maybe_fail("has_session")
        return name in self.sessions

    def new_session(self, name: str, workdir: str) -> None:
        self._maybe_fail("new_session")
        if name in self.sessions:
            raise TmuxError(f"tmux new-session: duplicate session: {name}")
        self.calls.append(("new_session", name, str(workdir)))
        self.sessions[name] = {"workdir": str(workdir), "env": {}, "keys": []}

    def kill_session(self, name: str) -> None:
        self._maybe_fail("kill_session")
        if name in self.sessions:
            self.calls.append(("kill_session", name))
            del self.sessions[name]

    def set_environment(self, name: str, key: str, value: str) -> None:
        self._maybe_fail("set_environment")
        self.sessions[name]["env"][key] = value

    def send_keys(self, name: str, text: str) -> None:
        self._maybe_fail("send_keys")
        if name not in self.sessions:
            raise TmuxError(f"tmux send-keys: can't find session: {name}")
        self.calls.append(("send_keys", name, text))
        self.sessions[name]["keys"].append(text)

    def send_keys_delayed(self, name: str, text: str, delay_ms: int) -> None:
        self._maybe_fail("send_keys_delayed")
        self.calls.append(("send_keys_delayed", name, text, delay_ms))
        self.sessions[name]["keys"].append(text)

    def nudge_session(self, name: str, text: str) -> None:
        self._maybe_fail("nudge_session")
        if name not in self.sessions:
            raise TmuxError(f"session {name} not found")
        self.calls.append(("nudge_session", name, text))
        self.sessions[name]["keys"].append(text)

    def current_session(self) -> Optional[str]:
        return self.current

    def switch_client(self, name: str) -> None:
        self._maybe_fail("switch_client")
        self.calls.append(("switch_client", name))
        self.current = name

    def keys(self, name: str) -> List[str]:
        return self.sessions.get(name, {}).get("keys", [])


@pytest.fixture
def fake_tmux():
    return FakeTmux()


@pytest.fixture
def fake_router():
    return FakeRouter()


@pytest.fixture
def fake_beads(tmp_path):
    workdir = tmp_path / "beads"
    workdir.mkdir()
    return FakeBeads(workdir)

