"""Beads workflow store integration for gt.

Provides a wrapper around the `bd` CLI for issue lookup, assignment,
pinning, handoff records and molecule instantiation. Each Beads instance is
bound to one beads directory (the town root or a rig directory) and runs bd
there.
"""

import fcntl
import json
import re
import subprocess
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from gastown.errors import (
    BeadsCLINotFoundError,
    BeadsError,
    BeadsIssueNotFoundError,
    HookConflictError,
)

HANDOFF_TITLE_SUFFIX = " Handoff"
WISP_DIR = ".beads-wisp"

# Sentinel for attach/detach calls that skip the compare-and-set check.
UNCHECKED = object()

_ATTACHED_MOLECULE_RE = re.compile(r"^attached_molecule:\s*(\S+)\s*$", re.MULTILINE)
_ATTACHED_AT_RE = re.compile(r"^attached_at:\s*(\S+)\s*$", re.MULTILINE)
_ATTACHMENT_LINE_RE = re.compile(r"^attached_(molecule|at):.*(\n|$)", re.MULTILINE)


@dataclass
class Issue:
    """A beads issue."""

    id: str
    title: str = ""
    description: str = ""
    status: str = ""
    priority: int = 2
    type: str = "task"
    assignee: str = ""
    pinned: bool = False
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "Issue":
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            description=data.get("description", "") or "",
            status=data.get("status", ""),
            priority=data.get("priority", 2),
            type=data.get("issue_type") or data.get("type") or "task",
            assignee=data.get("assignee", "") or "",
            pinned=bool(data.get("pinned", False)),
            notes=data.get("notes"),
        )


@dataclass
class Attachment:
    """The molecule attached to a handoff record."""

    attached_molecule: str
    attached_at: Optional[str] = None


@dataclass
class MoleculeRun:
    """Result of `bd mol run`."""

    root_id: str
    created: int = 0
    assignee: str = ""
    pinned: bool = False
    id_mapping: Dict[str, str] = field(default_factory=dict)


def handoff_title(role: str) -> str:
    return f"{role}{HANDOFF_TITLE_SUFFIX}"


def parse_attachment_fields(issue: Optional[Issue]) -> Optional[Attachment]:
    """Read the attachment lines from a handoff record's description."""
    if issue is None or not issue.description:
        return None
    match = _ATTACHED_MOLECULE_RE.search(issue.description)
    if not match:
        return None
    at_match = _ATTACHED_AT_RE.search(issue.description)
    return Attachment(
        attached_molecule=match.group(1),
        attached_at=at_match.group(1) if at_match else None,
    )


def strip_attachment_fields(description: str) -> str:
    return _ATTACHMENT_LINE_RE.sub("", description or "").rstrip("\n")


def set_attachment_fields(description: str, attachment: Attachment) -> str:
    """Replace any attachment lines in description with attachment."""
    base = strip_attachment_fields(description)
    lines = [base] if base else []
    lines.append(f"attached_molecule: {attachment.attached_molecule}")
    if attachment.attached_at:
        lines.append(f"attached_at: {attachment.attached_at}")
    return "\n".join(lines)


def _json_records(data, what: str) -> List[Dict]:
    """A bd --json list payload; null means empty."""
    if data is None:
        return []
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise BeadsError(f"{what}: expected a list of records")
    return data


class Beads:
    """Wrapper around the beads (bd) CLI."""

    def __init__(
        self,
        workdir: Union[str, Path],
        cli_path: str = "bd",
        db_path: Optional[str] = None,
        lock_timeout: float = 10.0,
    ):
        """Initialize Beads.

        Args:
            workdir: Directory bd runs in; selects the beads database.
            cli_path: Path to the bd CLI executable. Defaults to "bd".
            db_path: Optional explicit database path passed with --db.
            lock_timeout: Seconds to wait for the hook lock.
        """
        self.workdir = Path(workdir)
        self.cli_path = cli_path
        self.db_path = db_path
        self.lock_timeout = lock_timeout

    def _build_command(self, *args, db_path: Optional[str] = None) -> list:
        cmd = [self.cli_path]
        db = db_path or self.db_path
        if db:
            cmd.extend(["--db", str(db)])
        cmd.extend(args)
        return cmd

    def _run(self, *args, db_path: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                self._build_command(*args, db_path=db_path),
                capture_output=True,
                text=True,
                cwd=str(self.workdir),
            )
        except FileNotFoundError:
            raise BeadsCLINotFoundError()

    def _run_checked(self, *args, db_path: Optional[str] = None) -> subprocess.CompletedProcess:
        result = self._run(*args, db_path=db_path)
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
            raise BeadsError(f"bd {args[0]}: {detail}")
        return result

    # Issues

    def show(self, issue_id: str) -> Issue:
        """Get a beads issue by ID.

        Raises:
            BeadsCLINotFoundError: If bd CLI is not installed
            BeadsIssueNotFoundError: If the issue doesn't exist
        """
        result = self._run("show", issue_id, "--json")
        if result.returncode != 0:
            raise BeadsIssueNotFoundError(issue_id)

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError:
            raise BeadsIssueNotFoundError(issue_id)

        if isinstance(data, list):
            if not data:
                raise BeadsIssueNotFoundError(issue_id)
            data = data[0]
        if not isinstance(data, dict):
            raise BeadsError(f"bd show {issue_id}: unexpected output")
        return Issue.from_dict(data)

    def list_issues(self, status: Optional[str] = None, issue_type: Optional[str] = None) -> List[Issue]:
        args = ["list", "--json"]
        if status:
            args.append(f"--status={status}")
        if issue_type:
            args.append(f"--type={issue_type}")
        result = self._run_checked(*args)
        try:
            data = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise BeadsError(f"bd list: invalid JSON: {e}")
        return [Issue.from_dict(item) for item in _json_records(data, "bd list")]

    def create(self, title: str, description: str = "", issue_type: str = "task", priority: int = 2) -> Issue:
        result = self._run_checked(
            "create", title,
            "--type", issue_type,
            "--priority", str(priority),
            "--description", description,
            "--json",
        )
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise BeadsError(f"bd create: invalid JSON: {e}")
        if isinstance(data, list):
            data = data[0] if data else {}
        if not isinstance(data, dict):
            raise BeadsError("bd create: unexpected output")
        issue = Issue.from_dict(data)
        if not issue.id:
            raise BeadsError("bd create: no issue id returned")
        if not issue.title:
            issue.title = title
        if not issue.description:
            issue.description = description
        return issue

    def update(
        self,
        issue_id: str,
        status: Optional[str] = None,
        assignee: Optional[str] = None,
        description: Optional[str] = None,
        notes: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> None:
        args = ["update", issue_id]
        if status is not None:
            args.extend(["--status", status])
        if assignee is not None:
            args.extend(["--assignee", assignee])
        if description is not None:
            args.extend(["--description", description])
        if notes is not None:
            args.extend(["--notes", notes])
        if priority is not None:
            args.extend(["--priority", str(priority)])
        self._run_checked(*args)

    def assign(self, issue_id: str, assignee: str) -> None:
        """Bind an issue to an agent and mark it in progress."""
        self.update(issue_id, status="in_progress", assignee=assignee)

    def close(self, issue_id: str, reason: Optional[str] = None) -> None:
        args = ["close", issue_id]
        if reason:
            args.extend(["--reason", reason])
        self._run_checked(*args)

    def pin(self, issue_id: str, assignee: str) -> None:
        """Mark an issue pinned for an agent so `bd hook` can find it."""
        self._run_checked("pin", issue_id, "--for", assignee)

    def unpin(self, issue_id: str) -> None:
        self._run_checked("unpin", issue_id)

    def release_with_reason(self, issue_id: str, reason: str) -> None:
        """Return an issue to the ready pool: status open, assignee cleared."""
        self.update(issue_id, status="open", assignee="", notes=f"released: {reason}")

    # Handoff records

    def find_handoff_bead(self, role: str) -> Optional[Issue]:
        """Find the open handoff record for role, or None."""
        title = handoff_title(role)
        for issue in self.list_issues():
            if issue.title == title and issue.status != "closed":
                return issue
        return None

    def get_or_create_handoff_bead(self, role: str) -> Issue:
        existing = self.find_handoff_bead(role)
        if existing is not None:
            return existing
        return self.create(
            handoff_title(role),
            description=f"Hook for {role}.",
            issue_type="task",
            priority=2,
        )

    @contextmanager
    def hook_lock(self) -> Iterator[None]:
        """Exclusive lock serialising hook compare-and-set across processes."""
        lock_path = self.workdir / ".beads" / "hooks.lock"
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(lock_path, "a+") as f:
            start_time = time.time()
            while True:
                try:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.time() - start_time > self.lock_timeout:
                        raise BeadsError(
                            f"Could not acquire hook lock after {self.lock_timeout}s"
                        )
                    time.sleep(0.05)
            try:
                yield
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def attach_molecule(self, handoff_id: str, molecule_id: str, expected=UNCHECKED) -> Issue:
        """
        Set the handoff record's single attachment slot.

        When expected is given (None meaning empty) the write only happens if
        the record still holds that value; otherwise HookConflictError is
        raised. Attaching the value already present is a no-op.
        """
        with self.hook_lock():
            return self._set_attachment(handoff_id, molecule_id, expected)

    def attach_to_hook(self, role: str, molecule_id: str, expected=UNCHECKED) -> Issue:
        """
        Find or create role's handoff record and attach molecule_id to it.

        Lookup, creation and the compare-and-set happen under one hook lock,
        so two first-time attaches cannot each create their own record.
        """
        with self.hook_lock():
            handoff = self.get_or_create_handoff_bead(role)
            return self._set_attachment(handoff.id, molecule_id, expected)

    def _set_attachment(self, handoff_id: str, molecule_id: str, expected) -> Issue:
        # Caller holds hook_lock()
        handoff = self.show(handoff_id)
        current = parse_attachment_fields(handoff)
        current_id = current.attached_molecule if current else None

        if current_id == molecule_id:
            return handoff
        if expected is not UNCHECKED and current_id != expected:
            raise HookConflictError(handoff_id, expected, current_id)

        attachment = Attachment(
            attached_molecule=molecule_id,
            attached_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )
        handoff.description = set_attachment_fields(handoff.description, attachment)
        self.update(handoff_id, description=handoff.description)
        return handoff

    def detach_molecule(self, handoff_id: str, expected=UNCHECKED) -> Issue:
        with self.hook_lock():
            handoff = self.show(handoff_id)
            current = parse_attachment_fields(handoff)
            current_id = current.attached_molecule if current else None

            if current_id is None:
                return handoff
            if expected is not UNCHECKED and current_id != expected:
                raise HookConflictError(handoff_id, expected, current_id)

            handoff.description = strip_attachment_fields(handoff.description)
            self.update(handoff_id, description=handoff.description)
            return handoff

    # Molecules

    def catalog(self) -> List[Dict]:
        """Protos available for instantiation."""
        result = self._run_checked("mol", "catalog", "--json")
        try:
            data = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise BeadsError(f"bd mol catalog: invalid JSON: {e}")
        return _json_records(data, "bd mol catalog")

    def find_proto(self, name: str) -> Optional[str]:
        """Resolve a proto name against the catalog, trying name then mol-<name>."""
        ids = {entry.get("id") for entry in self.catalog()}
        for candidate in (name, f"mol-{name}"):
            if candidate in ids:
                return candidate
        return None

    def wisp_db_path(self) -> Optional[Path]:
        """Ephemeral storage database, or None when the rig has none."""
        wisp_dir = self.workdir / WISP_DIR
        if wisp_dir.is_dir():
            return wisp_dir / "beads.db"
        return None

    def mol_run(
        self,
        proto: str,
        variables: Optional[Dict[str, str]] = None,
        db_path: Optional[Union[str, Path]] = None,
    ) -> MoleculeRun:
        """Instantiate a molecule from proto.

        Args:
            proto: Proto id from the catalog
            variables: Template bindings passed as --var key=value
            db_path: Alternate database (wisp storage)

        Raises:
            BeadsError: If bd fails or returns unparseable output
        """
        args = ["--no-daemon", "mol", "run", proto, "--json"]
        for key, value in (variables or {}).items():
            args.extend(["--var", f"{key}={value}"])

        result = self._run(*args, db_path=str(db_path) if db_path else None)
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
            raise BeadsError(f"running molecule: {detail}")

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise BeadsError(f"parsing molecule result: {e}")

        if not isinstance(data, dict):
            raise BeadsError("parsing molecule result: expected an object")
        root_id = data.get("root_id", "")
        if not root_id or not isinstance(root_id, str):
            raise BeadsError("parsing molecule result: missing root_id")
        created = data.get("created", 0)
        if not isinstance(created, int) or isinstance(created, bool):
            raise BeadsError(f"parsing molecule result: bad created count {created!r}")
        return MoleculeRun(
            root_id=root_id,
            created=created,
            assignee=data.get("assignee", "") or "",
            pinned=bool(data.get("pinned", False)),
            id_mapping=data.get("id_mapping") or {},
        )

    def sync(self, pull_only: bool = False) -> None:
        """Synchronise with the remote (pull only, or full pull+push)."""
        args = ["sync"]
        if pull_only:
            args.append("--import-only")
        self._run_checked(*args)
