"""
Git utilities for polecat working copies.
"""

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from gastown.errors import GitError


@dataclass
class WorkStatus:
    """Unsaved work in a working copy."""
    modified_files: List[str] = field(default_factory=list)
    untracked_files: List[str] = field(default_factory=list)
    stash_count: int = 0
    unpushed_commits: int = 0

    @property
    def has_uncommitted_changes(self) -> bool:
        return bool(self.modified_files or self.untracked_files)

    def clean(self) -> bool:
        return not self.has_uncommitted_changes and self.stash_count == 0 and self.unpushed_commits == 0

    def summary_lines(self) -> List[str]:
        lines = []
        if self.has_uncommitted_changes:
            lines.append(f"{len(self.modified_files) + len(self.untracked_files)} uncommitted change(s)")
        if self.stash_count > 0:
            lines.append(f"{self.stash_count} stash(es)")
        if self.unpushed_commits > 0:
            lines.append(f"{self.unpushed_commits} unpushed commit(s)")
        return lines

    def summary(self) -> str:
        return ", ".join(self.summary_lines())


def _git(directory: Path, *args, check: bool = True) -> subprocess.CompletedProcess:
    try:
        result = subprocess.run(
            ['git', *args],
            cwd=directory,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        raise GitError("git not found")
    if check and result.returncode != 0:
        detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
        raise GitError(f"git {args[0]}: {detail}")
    return result


def is_git_repo(directory: Path) -> bool:
    """
    Check if directory is a git repository (or worktree).

    Args:
        directory: Path to check

    Returns:
        True if directory is a git repo, False otherwise
    """
    if not Path(directory).is_dir():
        return False
    try:
        result = subprocess.run(
            ['git', 'rev-parse', '--git-dir'],
            cwd=directory,
            capture_output=True,
            check=True
        )
        return result.returncode == 0
    except (subprocess.CalledProcessError, FileNotFoundError):
        return False


def check_uncommitted_work(directory: Path) -> WorkStatus:
    """
    Inspect a working copy for work that recreating it would discard.

    Checks:
    - Modified and untracked files (git status --porcelain)
    - Stashes
    - Commits not pushed to the upstream branch (skipped when there is none)

    Raises:
        GitError: If directory is not a git repository
    """
    if not is_git_repo(directory):
        raise GitError(f"Directory {directory} is not a git repository")

    status = WorkStatus()

    result = _git(directory, 'status', '--porcelain')
    for line in result.stdout.splitlines():
        if not line.strip():
            continue
        # Format: "XY path"
        code, path = line[:2], line[3:]
        if code == '??':
            status.untracked_files.append(path)
        else:
            status.modified_files.append(path)

    stashes = _git(directory, 'stash', 'list', check=False)
    if stashes.returncode == 0:
        status.stash_count = len([l for l in stashes.stdout.splitlines() if l.strip()])

    # No upstream configured is not an error, just nothing to compare against
    unpushed = _git(directory, 'rev-list', '--count', '@{u}..HEAD', check=False)
    if unpushed.returncode == 0:
        try:
            status.unpushed_commits = int(unpushed.stdout.strip() or 0)
        except ValueError:
            status.unpushed_commits = 0

    return status


def worktree_add(repo: Path, path: Path, branch: str) -> None:
    """Create a worktree at path on branch, resetting the branch to HEAD."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    _git(repo, 'worktree', 'add', '-B', branch, str(path), 'HEAD')


def worktree_remove(repo: Path, path: Path, force: bool = False) -> None:
    args = ['worktree', 'remove', str(path)]
    if force:
        args.append('--force')
    _git(repo, *args)


def worktree_prune(repo: Path) -> None:
    _git(repo, 'worktree', 'prune')
