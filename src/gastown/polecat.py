"""
Polecat and crew workspaces.

Layout inside a rig:

    <rig>/mayor/rig/         the rig's canonical clone
    <rig>/polecats/<name>/   one git worktree per polecat, branch polecat/<name>
    <rig>/crew/<name>/       human-managed crew workspaces
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List

from gastown.errors import GastownError, GitError
from gastown.git_utils import worktree_add, worktree_prune, worktree_remove

logger = logging.getLogger(__name__)


class PolecatExistsError(GastownError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"polecat '{name}' already exists")


@dataclass
class Polecat:
    name: str
    rig: str
    path: Path

    @property
    def branch(self) -> str:
        return branch_for(self.name)

    @property
    def address(self) -> str:
        return f"{self.rig}/polecats/{self.name}"


def branch_for(name: str) -> str:
    return f"polecat/{name}"


def _list_dirs(directory: Path) -> List[str]:
    if not directory.is_dir():
        return []
    return sorted(
        p.name for p in directory.iterdir()
        if p.is_dir() and not p.name.startswith('.')
    )


class PolecatManager:
    """Create, look up and recycle the polecats of one rig."""

    def __init__(self, town_root: Path, rig: str):
        self.town_root = Path(town_root)
        self.rig = rig
        self.rig_path = self.town_root / rig
        self.polecats_dir = self.rig_path / 'polecats'

    @property
    def repo_path(self) -> Path:
        """The clone new worktrees branch from."""
        canonical = self.rig_path / 'mayor' / 'rig'
        return canonical if canonical.is_dir() else self.rig_path

    def path_for(self, name: str) -> Path:
        return self.polecats_dir / name

    def list_names(self) -> List[str]:
        return _list_dirs(self.polecats_dir)

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_dir()

    def get(self, name: str) -> Polecat:
        return Polecat(name=name, rig=self.rig, path=self.path_for(name))

    def add(self, name: str) -> Polecat:
        """
        Create a polecat with a fresh worktree.

        Raises:
            PolecatExistsError: If the polecat directory already exists
            GitError: If the worktree cannot be created
        """
        if self.exists(name):
            raise PolecatExistsError(name)
        polecat = self.get(name)
        worktree_add(self.repo_path, polecat.path, polecat.branch)
        logger.info("created polecat %s/%s", self.rig, name)
        return polecat

    def recreate(self, name: str) -> Polecat:
        """Discard the polecat's worktree and create a fresh one from HEAD."""
        polecat = self.get(name)
        try:
            worktree_remove(self.repo_path, polecat.path, force=True)
        except GitError as e:
            # Not a registered worktree (or already gone); clear the directory
            logger.debug("worktree remove failed for %s: %s", polecat.path, e)
            if polecat.path.exists():
                shutil.rmtree(polecat.path)
        worktree_prune(self.repo_path)
        worktree_add(self.repo_path, polecat.path, polecat.branch)
        logger.info("recreated polecat %s/%s", self.rig, name)
        return polecat


class CrewManager:
    """Crew workspaces are managed by people; gt only checks they exist."""

    def __init__(self, town_root: Path, rig: str):
        self.crew_dir = Path(town_root) / rig / 'crew'

    def path_for(self, name: str) -> Path:
        return self.crew_dir / name

    def list_names(self) -> List[str]:
        return _list_dirs(self.crew_dir)

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_dir()
