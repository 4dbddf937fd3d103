"""
Agent session start/stop.

An agent session is a tmux session whose shell is replaced by the agent CLI
(`exec claude ...`) with the role environment exported, followed after a
short delay by `gt prime` so the agent loads its context.
"""

import logging
from pathlib import Path
from typing import Dict

from gastown.address import AgentIdentity, AgentRole
from gastown.agents import AgentRegistry
from gastown.env import AgentEnvConfig, agent_env, export_prefix
from gastown.errors import TmuxError

logger = logging.getLogger(__name__)

PRIME_COMMAND = "gt prime"


def launch_session(
    tmux,
    name: str,
    workdir: Path,
    env: Dict[str, str],
    startup_command: str,
    prime_delay_ms: int = 2000,
) -> None:
    """
    Create session name in workdir and start the agent in it.

    Raises:
        TmuxError: If the session cannot be created or the startup command
            cannot be delivered. A failed prime is only logged.
    """
    tmux.new_session(name, str(workdir))
    for key in sorted(env):
        tmux.set_environment(name, key, env[key])
    tmux.send_keys(name, export_prefix(env) + startup_command)

    try:
        tmux.send_keys_delayed(name, PRIME_COMMAND, prime_delay_ms)
    except TmuxError as e:
        logger.warning("could not send prime to %s: %s", name, e)


class SessionManager:
    """Polecat sessions for one rig."""

    def __init__(
        self,
        tmux,
        town_root: Path,
        rig: str,
        registry: AgentRegistry,
        agent: str = "claude",
        prime_delay_ms: int = 2000,
    ):
        self.tmux = tmux
        self.town_root = Path(town_root)
        self.rig = rig
        self.registry = registry
        self.agent = agent
        self.prime_delay_ms = prime_delay_ms

    def identity(self, name: str) -> AgentIdentity:
        return AgentIdentity(AgentRole.POLECAT, self.rig, name)

    def session_name(self, name: str) -> str:
        return self.identity(name).session_name

    def is_running(self, name: str) -> bool:
        return self.tmux.has_session(self.session_name(name))

    def environment(self, name: str) -> Dict[str, str]:
        rig_path = self.town_root / self.rig
        return agent_env(AgentEnvConfig(
            role=AgentRole.POLECAT.value,
            rig=self.rig,
            agent_name=name,
            town_root=str(self.town_root),
            beads_dir=str(rig_path / ".beads"),
            beads_no_daemon=True,
        ))

    def start(self, name: str) -> str:
        """Start the polecat's session; returns the session name."""
        session = self.session_name(name)
        if self.tmux.has_session(session):
            return session

        workdir = self.town_root / self.rig / "polecats" / name
        launch_session(
            self.tmux,
            session,
            workdir,
            self.environment(name),
            self.registry.startup_command(self.agent),
            self.prime_delay_ms,
        )
        logger.info("started session %s", session)
        return session

    def stop(self, name: str) -> None:
        self.tmux.kill_session(self.session_name(name))
