"""Polecat session commands for gt CLI."""

import click

from gastown.address import AgentRole, parse_target
from gastown.agents import load_agent_registry
from gastown.cli_errors import handles_errors
from gastown.config import get_agents_file, get_config, require_town_root
from gastown.errors import InvalidTargetError, TargetNotFoundError
from gastown.polecat import PolecatManager
from gastown.session import SessionManager
from gastown.suggest import find_similar
from gastown.tmux import Tmux


def _session_manager(address: str):
    town_root = require_town_root()
    target = parse_target(address, town_root)
    if target.kind != AgentRole.POLECAT:
        raise InvalidTargetError(f"{address} is not a polecat")

    polecats = PolecatManager(town_root, target.rig)
    if not polecats.exists(target.name):
        names = polecats.list_names()
        raise TargetNotFoundError("Polecat", target.name, find_similar(target.name, names))

    config = get_config(town_root)
    manager = SessionManager(
        Tmux(),
        town_root,
        target.rig,
        load_agent_registry(get_agents_file(town_root)),
        agent=config['agent'],
        prime_delay_ms=config['prime_delay_ms'],
    )
    return manager, target.name


def register_session_commands(cli):
    """Register polecat session commands with the CLI."""

    @cli.group()
    def session():
        """Start and stop polecat sessions.

        \b
        Examples:
            gt session start gastown/Toast
            gt session stop Toast
        """
        pass

    @session.command()
    @click.argument('polecat')
    @handles_errors('session')
    def start(polecat):
        """Start a polecat's session if it is not running."""
        manager, name = _session_manager(polecat)
        if manager.is_running(name):
            click.echo(f"Session {manager.session_name(name)} already running")
            return
        session_name = manager.start(name)
        click.echo(f"✓ Started {session_name}")

    @session.command()
    @click.argument('polecat')
    @handles_errors('session')
    def stop(polecat):
        """Kill a polecat's session."""
        manager, name = _session_manager(polecat)
        if not manager.is_running(name):
            click.echo(f"Session {manager.session_name(name)} is not running")
            return
        manager.stop(name)
        click.echo(f"✓ Stopped {manager.session_name(name)}")
