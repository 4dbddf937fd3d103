"""Sling command for gt CLI.

Puts work on an agent's hook and, for polecats, starts it working.
"""

import click
from rich.console import Console

from gastown.agents import load_agent_registry
from gastown.cli_errors import handles_errors
from gastown.config import get_agents_file, require_town_root
from gastown.sling import Dispatcher, SlingOptions


def register_sling_commands(cli):
    """Register the sling command with the CLI."""

    @cli.command()
    @click.argument('thing')
    @click.argument('target')
    @click.option('--wisp', is_flag=True, help='Create the molecule as ephemeral (not synced)')
    @click.option('--molecule', '-m', default=None, help='Proto to attach to an issue thing')
    @click.option('--priority', '-p', type=click.IntRange(0, 4), default=None,
                  help='Override the issue priority (0-4)')
    @click.option('--force', is_flag=True,
                  help='Replace work already on the hook and skip uncommitted-work checks')
    @click.option('--no-start', is_flag=True, help="Assign work but don't start the session")
    @click.option('--create', is_flag=True, help="Create the polecat if it doesn't exist")
    @handles_errors('sling')
    def sling(thing, target, wisp, molecule, priority, force, no_start, create):
        """Sling work at an agent.

        THING is a proto name (feature, mol-bugfix) or an issue id
        (gt-abc). TARGET is an agent address; the rig defaults to the one
        you are in.

        \b
        Examples:
            gt sling feature gastown/Toast           # Polecat Toast runs the feature proto
            gt sling gt-abc gastown/crew/dave        # Crew member dave gets issue gt-abc
            gt sling gt-abc Toast -m bugfix          # Bugfix molecule bound to gt-abc
            gt sling patrol deacon/ --wisp           # Deacon runs an ephemeral patrol
            gt sling feature gastown/Nux --create    # Create polecat Nux first
            gt sling feature Toast --force           # Displace Toast's current work
        """
        town_root = require_town_root()
        registry = load_agent_registry(get_agents_file(town_root))
        dispatcher = Dispatcher(town_root, registry, console=Console(highlight=False))

        options = SlingOptions(
            force=force,
            no_start=no_start,
            create=create,
            wisp=wisp,
            molecule=molecule,
            priority=priority,
        )
        result = dispatcher.sling(thing, target, options)

        if result.warnings:
            click.echo(f"\n{len(result.warnings)} step(s) completed with warnings")
