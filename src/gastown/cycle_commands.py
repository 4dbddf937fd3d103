"""Session cycling commands for gt CLI."""

import click

from gastown.cli_errors import handles_errors
from gastown.cycle import cycle
from gastown.tmux import Tmux


def register_cycle_commands(cli):
    """Register session cycling commands with the CLI."""

    @cli.group(name='cycle')
    def cycle_group():
        """Cycle between sessions in the same group.

        Town sessions (mayor, deacon) cycle with each other; crew sessions
        cycle with the other crew members of their rig. Usually bound to
        tmux keys, e.g. `bind n run-shell "gt cycle next --session '#S'"`.

        \b
        Examples:
            gt cycle next
            gt cycle prev --session gt-gastown-crew-dave
        """
        pass

    session_option = click.option('--session', default=None,
                                  help='Current session (used by tmux key bindings)')

    @cycle_group.command(name='next')
    @session_option
    @handles_errors('cycle')
    def next_session(session):
        """Switch to the next session in the group."""
        cycle(Tmux(), 1, session)

    @cycle_group.command(name='prev')
    @session_option
    @handles_errors('cycle')
    def prev_session(session):
        """Switch to the previous session in the group."""
        cycle(Tmux(), -1, session)
