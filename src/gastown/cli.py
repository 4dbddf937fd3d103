import json

import click

from gastown import __version__
from gastown.cli_errors import handles_errors
from gastown.error_logging import ErrorLogger
from gastown.errors import GastownError

# Import command modules for registration
from gastown.sling_commands import register_sling_commands
from gastown.daemon_commands import register_daemon_commands
from gastown.session_commands import register_session_commands
from gastown.cycle_commands import register_cycle_commands


@click.group()
@click.version_option(version=__version__, prog_name="gt")
def cli():
    """Gas Town: dispatch work to agents and keep them running."""
    pass


# Register commands from external modules
register_sling_commands(cli)
register_daemon_commands(cli)
register_session_commands(cli)
register_cycle_commands(cli)


@cli.command()
@click.option('--limit', default=10, type=int, help='Number of recent errors to show (default: 10)')
@click.option('--type', 'error_type', default=None, help='Filter by error type (e.g., HOOK_OCCUPIED)')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSON for programmatic access')
@handles_errors('errors')
def errors(limit, error_type, output_json):
    """Show recent command failures from ~/.gt/errors.jsonl.

    \b
    Examples:
        gt errors                      # Last 10 failures
        gt errors --type HOOK_OCCUPIED # Only hook collisions
        gt errors --json               # Output as JSON
    """
    error_logger = ErrorLogger()
    try:
        recent = error_logger.get_recent_errors(limit=limit)
    except OSError as e:
        raise GastownError(f"reading {error_logger.error_file}: {e}")
    if error_type:
        recent = [e for e in recent if e.get('error_type') == error_type]

    if output_json:
        click.echo(json.dumps(recent, indent=2))
        return

    if not recent:
        click.echo("No errors recorded.")
        return

    for entry in recent:
        click.echo(f"{entry.get('timestamp', '?')}  {entry.get('error_type', '?'):18} {entry.get('command', '')}")
        message = entry.get('message') or ''
        click.echo(f"    {message.splitlines()[0] if message else ''}")


if __name__ == '__main__':
    cli()
