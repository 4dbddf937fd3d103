"""Daemon commands for gt CLI.

Commands for managing the town daemon.
"""

import subprocess
import sys
import time
from pathlib import Path
from typing import Optional

import click

from gastown.agents import load_agent_registry
from gastown.cli_errors import handles_errors
from gastown.config import get_agents_file, require_town_root
from gastown.daemon import (
    Daemon,
    attach_log_file,
    default_config,
    is_running,
    load_state,
    run_once,
    stop_daemon,
)
from gastown.logging import EventLogger

# How long `gt daemon start` waits for the PID file to appear
START_TIMEOUT_SECONDS = 5.0


def _town(town: Optional[str]) -> Path:
    return Path(town).resolve() if town else require_town_root()


def register_daemon_commands(cli):
    """Register daemon-related commands with the CLI."""

    @cli.group()
    def daemon():
        """Manage the town daemon.

        The daemon pokes the mayor and rig witnesses on a heartbeat and
        handles cycle/restart/shutdown requests mailed to "daemon".

        \b
        Examples:
            gt daemon start              # Start in the background
            gt daemon run                # Run in the foreground
            gt daemon once               # Run one heartbeat
            gt daemon status             # Check if the daemon is running
            gt daemon stop               # Stop the daemon
        """
        pass

    town_option = click.option('--town', default=None, type=click.Path(file_okay=False),
                               help='Town root (default: discovered from cwd)')

    @daemon.command()
    @town_option
    @click.option('--interval', type=float, default=None,
                  help='Seconds between heartbeats (default: config or 60)')
    @handles_errors('daemon')
    def run(town, interval):
        """Run the daemon in the foreground until interrupted."""
        town_root = _town(town)
        running, pid = is_running(town_root)
        if running:
            raise click.ClickException(f"daemon already running (PID: {pid})")

        config = default_config(town_root)
        if interval is not None:
            config.heartbeat_interval = interval
        attach_log_file(config.log_file)

        click.echo(f"Daemon started for {town_root}")
        click.echo(f"  Heartbeat interval: {config.heartbeat_interval}s")
        click.echo(f"  Log: {config.log_file}")

        registry = load_agent_registry(get_agents_file(town_root))
        state = Daemon(config, registry=registry).run()
        click.echo(f"Daemon stopped after {state.heartbeat_count} heartbeat(s)")

    @daemon.command()
    @town_option
    @handles_errors('daemon')
    def start(town):
        """Start the daemon in the background."""
        town_root = _town(town)
        running, pid = is_running(town_root)
        if running:
            click.echo(f"Daemon already running (PID: {pid})")
            return

        subprocess.Popen(
            [sys.executable, "-m", "gastown.cli", "daemon", "run", "--town", str(town_root)],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

        deadline = time.time() + START_TIMEOUT_SECONDS
        while time.time() < deadline:
            running, pid = is_running(town_root)
            if running:
                click.echo(f"✓ Daemon started (PID: {pid})")
                return
            time.sleep(0.1)
        raise click.ClickException(
            f"daemon did not start; see {default_config(town_root).log_file}"
        )

    @daemon.command()
    @town_option
    @handles_errors('daemon')
    def stop(town):
        """Stop the running daemon (SIGTERM, then SIGKILL)."""
        town_root = _town(town)
        pid = stop_daemon(town_root)
        EventLogger(town_root / "logs").log_event("daemon", f"Daemon stopped (PID {pid})", {"pid": pid})
        click.echo(f"✓ Daemon stopped (PID: {pid})")

    @daemon.command()
    @town_option
    @handles_errors('daemon')
    def status(town):
        """Show whether the daemon is running and its last heartbeat."""
        town_root = _town(town)
        running, pid = is_running(town_root)
        if running:
            click.echo(f"Daemon is running (PID: {pid})")
        else:
            click.echo("Daemon is not running")

        try:
            state = load_state(town_root)
        except ValueError:
            click.echo("State file is unreadable")
            return
        if state.started_at:
            click.echo(f"  Started: {state.started_at:%Y-%m-%d %H:%M:%S}")
        if state.last_heartbeat:
            click.echo(f"  Last heartbeat: {state.last_heartbeat:%Y-%m-%d %H:%M:%S}")
        click.echo(f"  Heartbeats: {state.heartbeat_count}")

    @daemon.command()
    @town_option
    @handles_errors('daemon')
    def once(town):
        """Run a single heartbeat in the foreground.

        Useful for testing; no PID or state file is written.
        """
        town_root = _town(town)
        registry = load_agent_registry(get_agents_file(town_root))
        report = run_once(default_config(town_root), registry=registry)

        click.echo(f"Mayor poked: {'yes' if report.mayor_poked else 'no'}")
        click.echo(f"Witnesses poked: {len(report.witnesses_poked)}")
        click.echo(f"Lifecycle requests: {len(report.processed)}")
        for outcome in report.processed:
            action = outcome.request.action.value
            if outcome.ok:
                click.echo(f"  ✓ {action} {outcome.session} (from {outcome.request.sender})")
            else:
                click.echo(f"  ✗ {action} from {outcome.request.sender}: {outcome.error}")
