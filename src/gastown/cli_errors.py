"""Uniform failure handling for gt commands.

A failing command prints `✗ <message>` (plus any detail lines) to stderr,
records the error in ~/.gt/errors.jsonl and exits with status 1.
"""

import functools
import sys
import time

import click

from gastown.config import TownNotFoundError
from gastown.error_logging import ErrorType, classify_error, log_error
from gastown.errors import GastownError


def report_failure(subcommand: str, exc: BaseException, duration_ms: int = 0) -> None:
    """Print exc for the user and record it; does not exit."""
    if isinstance(exc, TownNotFoundError):
        error_type = ErrorType.CONFIG_ERROR
    else:
        error_type = classify_error(exc)

    click.secho(f"✗ {exc}", fg="red", err=True)
    detail = getattr(exc, "detail", "")
    if detail:
        click.echo(detail, err=True)

    context = {}
    step = getattr(exc, "step", None)
    if step:
        context["step"] = step
    try:
        log_error(
            command=" ".join(["gt", *sys.argv[1:]]),
            subcommand=subcommand,
            error_type=error_type,
            message=str(exc),
            context=context or None,
            duration_ms=duration_ms,
        )
    except OSError:
        # Best-effort
        pass


def handles_errors(subcommand: str):
    """Decorator: turn GastownError/TownNotFoundError into exit status 1."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                return func(*args, **kwargs)
            except (GastownError, TownNotFoundError) as e:
                duration_ms = int((time.time() - start_time) * 1000)
                report_failure(subcommand, e, duration_ms)
                sys.exit(1)
        return wrapper

    return decorator
