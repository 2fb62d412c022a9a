"""procwarden CLI — the container entry point.

A single command with no subcommands. Everything is configured through
environment variables (see procwarden.config); the only flag is
--verbose for DEBUG logging.

Exit codes: 0 after a clean signal-triggered shutdown, 2 on a
configuration error (nothing is spawned), 1 on any other failure.
"""

from __future__ import annotations

import asyncio
import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from procwarden.config import load_settings
from procwarden.exceptions import ConfigurationError, WardenError

EXIT_CONFIG_ERROR = 2

err_console = Console(stderr=True)

_app = typer.Typer(
    name="procwarden",
    help="Start the primary service and worker, supervise them, and serve /health.",
    add_completion=False,
)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, markup=False)],
        force=True,
    )


def _report_config_error(error: ConfigurationError) -> None:
    err_console.print("[bold red]Configuration error[/bold red] (no process was started):")
    for problem in error.problems:
        err_console.print(f"  • {problem}", markup=False)


@_app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    """Supervise the container's processes until SIGTERM."""
    from procwarden.sequencer import build_plan
    from procwarden.serve import main as serve_main

    try:
        settings = load_settings()
        _configure_logging("DEBUG" if verbose else settings.log_level)
        plan = build_plan(settings)
    except ConfigurationError as e:
        _report_config_error(e)
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    log = logging.getLogger("procwarden")
    log.info(
        "Launching %s (barrier: %s)",
        " -> ".join(p.name for p in plan.processes),
        "on" if plan.wait_for_ready else "off",
    )

    try:
        exit_code = asyncio.run(serve_main(plan))
    except WardenError as e:
        log.critical("Supervisor failed: %s", e)
        raise typer.Exit(code=1)
    raise typer.Exit(code=exit_code)


def main() -> None:
    _app()


if __name__ == "__main__":
    main()
