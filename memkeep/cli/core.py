"""Shared CLI application context and setup helpers."""

from __future__ import annotations

import sys

import typer
from loguru import logger
from rich.console import Console

from memkeep import __logo__, __version__

app = typer.Typer(
    name="memkeep",
    help=f"{__logo__} memkeep - long-term memory for chat assistants",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"{__logo__} memkeep v{__version__}")
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-V", callback=version_callback, is_eager=True),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """memkeep - long-term memory for chat assistants."""
    configure_logging(verbose)


def make_telemetry(config):
    """Create the telemetry backend named in config, or None."""
    from memkeep.telemetry import build_telemetry

    return build_telemetry(config.telemetry.backend, host=config.telemetry.host, port=config.telemetry.port)


def make_memory_service(config):
    """Create memory service from config."""
    from memkeep.memory import MemoryService

    return MemoryService.from_config(config, telemetry=make_telemetry(config))
