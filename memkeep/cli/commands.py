"""CLI commands for memkeep."""

from __future__ import annotations

import typer

from memkeep import __logo__

from .core import app, console
from . import memory_commands  # noqa: F401


@app.command()
def init(
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing config"),
) -> None:
    """Initialize memkeep configuration and data directory."""
    from memkeep.config.loader import get_config_path, save_config
    from memkeep.config.schema import Config
    from memkeep.utils.helpers import ensure_dir

    config_path = get_config_path()

    if config_path.exists() and not force:
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] Created config at {config_path}")

    db_dir = ensure_dir(config.memory.db_file.parent)
    console.print(f"[green]✓[/green] Memory data directory at {db_dir}")

    console.print(f"\n{__logo__} memkeep is ready!")
    console.print('  Try: [cyan]memkeep memory remember "I prefer tea over coffee"[/cyan]')


__all__ = ["app"]
