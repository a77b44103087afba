#!/usr/bin/env python3
"""
Main CLI for vox - audio transcription daemon.

Usage:
    vox run                 - Start the daemon in the foreground
    vox scan                - Show what the next scan would queue
    vox init-config PATH    - Write a default configuration file
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from loguru import logger
from rich.console import Console
from rich.table import Table

console = Console()


@click.group()
def cli():
    """vox - watch a folder of recordings and transcribe them to notes."""


@cli.command()
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level")
def run(config: Optional[str], verbose: bool):
    """Start the vox daemon."""
    console.print("[cyan]Starting vox daemon...[/cyan]")

    # Import here to keep CLI startup light
    from ..daemon.main import main as daemon_main

    try:
        asyncio.run(daemon_main(config, verbose=verbose))
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
    except Exception as e:
        console.print(f"[red]Daemon error:[/red] {e}")
        logger.exception("Daemon crashed")
        sys.exit(1)


@cli.command()
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
def scan(config: Optional[str]):
    """List the files the next discovery pass would queue (dry run)."""
    from pydantic import ValidationError

    from ..daemon.config import Config
    from ..daemon.main import VoxDaemon, setup_logging

    setup_logging()
    try:
        cfg = Config.load(Path(config) if config else None)
    except (FileNotFoundError, ValidationError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    daemon = VoxDaemon(cfg)
    candidates = asyncio.run(daemon.discover())
    display_candidates(candidates, cfg.watch_directory)


def display_candidates(candidates, watch_directory: Path):
    """Display discovered candidates in a table."""
    if not candidates:
        console.print("[green]Nothing to transcribe[/green]")
        return

    table = Table(title=f"Pending Transcription ({len(candidates)})")
    table.add_column("File", style="cyan", no_wrap=False)
    table.add_column("Hash", style="magenta")
    table.add_column("Size", justify="right")

    for candidate in candidates:
        try:
            shown = candidate.path.relative_to(watch_directory)
        except ValueError:
            shown = candidate.path
        size = candidate.path.stat().st_size if candidate.path.exists() else 0
        table.add_row(
            str(shown),
            candidate.content_hash[:12],
            f"{size / 1024 / 1024:.2f} MB",
        )

    console.print(table)


@cli.command(name="init-config")
@click.argument("path", type=click.Path(dir_okay=False))
@click.option("--watch", "-w", default="~/Recordings", help="Directory to watch for audio")
@click.option("--output", "-o", default="~/Notes/Transcriptions", help="Directory for notes")
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing file")
def init_config(path: str, watch: str, output: str, force: bool):
    """Write a configuration file with default settings."""
    from ..daemon.config import Config

    target = Path(path).expanduser()
    if target.exists() and not force:
        console.print(f"[red]{target} already exists[/red] (use --force to overwrite)")
        sys.exit(1)

    Config(watch_directory=Path(watch), output_directory=Path(output)).save(target)
    console.print(f"[green]✓[/green] Wrote configuration to {target}")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
